from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


def _stringify(value: Any) -> Any:
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return str(value)
    return value


def _blank_to_none(value: Any) -> Any:
    # form relays send "" for an unselected salesperson
    if isinstance(value, str) and not value.strip():
        return None
    return value


class LeadCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, validation_alias=_alias("name", "nombre"))
    phone: str = Field(min_length=1, validation_alias=_alias("phone", "telefono"))
    email: str | None = None
    vehicle_model: str = Field(min_length=1, validation_alias=_alias("vehicle_model", "modelo"))
    payment_method: str | None = Field(default=None, validation_alias=_alias("payment_method", "formaPago"))
    budget: str | None = Field(default=None, validation_alias=_alias("budget", "presupuesto"))
    trade_in_info: str | None = Field(default=None, validation_alias=_alias("trade_in_info", "infoUsado"))
    delivery: bool = Field(default=False, validation_alias=_alias("delivery", "entrega"))
    lead_date: date | None = Field(default=None, validation_alias=_alias("lead_date", "fecha"))
    source: str = Field(default="otro", validation_alias=_alias("source", "fuente"))
    assigned_to_id: int | None = Field(default=None, validation_alias=_alias("assigned_to_id", "vendedor"))
    notes: str | None = Field(default=None, validation_alias=_alias("notes", "notas"))
    team: str | None = Field(default=None, validation_alias=_alias("team", "equipo"))

    @field_validator("phone", "budget", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return _stringify(value)

    @field_validator("assigned_to_id", mode="before")
    @classmethod
    def blank_assignee(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, validation_alias=_alias("name", "nombre"))
    phone: str | None = Field(default=None, min_length=1, validation_alias=_alias("phone", "telefono"))
    email: str | None = None
    vehicle_model: str | None = Field(default=None, min_length=1, validation_alias=_alias("vehicle_model", "modelo"))
    payment_method: str | None = Field(default=None, validation_alias=_alias("payment_method", "formaPago"))
    budget: str | None = Field(default=None, validation_alias=_alias("budget", "presupuesto"))
    trade_in_info: str | None = Field(default=None, validation_alias=_alias("trade_in_info", "infoUsado"))
    delivery: bool | None = Field(default=None, validation_alias=_alias("delivery", "entrega"))
    lead_date: date | None = Field(default=None, validation_alias=_alias("lead_date", "fecha"))
    source: str | None = Field(default=None, validation_alias=_alias("source", "fuente"))
    assigned_to_id: int | None = Field(default=None, validation_alias=_alias("assigned_to_id", "vendedor"))
    notes: str | None = Field(default=None, validation_alias=_alias("notes", "notas"))
    status: str | None = Field(default=None, min_length=1, validation_alias=_alias("status", "estado"))
    team: str | None = Field(default=None, validation_alias=_alias("team", "equipo"))

    @field_validator("phone", "budget", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return _stringify(value)

    @field_validator("assigned_to_id", mode="before")
    @classmethod
    def blank_assignee(cls, value: Any) -> Any:
        return _blank_to_none(value)


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: str
    email: str | None
    vehicle_model: str
    payment_method: str | None
    budget: str | None
    trade_in_info: str | None
    delivery: bool
    lead_date: date | None
    status: str
    source: str
    assigned_to_id: int | None
    assigned_to_name: str | None = None
    notes: str | None
    created_by_id: int | None
    team: str | None
    created_at: datetime
    updated_at: datetime
    status_changed_at: datetime | None


class LeadHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    status: str
    actor_name: str
    created_at: datetime


class LeadBulkDeleteRequest(BaseModel):
    ids: list[int] = Field(min_length=1)


class LeadBulkDeleteResponse(BaseModel):
    deleted: int


class NoteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lead_id: int
    body: str = Field(min_length=1, validation_alias=_alias("body", "texto"))


class NoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    body: str
    author_id: int | None
    author_name: str
    created_at: datetime


class GoalUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    salesperson_id: int = Field(validation_alias=_alias("salesperson_id", "vendedor_id"))
    month: str = Field(pattern=MONTH_PATTERN, validation_alias=_alias("month", "mes"))
    sales_target: int = Field(ge=0, validation_alias=_alias("sales_target", "meta_ventas"))
    lead_target: int = Field(ge=0, validation_alias=_alias("lead_target", "meta_leads"))


class GoalUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sales_target: int | None = Field(default=None, ge=0, validation_alias=_alias("sales_target", "meta_ventas"))
    lead_target: int | None = Field(default=None, ge=0, validation_alias=_alias("lead_target", "meta_leads"))


class GoalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    salesperson_id: int
    salesperson_name: str | None = None
    month: str
    sales_target: int
    lead_target: int
    created_by_id: int | None
    created_at: datetime
    updated_at: datetime


class BudgetTemplateCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    brand: str = Field(min_length=1, validation_alias=_alias("brand", "marca"))
    vehicle_model: str = Field(min_length=1, validation_alias=_alias("vehicle_model", "modelo"))
    image_url: str | None = Field(default=None, validation_alias=_alias("image_url", "imagen_url"))
    cash_price: Decimal | None = Field(default=None, validation_alias=_alias("cash_price", "precio_contado"))
    technical_specs: str | None = Field(
        default=None, validation_alias=_alias("technical_specs", "especificaciones_tecnicas")
    )
    installment_plans: list[dict[str, Any]] | None = Field(
        default=None, validation_alias=_alias("installment_plans", "planes_cuotas")
    )
    bonuses: str | None = Field(default=None, validation_alias=_alias("bonuses", "bonificaciones"))
    down_payment: str | None = Field(default=None, validation_alias=_alias("down_payment", "anticipo"))


class BudgetTemplateUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    brand: str | None = Field(default=None, min_length=1, validation_alias=_alias("brand", "marca"))
    vehicle_model: str | None = Field(default=None, min_length=1, validation_alias=_alias("vehicle_model", "modelo"))
    image_url: str | None = Field(default=None, validation_alias=_alias("image_url", "imagen_url"))
    cash_price: Decimal | None = Field(default=None, validation_alias=_alias("cash_price", "precio_contado"))
    technical_specs: str | None = Field(
        default=None, validation_alias=_alias("technical_specs", "especificaciones_tecnicas")
    )
    installment_plans: list[dict[str, Any]] | None = Field(
        default=None, validation_alias=_alias("installment_plans", "planes_cuotas")
    )
    bonuses: str | None = Field(default=None, validation_alias=_alias("bonuses", "bonificaciones"))
    down_payment: str | None = Field(default=None, validation_alias=_alias("down_payment", "anticipo"))
    active: bool | None = Field(default=None, validation_alias=_alias("active", "activo"))


class BudgetTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    brand: str
    vehicle_model: str
    image_url: str | None
    cash_price: Decimal | None
    technical_specs: str | None
    installment_plans: list[dict[str, Any]] | None
    bonuses: str | None
    down_payment: str | None
    active: bool
    created_by_id: int | None
    created_at: datetime
    updated_at: datetime


class WebhookLeadPayload(BaseModel):
    """Inbound lead from a form or ad platform; accepts both field vocabularies."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = Field(default=None, validation_alias=_alias("nombre", "full_name", "name"))
    phone: str | None = Field(default=None, validation_alias=_alias("telefono", "phone_number", "phone"))
    email: str | None = Field(default=None, validation_alias=_alias("email", "email_address"))
    vehicle_model: str | None = Field(default=None, validation_alias=_alias("modelo", "vehicle_model"))
    payment_method: str | None = Field(default=None, validation_alias=_alias("formaPago", "payment_method"))
    budget: str | None = Field(default=None, validation_alias=_alias("presupuesto", "budget"))
    trade_in_info: str | None = Field(default=None, validation_alias=_alias("infoUsado", "trade_in_info"))
    delivery: bool = Field(default=False, validation_alias=_alias("entrega", "delivery"))
    source: str | None = Field(default=None, validation_alias=_alias("fuente", "source"))
    assigned_to_id: int | None = Field(default=None, validation_alias=_alias("vendedor", "assigned_to_id"))
    notes: str | None = Field(default=None, validation_alias=_alias("notas", "additional_info", "notes"))
    team: str | None = Field(default=None, validation_alias=_alias("equipo", "team"))

    @field_validator("phone", "budget", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return _stringify(value)

    @field_validator("assigned_to_id", mode="before")
    @classmethod
    def blank_assignee(cls, value: Any) -> Any:
        return _blank_to_none(value)


class WebhookLeadResponse(BaseModel):
    success: bool = True
    message: str
    lead_id: int
    assigned_to: str
    lead: LeadRead


class WebhookStatus(BaseModel):
    success: bool = True
    message: str
    timestamp: datetime
