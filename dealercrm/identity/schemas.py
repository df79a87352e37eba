from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from dealercrm.core.roles import Role, normalize_role


def normalize_identifier(value: object) -> object:
    """Login identifiers are compared case-insensitively.

    Most are email addresses, but older accounts log in with a plain name
    (``"dario pelegrin"``), so no email syntax is enforced.
    """

    if isinstance(value, str):
        return value.strip().lower()
    return value


class LoginRequest(BaseModel):
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str
    reports_to_id: int | None
    active: bool
    created_at: datetime


class TokenResponse(BaseModel):
    ok: bool = True
    token: str
    user: UserRead


class VerifyResponse(BaseModel):
    ok: bool = True
    user: UserRead


class UserCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    role: Role
    reports_to_id: int | None = Field(default=None, validation_alias=AliasChoices("reports_to_id", "reportsTo"))
    active: bool = True

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> object:
        return normalize_identifier(value)

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role_value(cls, value: object) -> Role:
        return normalize_role(str(value))


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1)
    email: str | None = Field(default=None, min_length=1, max_length=255)
    password: str | None = None
    role: Role | None = None
    reports_to_id: int | None = Field(default=None, validation_alias=AliasChoices("reports_to_id", "reportsTo"))
    active: bool | None = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> object:
        return normalize_identifier(value)

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role_value(cls, value: object) -> Role | None:
        if value is None:
            return None
        return normalize_role(str(value))


class UserImportRow(BaseModel):
    """One account of a bulk import; ``reports_to`` names the manager by login identifier."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1)
    role: Role
    reports_to: str | None = Field(default=None, validation_alias=AliasChoices("reports_to", "reportsTo"))
    active: bool = True

    @field_validator("email", "reports_to", mode="before")
    @classmethod
    def normalize_identifiers(cls, value: object) -> object:
        value = normalize_identifier(value)
        return value or None

    @field_validator("role", mode="before")
    @classmethod
    def normalize_role_value(cls, value: object) -> Role:
        return normalize_role(str(value))


class UserImportRequest(BaseModel):
    users: list[UserImportRow] = Field(min_length=1)
