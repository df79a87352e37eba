from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealercrm.core.database import Base
from dealercrm.identity.models import User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vehicle_model: Mapped[str] = mapped_column(Text, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    budget: Mapped[str | None] = mapped_column(Text, nullable=True)
    trade_in_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    lead_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="nuevo", server_default="nuevo")
    source: Mapped[str] = mapped_column(String(64), nullable=False, default="otro", server_default="otro")
    assigned_to_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("crm_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("crm_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    team: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    assigned_to: Mapped[User | None] = relationship(User, foreign_keys=[assigned_to_id], lazy="joined")
    history: Mapped[list[LeadHistory]] = relationship(
        "LeadHistory",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="LeadHistory.id",
    )
    internal_notes: Mapped[list[LeadNote]] = relationship(
        "LeadNote",
        back_populates="lead",
        cascade="all, delete-orphan",
    )


class LeadHistory(Base):
    __tablename__ = "crm_lead_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[Lead] = relationship("Lead", back_populates="history")


class LeadNote(Base):
    __tablename__ = "crm_lead_note"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_lead.id", ondelete="CASCADE"),
        nullable=False,
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    author_name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lead: Mapped[Lead] = relationship("Lead", back_populates="internal_notes")


class Goal(Base):
    __tablename__ = "crm_goal"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    salesperson_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    sales_target: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lead_target: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    salesperson: Mapped[User] = relationship(User, lazy="joined")

    __table_args__ = (
        UniqueConstraint("salesperson_id", "month", name="uq_crm_goal_salesperson_month"),
    )


class BudgetTemplate(Base):
    __tablename__ = "crm_budget_template"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    brand: Mapped[str] = mapped_column(String(128), nullable=False)
    vehicle_model: Mapped[str] = mapped_column(String(255), nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cash_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    technical_specs: Mapped[str | None] = mapped_column(Text, nullable=True)
    installment_plans: Mapped[list | None] = mapped_column(JSON, nullable=True)
    bonuses: Mapped[str | None] = mapped_column(Text, nullable=True)
    down_payment: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


Index("ix_crm_lead_scope_filter", Lead.assigned_to_id, Lead.status, Lead.created_at)
Index("ix_crm_lead_team", Lead.team)
Index("ix_crm_lead_history_lead_id", LeadHistory.lead_id)
Index("ix_crm_lead_note_lead_id", LeadNote.lead_id)
