from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from dealercrm.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentCursor(Base):
    """Last salesperson handed a lead from a rotation pool (strict rotation only)."""

    __tablename__ = "crm_assignment_cursor"

    pool: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
