"""Administrative freeze state for an account."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(Base):
    """Frozen accounts are rejected by every mutating storage operation."""

    __tablename__ = "account_status"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    is_frozen = Column(Boolean, nullable=False, default=False)
    freeze_reason = Column(String, nullable=True)
    frozen_at = Column(DateTime(timezone=True), nullable=True)
    frozen_by = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
