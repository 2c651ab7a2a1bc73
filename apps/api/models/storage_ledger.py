"""Append-only storage credit ledger."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship

from database import Base


LEDGER_ENTRY_TYPES = ("grant_free", "charge_upload", "purchase", "admin_adjust", "refund")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageLedgerEntry(Base):
    """Immutable credit ledger entry. Negative amounts are debits."""

    __tablename__ = "storage_ledger"
    __table_args__ = (
        Index("ix_storage_ledger_user_created", "user_id", "created_at"),
        Index("ix_storage_ledger_reference", "reference_type", "reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=True)
    reference_type = Column(String, nullable=True)  # upload, purchase
    reference = Column(String, nullable=True)
    entry_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)

    user = relationship("User", back_populates="ledger_entries")
