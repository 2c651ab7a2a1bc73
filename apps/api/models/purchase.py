"""Purchase model: one row per external payment confirmation."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, String, UniqueConstraint

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Purchase(Base):
    """Credited payment. (provider, payment_reference) is the idempotency boundary."""

    __tablename__ = "storage_purchases"
    __table_args__ = (
        UniqueConstraint("provider", "payment_reference", name="uq_storage_purchases_provider_reference"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)  # stripe, solana, manual
    payment_reference = Column(String, nullable=False)
    credits_added = Column(BigInteger, nullable=False)
    amount_cents = Column(BigInteger, nullable=True)
    status = Column(String, nullable=False, default="complete")
    balance_after = Column(BigInteger, nullable=True)
    purchase_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
