"""Per-user storage credit account."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageAccount(Base):
    """Mutable balance fields for one user. Only changed under the account lock."""

    __tablename__ = "storage_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_storage_accounts_balance_nonnegative"),
        CheckConstraint("spent >= 0", name="ck_storage_accounts_spent_nonnegative"),
        CheckConstraint("reserved >= 0", name="ck_storage_accounts_reserved_nonnegative"),
        CheckConstraint("balance >= reserved", name="ck_storage_accounts_reserved_covered"),
    )

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)
    total = Column(BigInteger, nullable=False, default=0)
    spent = Column(BigInteger, nullable=False, default=0)
    reserved = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="storage_account")

    @property
    def available(self) -> int:
        return int(self.balance or 0) - int(self.reserved or 0)
