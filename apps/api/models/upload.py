"""Upload model tracking the credit reservation of one upload attempt."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship
import uuid

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Upload(Base):
    """One upload attempt: pending until finalized or failed, then immutable."""

    __tablename__ = "storage_uploads"
    __table_args__ = (
        Index(
            "uq_storage_uploads_user_idempotency_key",
            "user_id",
            "idempotency_key",
            unique=True,
        ),
        Index("ix_storage_uploads_status_created", "status", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    file_size_bytes = Column(BigInteger, nullable=False)
    credits_required = Column(BigInteger, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, complete, failed
    idempotency_key = Column(String, nullable=True)
    media_type = Column(String, nullable=False)  # image, video
    content_id = Column(String, nullable=True)
    balance_after = Column(BigInteger, nullable=True)
    failure_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="uploads")
