"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Authenticated user known to the storage engine."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    storage_account = relationship("StorageAccount", back_populates="user", uselist=False)
    uploads = relationship("Upload", back_populates="user")
    ledger_entries = relationship("StorageLedgerEntry", back_populates="user")
