"""LedgerCredential model"""
from sqlalchemy import Column, Integer, String, Text, DateTime
from datetime import datetime, timezone
from app.models.base import Base


class LedgerCredential(Base):
    """OAuth credentials for the ledger backend (encrypted)"""
    __tablename__ = "ledger_credentials"

    id = Column(Integer, primary_key=True, index=True)
    backend = Column(String(50), unique=True, nullable=False)  # quickbooks
    realm_id = Column(String(100), nullable=True)  # QuickBooks company id
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text)  # Encrypted
    expires_at = Column(DateTime(timezone=True))
    refresh_expires_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
