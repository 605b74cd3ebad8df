"""WebhookConfig model"""
from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, JSON
from datetime import datetime, timezone
from app.models.base import Base


class WebhookConfig(Base):
    """BTCPay webhook registration and its signing secret (encrypted)"""
    __tablename__ = "webhook_configs"

    id = Column(Integer, primary_key=True, index=True)
    webhook_id = Column(String(255), unique=True, nullable=False)  # Id assigned by BTCPay
    store_id = Column(String(255), nullable=False, index=True)
    url = Column(Text, nullable=False)
    secret = Column(Text, nullable=False)  # Encrypted
    events = Column(JSON, default=list, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
