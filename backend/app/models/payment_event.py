"""PaymentEvent model"""
from sqlalchemy import Column, String, Boolean, Text, DateTime, Index
from datetime import datetime, timezone
from app.models.base import Base


class PaymentEvent(Base):
    """BTCPay webhook delivery log - append-only, doubles as the worker queue"""
    __tablename__ = "payment_events"

    delivery_id = Column(String(255), primary_key=True)  # BTCPay deliveryId
    event_type = Column(String(100), nullable=False, index=True)
    invoice_id = Column(String(255), nullable=True, index=True)
    store_id = Column(String(255), nullable=True)
    raw_payload = Column(Text, nullable=False)  # Exact body as received
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_payment_events_processed_received', 'processed', 'received_at'),
        Index('ix_payment_events_invoice_received', 'invoice_id', 'received_at'),
    )
