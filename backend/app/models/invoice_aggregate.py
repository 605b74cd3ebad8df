"""InvoiceAggregate model"""
from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON
from datetime import datetime, timezone
from app.models.base import Base


class InvoiceAggregate(Base):
    """Derived payment totals and reconciliation verdict for one BTCPay invoice"""
    __tablename__ = "invoice_aggregates"

    invoice_id = Column(String(255), primary_key=True)
    store_id = Column(String(255), nullable=True, index=True)
    order_id = Column(String(255), nullable=True)  # BTCPay metadata.orderId
    invoice_amount = Column(Numeric(20, 8), nullable=True)  # Locked once captured
    currency = Column(String(10), nullable=True)
    paid_amount = Column(Numeric(20, 8), default=0, nullable=False)
    payment_count = Column(Integer, default=0, nullable=False)
    payments = Column(JSON, default=list, nullable=False)  # [{id, txid, amount, crypto_amount, ...}]
    upstream_status = Column(String(50), nullable=True)  # New, Processing, Settled, Expired, Invalid
    additional_status = Column(String(50), nullable=True)  # PaidLate, PaidPartial, PaidOver, Marked...
    reconciliation_status = Column(String(20), default="pending", nullable=False, index=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)
