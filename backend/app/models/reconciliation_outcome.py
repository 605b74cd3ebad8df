"""ReconciliationOutcome model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Index, Numeric, text
from datetime import datetime, timezone
from app.models.base import Base


class ReconciliationOutcome(Base):
    """Append-only audit of ledger writes (one row per dispatched status)"""
    __tablename__ = "reconciliation_outcomes"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(String(255), nullable=False, index=True)
    reconciliation_status = Column(String(20), nullable=False)
    idempotency_key = Column(String(300), nullable=False, index=True)
    ledger_mode = Column(String(30), nullable=False)
    ledger_object_id = Column(String(255), nullable=True)
    reconciled_amount = Column(Numeric(20, 8), nullable=True)  # amount this write added to the ledger
    outcome = Column(String(30), nullable=False)  # success, failed, skipped-duplicate
    error_detail = Column(Text, nullable=True)
    attempt_count = Column(Integer, default=1, nullable=False)
    attempted_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    # At most one success per idempotency key
    __table_args__ = (
        Index(
            'uq_reconciliation_outcomes_success_key',
            'idempotency_key',
            unique=True,
            sqlite_where=text("outcome = 'success'"),
            postgresql_where=text("outcome = 'success'"),
        ),
    )
