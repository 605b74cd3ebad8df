"""DispatchState model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, Index
from datetime import datetime, timezone
from app.models.base import Base


class DispatchState(Base):
    """Per-invoice orchestrator state; holds the durable retry schedule"""
    __tablename__ = "dispatch_states"

    invoice_id = Column(String(255), primary_key=True)
    state = Column(String(30), default="pending", nullable=False)  # pending, dispatch-pending, reconciled, failed-retryable, failed-terminal
    target_status = Column(String(20), nullable=True)  # reconciliation status being dispatched
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('ix_dispatch_states_state_next', 'state', 'next_attempt_at'),
    )
