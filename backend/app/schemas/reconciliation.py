"""Pydantic schemas for the operator reconciliation API"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_id: str
    event_type: str
    invoice_id: Optional[str] = None
    store_id: Optional[str] = None
    processed: bool
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    received_at: datetime


class OutcomeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reconciliation_status: str
    idempotency_key: str
    ledger_mode: str
    ledger_object_id: Optional[str] = None
    reconciled_amount: Optional[Decimal] = None
    outcome: str
    error_detail: Optional[str] = None
    attempt_count: int
    attempted_at: datetime


class ReconciliationSummary(BaseModel):
    """One row of the operator feed: aggregate plus dispatch progress"""
    invoice_id: str
    store_id: Optional[str] = None
    order_id: Optional[str] = None
    invoice_amount: Optional[Decimal] = None
    paid_amount: Decimal
    currency: Optional[str] = None
    payment_count: int
    upstream_status: Optional[str] = None
    reconciliation_status: str
    dispatch_state: Optional[str] = None
    dispatch_attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    latest_outcome: Optional[OutcomeResponse] = None
    last_event_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReconciliationDetail(ReconciliationSummary):
    payments: List[Dict[str, Any]] = []
    additional_status: Optional[str] = None
    outcomes: List[OutcomeResponse] = []
    events: List[PaymentEventResponse] = []


class ReconciliationList(BaseModel):
    items: List[ReconciliationSummary]
    total: int
    limit: int
    offset: int


class RedriveResponse(BaseModel):
    invoice_id: str
    busy: bool = False
    deferred: bool = False
    reconciliation_status: Optional[str] = None
    dispatch_state: Optional[str] = None
    outcome: Optional[str] = None
    ledger_object_id: Optional[str] = None


class LedgerStatus(BaseModel):
    backend: str
    mode: str
    auth_state: str
    reconnect_required: bool
    reason: Optional[str] = None
    healthy: Optional[bool] = None


class BTCPayStatus(BaseModel):
    connected: bool
    authenticated: bool
    version: Optional[str] = None
    error: Optional[str] = None


class StatusResponse(BaseModel):
    ledger: LedgerStatus
    btcpay: BTCPayStatus
    counts: Dict[str, int]
    dispatch_counts: Dict[str, int]
    unprocessed_events: int


class LedgerReconnectRequest(BaseModel):
    """Credential obtained by the external OAuth flow"""
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    realm_id: Optional[str] = None
    expires_in: Optional[int] = Field(default=None, gt=0)
    refresh_expires_in: Optional[int] = Field(default=None, gt=0)
