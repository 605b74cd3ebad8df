"""Operator API routes - reconciliation feed, re-drive and ledger status"""
import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import require_operator
from app.db.session import get_db
from app.schemas.reconciliation import (
    LedgerReconnectRequest, PaymentEventResponse, ReconciliationDetail,
    ReconciliationList, RedriveResponse, StatusResponse
)
from app.services.btcpay_client import get_btcpay_client
from app.services.event_store import get_recent_events
from app.services.ledger import get_ledger_adapter
from app.services.ledger.credentials import save_credential
from app.services.ledger_auth import HALTED, get_ledger_auth_state
from app.services.orchestrator import redrive_invoice
from app.services.reconciliation_service import (
    get_reconciliation_detail, get_status_counts, list_reconciliations
)

router = APIRouter(prefix="/api", tags=["reconciliation"], dependencies=[Depends(require_operator)])
logger = logging.getLogger(__name__)
ledger_logger = logging.getLogger("ledger")

HEALTH_CHECK_TIMEOUT = 5.0


@router.get("/reconciliations", response_model=ReconciliationList)
def list_reconciliations_endpoint(
    status: Optional[str] = Query(None, description="Filter by reconciliation status"),
    dispatch_state: Optional[str] = Query(None, description="Filter by dispatch state"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Reconciliation feed for the operator UI"""
    items, total = list_reconciliations(db, status=status, dispatch_state=dispatch_state, limit=limit, offset=offset)
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@router.get("/reconciliations/{invoice_id}", response_model=ReconciliationDetail)
def get_reconciliation_endpoint(invoice_id: str, db: Session = Depends(get_db)):
    """Aggregate, dispatch state, every outcome and every event of one invoice"""
    detail = get_reconciliation_detail(invoice_id, db)
    if detail is None:
        raise HTTPException(404, "Invoice not found")
    return detail


@router.post("/reconciliations/{invoice_id}/redrive", response_model=RedriveResponse)
async def redrive_endpoint(invoice_id: str, db: Session = Depends(get_db)):
    """Force a fresh aggregate pass and dispatch attempt for one invoice"""
    try:
        result = await redrive_invoice(invoice_id, db)
    except LookupError:
        raise HTTPException(404, "Invoice not found")
    if result.get("busy"):
        raise HTTPException(409, "Invoice is being processed, try again shortly")
    if result.get("deferred"):
        raise HTTPException(503, "BTCPay is unreachable, try again later")
    return result


@router.get("/webhook-events", response_model=List[PaymentEventResponse])
def webhook_events_endpoint(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Most recent webhook deliveries"""
    return get_recent_events(db, limit=limit)


@router.get("/status", response_model=StatusResponse)
async def status_endpoint(db: Session = Depends(get_db)):
    """Ledger and BTCPay connection state plus backlog counts"""
    auth_state = get_ledger_auth_state()
    state = auth_state.get_state()

    healthy = None
    try:
        healthy = await asyncio.wait_for(get_ledger_adapter().health(), timeout=HEALTH_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        healthy = False

    try:
        btcpay = await asyncio.wait_for(get_btcpay_client().connection_status(), timeout=HEALTH_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        btcpay = {"connected": False, "authenticated": False, "error": "BTCPay health check timed out"}

    counts = get_status_counts(db)
    return {
        "ledger": {
            "backend": settings.LEDGER_BACKEND,
            "mode": settings.LEDGER_MODE,
            "auth_state": state,
            "reconnect_required": state == HALTED,
            "reason": auth_state.get_reason(),
            "healthy": healthy,
        },
        "btcpay": btcpay,
        **counts,
    }


@router.post("/ledger/reconnect")
def ledger_reconnect_endpoint(request_data: LedgerReconnectRequest, db: Session = Depends(get_db)):
    """Store a fresh ledger credential and resume halted dispatch"""
    try:
        save_credential(
            settings.LEDGER_BACKEND,
            request_data.access_token,
            db,
            refresh_token=request_data.refresh_token,
            realm_id=request_data.realm_id,
            expires_in=request_data.expires_in,
            refresh_expires_in=request_data.refresh_expires_in
        )
    except ValueError as e:
        # Encryption key missing or invalid
        raise HTTPException(500, str(e))

    get_ledger_auth_state().resume()
    ledger_logger.info(f"Operator reconnected ledger backend {settings.LEDGER_BACKEND}")
    return {"status": "reconnected", "auth_state": get_ledger_auth_state().get_state()}
