"""Read models for the operator API - feed, detail and service status"""
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.dispatch_state import DispatchState
from app.models.invoice_aggregate import InvoiceAggregate
from app.models.reconciliation_outcome import ReconciliationOutcome
from app.services.event_store import count_unprocessed, get_events_for_invoice
from app.services.orchestrator import get_outcomes

logger = logging.getLogger(__name__)


def _latest_outcomes(invoice_ids: List[str], db: Session) -> Dict[str, ReconciliationOutcome]:
    """Most recent outcome per invoice, batch loaded"""
    if not invoice_ids:
        return {}
    latest_ids = (
        db.query(func.max(ReconciliationOutcome.id))
        .filter(ReconciliationOutcome.invoice_id.in_(invoice_ids))
        .group_by(ReconciliationOutcome.invoice_id)
    )
    rows = db.query(ReconciliationOutcome).filter(ReconciliationOutcome.id.in_(latest_ids)).all()
    return {row.invoice_id: row for row in rows}


def _summary(aggregate: InvoiceAggregate, state: Optional[DispatchState], latest: Optional[ReconciliationOutcome]) -> Dict:
    return {
        "invoice_id": aggregate.invoice_id,
        "store_id": aggregate.store_id,
        "order_id": aggregate.order_id,
        "invoice_amount": aggregate.invoice_amount,
        "paid_amount": aggregate.paid_amount,
        "currency": aggregate.currency,
        "payment_count": aggregate.payment_count,
        "upstream_status": aggregate.upstream_status,
        "reconciliation_status": aggregate.reconciliation_status,
        "dispatch_state": state.state if state else None,
        "dispatch_attempts": state.attempts if state else 0,
        "next_attempt_at": state.next_attempt_at if state else None,
        "last_error": state.last_error if state else None,
        "latest_outcome": latest,
        "last_event_at": aggregate.last_event_at,
        "updated_at": aggregate.updated_at,
    }


def list_reconciliations(
    db: Session,
    status: Optional[str] = None,
    dispatch_state: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
) -> Tuple[List[Dict], int]:
    """Aggregates joined with dispatch state and latest outcome, newest activity first"""
    query = db.query(InvoiceAggregate, DispatchState).outerjoin(
        DispatchState, DispatchState.invoice_id == InvoiceAggregate.invoice_id
    )
    if status:
        query = query.filter(InvoiceAggregate.reconciliation_status == status)
    if dispatch_state:
        query = query.filter(DispatchState.state == dispatch_state)

    total = query.count()
    rows = (
        query.order_by(InvoiceAggregate.updated_at.desc(), InvoiceAggregate.invoice_id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    latest = _latest_outcomes([aggregate.invoice_id for aggregate, _ in rows], db)
    items = [_summary(aggregate, state, latest.get(aggregate.invoice_id)) for aggregate, state in rows]
    return items, total


def get_reconciliation_detail(invoice_id: str, db: Session) -> Optional[Dict]:
    aggregate = db.query(InvoiceAggregate).filter(InvoiceAggregate.invoice_id == invoice_id).first()
    if aggregate is None:
        return None
    state = db.query(DispatchState).filter(DispatchState.invoice_id == invoice_id).first()
    outcomes = get_outcomes(invoice_id, db)
    detail = _summary(aggregate, state, outcomes[-1] if outcomes else None)
    detail.update({
        "payments": aggregate.payments or [],
        "additional_status": aggregate.additional_status,
        "outcomes": outcomes,
        "events": get_events_for_invoice(invoice_id, db),
    })
    return detail


def get_status_counts(db: Session) -> Dict:
    """Counts per reconciliation status and dispatch state, plus the event backlog"""
    counts = dict(
        db.query(InvoiceAggregate.reconciliation_status, func.count(InvoiceAggregate.invoice_id))
        .group_by(InvoiceAggregate.reconciliation_status)
        .all()
    )
    dispatch_counts = dict(
        db.query(DispatchState.state, func.count(DispatchState.invoice_id))
        .group_by(DispatchState.state)
        .all()
    )
    return {
        "counts": counts,
        "dispatch_counts": dispatch_counts,
        "unprocessed_events": count_unprocessed(db),
    }
