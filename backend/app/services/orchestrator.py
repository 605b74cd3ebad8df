"""Reconciliation orchestrator - drives each invoice from events to a ledger write

Per invoice the dispatch state moves pending -> dispatch-pending ->
reconciled | failed-retryable -> ... -> failed-terminal. The retry schedule is
stored on the DispatchState row so it survives restarts; outcome rows are only
written for final results (success, failed, skipped-duplicate).

All work for one invoice runs under an in-process asyncio lock plus a Redis
lock, so events and dispatches for the same invoice never interleave.
"""
import asyncio
import logging
import time
import weakref
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings, parse_backoff_schedule
from app.core.metrics import ledger_dispatch_counter, ledger_retry_counter
from app.core.otel import get_tracer
from app.db.redis import invoice_lock
from app.models.dispatch_state import DispatchState
from app.models.invoice_aggregate import InvoiceAggregate
from app.models.reconciliation_outcome import ReconciliationOutcome
from app.services.aggregator import (
    FAILED, INVALIDATED, OVERPAID, PARTIAL, PENDING, RELEVANT_EVENT_TYPES,
    DerivationError, SnapshotUnavailable, get_aggregate, mark_aggregate_failed,
    recompute_aggregate
)
from app.services.btcpay_client import BTCPayClient, BTCPayError, get_btcpay_client
from app.services.event_store import get_events_for_invoice, mark_processed
from app.services.ledger import (
    INVOICE_PAYMENT_MODE, LedgerAdapter, LedgerAuthError, LedgerPayload,
    LedgerRefreshInProgress, LedgerRejectedError, LedgerResult, LedgerTransientError,
    get_ledger_adapter
)
from app.services.ledger_auth import LedgerAuthState, get_ledger_auth_state

logger = logging.getLogger(__name__)
reconcile_logger = logging.getLogger("reconcile")
tracer = get_tracer()

# Dispatch states
STATE_PENDING = "pending"
STATE_DISPATCH_PENDING = "dispatch-pending"
STATE_RECONCILED = "reconciled"
STATE_FAILED_RETRYABLE = "failed-retryable"
STATE_FAILED_TERMINAL = "failed-terminal"
DUE_STATES = (STATE_DISPATCH_PENDING, STATE_FAILED_RETRYABLE)

# Outcome values
OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED_DUPLICATE = "skipped-duplicate"

# Statuses that never reach the ledger
NON_DISPATCHABLE = {PENDING, INVALIDATED, FAILED}

_local_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _invoice_local_lock(invoice_id: str) -> asyncio.Lock:
    lock = _local_locks.get(invoice_id)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[invoice_id] = lock
    return lock


def _now() -> datetime:
    return datetime.now(timezone.utc)


def idempotency_key(invoice_id: str, reconciliation_status: str) -> str:
    return f"{invoice_id}:{reconciliation_status}"


# ============================================================================
# QUERIES
# ============================================================================

def get_dispatch_state(invoice_id: str, db: Session) -> Optional[DispatchState]:
    return db.query(DispatchState).filter(DispatchState.invoice_id == invoice_id).first()


def get_success_outcome(key: str, db: Session) -> Optional[ReconciliationOutcome]:
    return (
        db.query(ReconciliationOutcome)
        .filter(ReconciliationOutcome.idempotency_key == key, ReconciliationOutcome.outcome == OUTCOME_SUCCESS)
        .first()
    )


def get_outcomes(invoice_id: str, db: Session) -> List[ReconciliationOutcome]:
    return (
        db.query(ReconciliationOutcome)
        .filter(ReconciliationOutcome.invoice_id == invoice_id)
        .order_by(ReconciliationOutcome.attempted_at.asc(), ReconciliationOutcome.id.asc())
        .all()
    )


def reconciled_total(invoice_id: str, db: Session) -> Decimal:
    """Sum already written to the ledger for an invoice by earlier successes"""
    total = (
        db.query(func.sum(ReconciliationOutcome.reconciled_amount))
        .filter(ReconciliationOutcome.invoice_id == invoice_id, ReconciliationOutcome.outcome == OUTCOME_SUCCESS)
        .scalar()
    )
    return Decimal(total or 0)


def get_due_invoice_ids(db: Session, limit: int = 100) -> List[str]:
    """Invoices whose dispatch (first attempt or scheduled retry) is due"""
    rows = (
        db.query(DispatchState.invoice_id)
        .filter(DispatchState.state.in_(DUE_STATES), DispatchState.next_attempt_at <= _now())
        .order_by(DispatchState.next_attempt_at.asc())
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def _get_or_create_state(invoice_id: str, db: Session) -> DispatchState:
    state = get_dispatch_state(invoice_id, db)
    if state is None:
        state = DispatchState(invoice_id=invoice_id, state=STATE_PENDING, attempts=0)
        db.add(state)
    return state


# ============================================================================
# EVALUATION
# ============================================================================

def _fail_invoice(invoice_id: str, error: str, db: Session) -> None:
    """Derivation failure: flag the aggregate and stop dispatching this invoice"""
    db.rollback()
    mark_aggregate_failed(invoice_id, db)
    state = _get_or_create_state(invoice_id, db)
    state.state = STATE_FAILED_TERMINAL
    state.last_error = error
    state.next_attempt_at = None
    db.commit()


async def evaluate_invoice(
    invoice_id: str,
    db: Session,
    client: Optional[BTCPayClient] = None,
    store_id: Optional[str] = None,
    source: str = "webhook"
) -> Optional[InvoiceAggregate]:
    """Recompute an invoice from its stored events and a fresh upstream snapshot.

    Unprocessed events are marked processed once the aggregate is committed.
    Webhook batches without settlement events are acknowledged without an
    upstream call. Returns None when the invoice could not be derived.

    Raises:
        SnapshotUnavailable: If the upstream is unreachable; events stay queued
    """
    events = get_events_for_invoice(invoice_id, db)
    pending = [e for e in events if not e.processed]
    aggregate = get_aggregate(invoice_id, db)

    # Created/Processing/ReceivedPayment carry no settlement information
    if source == "webhook" and not any(e.event_type in RELEVANT_EVENT_TYPES for e in pending):
        for event in pending:
            mark_processed(event.delivery_id, db)
        return aggregate

    store_id = (
        store_id
        or next((e.store_id for e in events if e.store_id), None)
        or (aggregate.store_id if aggregate else None)
        or settings.BTCPAY_STORE_ID
    )
    client = client or get_btcpay_client()

    try:
        if not store_id:
            raise DerivationError("No store id known for invoice")
        snapshot = await client.fetch_snapshot(store_id, invoice_id)
        aggregate = recompute_aggregate(invoice_id, events, snapshot, db)
    except SnapshotUnavailable as e:
        db.rollback()
        reconcile_logger.warning(
            f"Invoice {invoice_id}: upstream unavailable ({e}), "
            f"{len(pending)} events left queued"
        )
        raise
    except (DerivationError, BTCPayError) as e:
        error = f"{type(e).__name__}: {e}"
        reconcile_logger.error(
            f"Invoice {invoice_id} (store {store_id}, source {source}, "
            f"deliveries {[ev.delivery_id for ev in pending]}): derivation failed: {error}"
        )
        _fail_invoice(invoice_id, error, db)
        for event in pending:
            mark_processed(event.delivery_id, db, error_message=error)
        return None

    for event in pending:
        mark_processed(event.delivery_id, db)

    schedule_dispatch_if_needed(aggregate, db)
    return aggregate


def schedule_dispatch_if_needed(aggregate: InvoiceAggregate, db: Session, force: bool = False) -> Optional[DispatchState]:
    """Queue a ledger write when the aggregate reached a status not yet recorded.

    A retry already scheduled for the same status keeps its backoff, and a
    terminal failure for the same status waits for a manual re-drive unless
    force is set.
    """
    invoice_id = aggregate.invoice_id
    status = aggregate.reconciliation_status

    if status == INVALIDATED:
        reconcile_logger.info(f"Invoice {invoice_id} invalidated upstream with nothing paid, not dispatched")
        return None
    if status in NON_DISPATCHABLE:
        return None

    key = idempotency_key(invoice_id, status)
    state = _get_or_create_state(invoice_id, db)
    if get_success_outcome(key, db) is not None and not force:
        if state.state != STATE_RECONCILED:
            state.state = STATE_RECONCILED
            db.commit()
        return state

    if not force and state.target_status == status and state.state in DUE_STATES + (STATE_FAILED_TERMINAL,):
        return state

    state.state = STATE_DISPATCH_PENDING
    state.target_status = status
    state.attempts = 0
    state.next_attempt_at = _now()
    state.last_error = None
    db.commit()
    reconcile_logger.info(f"Invoice {invoice_id} queued for ledger dispatch as {status}")
    return state


# ============================================================================
# DISPATCH
# ============================================================================

def _latest_paid_at(aggregate: InvoiceAggregate) -> Optional[datetime]:
    stamps = [leg.get("paid_at") for leg in (aggregate.payments or []) if leg.get("paid_at")]
    if not stamps:
        return None
    return datetime.fromisoformat(max(stamps))


def build_ledger_payload(aggregate: InvoiceAggregate, status: str, db: Session) -> LedgerPayload:
    paid = Decimal(aggregate.paid_amount or 0)
    invoice_amount = Decimal(aggregate.invoice_amount) if aggregate.invoice_amount is not None else None
    already = reconciled_total(aggregate.invoice_id, db)
    amount = paid - already
    currency = aggregate.currency or ""

    notes = []
    if status == OVERPAID and invoice_amount is not None:
        excess = paid - invoice_amount
        notes.append(f"Overpaid by {excess} {currency}; refund not automated")
        reconcile_logger.warning(
            f"Invoice {aggregate.invoice_id} overpaid by {excess} {currency}, refund must be handled manually"
        )
    elif status == PARTIAL and invoice_amount is not None:
        notes.append(f"Partial payment: {paid} of {invoice_amount} {currency}")
    if already > 0:
        notes.append(f"Adds {amount} to {already} already recorded")

    return LedgerPayload(
        invoice_id=aggregate.invoice_id,
        reconciliation_status=status,
        paid_amount=paid,
        invoice_amount=invoice_amount,
        amount=amount,
        currency=currency,
        paid_at=_latest_paid_at(aggregate),
        idempotency_key=idempotency_key(aggregate.invoice_id, status),
        notes="; ".join(notes),
        store_id=aggregate.store_id,
        order_id=aggregate.order_id
    )


async def _call_ledger(adapter: LedgerAdapter, mode: str, payload: LedgerPayload) -> LedgerResult:
    if mode == INVOICE_PAYMENT_MODE:
        call = adapter.reconcile_invoice_payment(payload)
    else:
        call = adapter.reconcile_deposit(payload)
    attributes = {
        "reconciler.invoice_id": payload.invoice_id,
        "reconciler.idempotency_key": payload.idempotency_key,
        "reconciler.status": payload.reconciliation_status,
        "reconciler.ledger.mode": mode,
        "reconciler.amount": str(payload.amount),
        "reconciler.currency": payload.currency,
    }
    with tracer.start_as_current_span("ledger.dispatch", attributes=attributes) as span:
        try:
            result = await asyncio.wait_for(call, timeout=settings.LEDGER_CALL_TIMEOUT)
        except asyncio.TimeoutError:
            raise LedgerTransientError(f"Ledger call timed out after {settings.LEDGER_CALL_TIMEOUT}s")
        span.set_attribute("reconciler.ledger.object_id", result.ledger_object_id)
        return result


def _record_outcome(
    state: DispatchState,
    payload: LedgerPayload,
    mode: str,
    outcome: str,
    db: Session,
    ledger_object_id: Optional[str] = None,
    error_detail: Optional[str] = None
) -> ReconciliationOutcome:
    row = ReconciliationOutcome(
        invoice_id=payload.invoice_id,
        reconciliation_status=payload.reconciliation_status,
        idempotency_key=payload.idempotency_key,
        ledger_mode=mode,
        ledger_object_id=ledger_object_id,
        reconciled_amount=payload.amount if outcome == OUTCOME_SUCCESS else None,
        outcome=outcome,
        error_detail=error_detail,
        attempt_count=max(state.attempts, 1)
    )
    db.add(row)
    state.state = STATE_RECONCILED if outcome in (OUTCOME_SUCCESS, OUTCOME_SKIPPED_DUPLICATE) else STATE_FAILED_TERMINAL
    state.next_attempt_at = None
    state.last_error = error_detail
    db.commit()
    db.refresh(row)
    ledger_dispatch_counter.labels(outcome=outcome, mode=mode).inc()
    return row


def _skip_duplicate(state, payload, mode, existing, db) -> ReconciliationOutcome:
    reconcile_logger.info(
        f"Invoice {payload.invoice_id}: {payload.idempotency_key} already recorded as "
        f"{existing.ledger_object_id}, skipping"
    )
    return _record_outcome(
        state, payload, mode, OUTCOME_SKIPPED_DUPLICATE, db,
        ledger_object_id=existing.ledger_object_id
    )


async def attempt_dispatch(
    invoice_id: str,
    db: Session,
    adapter: Optional[LedgerAdapter] = None,
    auth_state: Optional[LedgerAuthState] = None
) -> Optional[ReconciliationOutcome]:
    """Run one dispatch attempt if the invoice has one due.

    Returns the outcome row for a final result, or None when nothing was due,
    a retry was scheduled, or dispatch is halted on ledger authorization.
    Callers must hold the invoice lock.
    """
    state = get_dispatch_state(invoice_id, db)
    if state is None or state.state not in DUE_STATES or not state.target_status:
        return None

    auth_state = auth_state or get_ledger_auth_state()
    if auth_state.is_halted():
        reconcile_logger.debug(f"Invoice {invoice_id}: ledger halted, dispatch stays queued")
        return None

    aggregate = get_aggregate(invoice_id, db)
    if aggregate is None:
        reconcile_logger.error(f"Invoice {invoice_id} has a dispatch state but no aggregate")
        return None

    adapter = adapter or get_ledger_adapter()
    mode = settings.LEDGER_MODE
    status = state.target_status
    payload = build_ledger_payload(aggregate, status, db)

    existing = get_success_outcome(payload.idempotency_key, db)
    if existing is not None:
        return _skip_duplicate(state, payload, mode, existing, db)

    refreshed = False
    while True:
        failed_at = time.monotonic()
        try:
            result = await _call_ledger(adapter, mode, payload)
            break
        except LedgerAuthError as e:
            if refreshed:
                auth_state.halt(str(e))
            else:
                try:
                    refreshed = await auth_state.refresh(adapter, failed_at, str(e))
                except LedgerRefreshInProgress as busy:
                    return _schedule_retry(state, payload, mode, str(busy), db)
                if refreshed:
                    # Retry right away; a refresh does not use up a backoff attempt
                    continue
            state.last_error = str(e)
            db.commit()
            ledger_dispatch_counter.labels(outcome="halted", mode=mode).inc()
            return None
        except LedgerTransientError as e:
            return _schedule_retry(state, payload, mode, str(e), db)
        except LedgerRejectedError as e:
            state.attempts += 1
            reconcile_logger.error(f"Invoice {invoice_id}: ledger rejected {payload.idempotency_key}: {e}")
            return _record_outcome(state, payload, mode, OUTCOME_FAILED, db, error_detail=str(e))

    state.attempts += 1
    try:
        outcome = _record_outcome(
            state, payload, mode, OUTCOME_SUCCESS, db,
            ledger_object_id=result.ledger_object_id
        )
    except IntegrityError:
        # Another worker recorded the same key first
        db.rollback()
        state = get_dispatch_state(invoice_id, db)
        existing = get_success_outcome(payload.idempotency_key, db)
        return _skip_duplicate(state, payload, mode, existing, db)

    reconcile_logger.info(
        f"Invoice {invoice_id} reconciled as {status}: {payload.amount} {payload.currency} "
        f"-> {result.object_type or 'ledger object'} {result.ledger_object_id}"
    )
    return outcome


def _schedule_retry(
    state: DispatchState,
    payload: LedgerPayload,
    mode: str,
    error: str,
    db: Session
) -> Optional[ReconciliationOutcome]:
    schedule = parse_backoff_schedule(settings.RETRY_BACKOFF_SCHEDULE)
    state.attempts += 1
    if state.attempts > len(schedule):
        reconcile_logger.error(
            f"Invoice {payload.invoice_id}: giving up on {payload.idempotency_key} "
            f"after {state.attempts} attempts: {error}"
        )
        return _record_outcome(state, payload, mode, OUTCOME_FAILED, db, error_detail=error)

    delay = schedule[state.attempts - 1]
    state.state = STATE_FAILED_RETRYABLE
    state.next_attempt_at = _now() + timedelta(seconds=delay)
    state.last_error = error
    db.commit()
    ledger_retry_counter.inc()
    reconcile_logger.warning(
        f"Invoice {payload.invoice_id}: ledger call failed ({error}), "
        f"retry {state.attempts}/{len(schedule)} in {delay}s"
    )
    return None


# ============================================================================
# ENTRY POINTS
# ============================================================================

async def reconcile_invoice(
    invoice_id: str,
    db: Session,
    source: str = "webhook",
    store_id: Optional[str] = None,
    adapter: Optional[LedgerAdapter] = None,
    client: Optional[BTCPayClient] = None,
    auth_state: Optional[LedgerAuthState] = None
) -> Dict:
    """Evaluate an invoice and dispatch immediately if a write became due.

    Returns a summary dict. "busy" means another worker holds the invoice and
    "deferred" means the upstream was unreachable; in both cases queued
    events stay queued.
    """
    async with _invoice_local_lock(invoice_id):
        with invoice_lock(invoice_id) as acquired:
            if not acquired:
                reconcile_logger.debug(f"Invoice {invoice_id} locked by another worker, skipping")
                return {"invoice_id": invoice_id, "busy": True}

            try:
                aggregate = await evaluate_invoice(invoice_id, db, client=client, store_id=store_id, source=source)
            except SnapshotUnavailable:
                return _summary(invoice_id, db, None, deferred=True)
            outcome = None
            if aggregate is not None and _dispatch_due(invoice_id, db):
                outcome = await attempt_dispatch(invoice_id, db, adapter=adapter, auth_state=auth_state)
            return _summary(invoice_id, db, outcome)


def _dispatch_due(invoice_id: str, db: Session) -> bool:
    state = get_dispatch_state(invoice_id, db)
    if state is None or state.state not in DUE_STATES or state.next_attempt_at is None:
        return False
    next_attempt_at = state.next_attempt_at
    if next_attempt_at.tzinfo is None:
        next_attempt_at = next_attempt_at.replace(tzinfo=timezone.utc)
    return next_attempt_at <= _now()


async def dispatch_invoice(
    invoice_id: str,
    db: Session,
    adapter: Optional[LedgerAdapter] = None,
    auth_state: Optional[LedgerAuthState] = None
) -> Dict:
    """Run a due dispatch (scheduled retry) for one invoice under its lock"""
    async with _invoice_local_lock(invoice_id):
        with invoice_lock(invoice_id) as acquired:
            if not acquired:
                return {"invoice_id": invoice_id, "busy": True}
            outcome = None
            if _dispatch_due(invoice_id, db):
                outcome = await attempt_dispatch(invoice_id, db, adapter=adapter, auth_state=auth_state)
            return _summary(invoice_id, db, outcome)


async def redrive_invoice(
    invoice_id: str,
    db: Session,
    adapter: Optional[LedgerAdapter] = None,
    client: Optional[BTCPayClient] = None,
    auth_state: Optional[LedgerAuthState] = None
) -> Dict:
    """Operator re-drive: fresh aggregate pass and an immediate dispatch attempt.

    Resets only this invoice's schedule, including after a terminal failure.

    Raises:
        LookupError: If nothing is known about the invoice
    """
    if get_aggregate(invoice_id, db) is None and not get_events_for_invoice(invoice_id, db):
        raise LookupError(f"Unknown invoice {invoice_id}")

    async with _invoice_local_lock(invoice_id):
        with invoice_lock(invoice_id) as acquired:
            if not acquired:
                return {"invoice_id": invoice_id, "busy": True}

            reconcile_logger.info(f"Manual re-drive of invoice {invoice_id}")
            try:
                aggregate = await evaluate_invoice(invoice_id, db, client=client, source="redrive")
            except SnapshotUnavailable:
                return _summary(invoice_id, db, None, deferred=True)
            if aggregate is None:
                return _summary(invoice_id, db, None)

            schedule_dispatch_if_needed(aggregate, db, force=True)
            outcome = await attempt_dispatch(invoice_id, db, adapter=adapter, auth_state=auth_state)
            return _summary(invoice_id, db, outcome)


def _summary(
    invoice_id: str,
    db: Session,
    outcome: Optional[ReconciliationOutcome],
    deferred: bool = False
) -> Dict:
    aggregate = get_aggregate(invoice_id, db)
    state = get_dispatch_state(invoice_id, db)
    return {
        "invoice_id": invoice_id,
        "busy": False,
        "deferred": deferred,
        "reconciliation_status": aggregate.reconciliation_status if aggregate else None,
        "dispatch_state": state.state if state else None,
        "outcome": outcome.outcome if outcome else None,
        "ledger_object_id": outcome.ledger_object_id if outcome else None,
    }
