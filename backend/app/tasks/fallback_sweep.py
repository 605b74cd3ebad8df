"""Fallback reconciler - periodically lists settled/expired invoices upstream

Catches invoices whose webhooks were lost. Every invoice found runs through
the same aggregate -> dispatch path as webhook events, so a re-run is safe.
The cursor only advances after a sweep in which every invoice was evaluated.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from app.core.config import settings
from app.core.metrics import sweep_invoices_counter, sweep_runs_counter
from app.core.otel import get_tracer
from app.db.helpers import SWEEP_CURSOR_KEY, get_system_setting, set_system_setting
from app.db.redis import SWEEP_LOCK_KEY, distributed_lock
from app.db.session import SessionLocal
from app.services.aggregator import (
    FULL, OVERPAID, UPSTREAM_EXPIRED, UPSTREAM_SETTLED, DerivationError,
    SnapshotUnavailable, get_aggregate
)
from app.services.btcpay_client import BTCPayClient, BTCPayError, get_btcpay_client
from app.services.orchestrator import (
    STATE_FAILED_TERMINAL, STATE_RECONCILED, get_dispatch_state, reconcile_invoice
)

logger = logging.getLogger(__name__)
sweep_logger = logging.getLogger("sweep")
tracer = get_tracer()

SWEEP_STATUSES = (UPSTREAM_SETTLED, UPSTREAM_EXPIRED)


def get_sweep_cursor(db) -> Optional[datetime]:
    value = get_system_setting(SWEEP_CURSOR_KEY, db=db)
    if not value:
        return None
    try:
        cursor = datetime.fromisoformat(value)
    except ValueError:
        sweep_logger.warning(f"Ignoring unparseable sweep cursor {value!r}")
        return None
    return cursor if cursor.tzinfo else cursor.replace(tzinfo=timezone.utc)


def sweep_window_start(cursor: Optional[datetime], now: datetime) -> datetime:
    """Earliest invoice creation time the sweep lists.

    BTCPay filters the listing on creation time, but an invoice settles
    (confirmations, late payments) well after it is created. Every sweep
    therefore re-lists the whole settle window as well as everything since
    the last successful sweep.
    """
    if cursor is None:
        return now - timedelta(seconds=settings.FALLBACK_SWEEP_LOOKBACK)
    return min(
        cursor - timedelta(seconds=settings.FALLBACK_SWEEP_OVERLAP),
        now - timedelta(seconds=settings.FALLBACK_SWEEP_SETTLE_WINDOW)
    )


def _needs_reconcile(invoice_id: str, db) -> bool:
    """Skip invoices already finished (reconciled in full) or waiting on an operator"""
    state = get_dispatch_state(invoice_id, db)
    if state is None:
        return True
    if state.state == STATE_FAILED_TERMINAL:
        return False
    if state.state == STATE_RECONCILED:
        aggregate = get_aggregate(invoice_id, db)
        return aggregate is None or aggregate.reconciliation_status not in (FULL, OVERPAID)
    return True


async def run_sweep(
    session_factory: Callable = SessionLocal,
    client: Optional[BTCPayClient] = None,
    store_id: Optional[str] = None
) -> Dict:
    """Run one sweep over upstream invoices since the stored cursor

    Returns:
        Dict with status ("success", "partial", "failed", "skipped") and counts
    """
    store_id = store_id or settings.BTCPAY_STORE_ID
    if not store_id:
        sweep_logger.warning("BTCPAY_STORE_ID is not set, fallback sweep skipped")
        sweep_runs_counter.labels(status="skipped").inc()
        return {"status": "skipped", "reason": "no store id"}

    with distributed_lock(SWEEP_LOCK_KEY, timeout=max(settings.FALLBACK_SWEEP_INTERVAL, 60)) as acquired:
        if not acquired:
            sweep_logger.info("Fallback sweep already running in another process")
            sweep_runs_counter.labels(status="skipped").inc()
            return {"status": "skipped", "reason": "locked"}

        client = client or get_btcpay_client()
        started_at = datetime.now(timezone.utc)
        db = session_factory()
        try:
            since = sweep_window_start(get_sweep_cursor(db), started_at)

            try:
                invoices = await client.list_invoices(store_id, SWEEP_STATUSES, start_date=since)
            except (SnapshotUnavailable, BTCPayError, DerivationError) as e:
                sweep_logger.error(f"Fallback sweep could not list invoices: {e}")
                sweep_runs_counter.labels(status="failed").inc()
                return {"status": "failed", "error": str(e)}

            checked = 0
            reconciled = 0
            deferred = 0
            for invoice in invoices:
                invoice_id = invoice.get("id") if isinstance(invoice, dict) else None
                if not invoice_id or not _needs_reconcile(invoice_id, db):
                    continue
                checked += 1
                with tracer.start_as_current_span(
                    "reconcile.invoice",
                    attributes={"reconciler.invoice_id": invoice_id, "reconciler.trigger": "sweep"}
                ):
                    result = await reconcile_invoice(invoice_id, db, source="sweep", store_id=store_id, client=client)
                if result.get("busy") or result.get("deferred"):
                    deferred += 1
                elif result.get("outcome"):
                    reconciled += 1
            sweep_invoices_counter.inc(checked)

            if deferred:
                status = "partial"
                sweep_logger.warning(f"Fallback sweep left {deferred} invoices for the next run, cursor kept")
            else:
                status = "success"
                set_system_setting(SWEEP_CURSOR_KEY, started_at.isoformat(), db=db)

            sweep_runs_counter.labels(status=status).inc()
            sweep_logger.info(
                f"Fallback sweep since {since.isoformat()}: {len(invoices)} listed, "
                f"{checked} evaluated, {reconciled} dispatched, {deferred} deferred"
            )
            return {
                "status": status,
                "listed": len(invoices),
                "checked": checked,
                "reconciled": reconciled,
                "deferred": deferred,
            }
        finally:
            db.close()


async def fallback_sweep_task() -> None:
    """Background loop running the sweep every FALLBACK_SWEEP_INTERVAL seconds"""
    logger.info("Starting fallback sweep task")
    while True:
        try:
            await run_sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            sweep_logger.error(f"Error in fallback sweep: {e}", exc_info=True)
            sweep_runs_counter.labels(status="failed").inc()
        await asyncio.sleep(settings.FALLBACK_SWEEP_INTERVAL)
