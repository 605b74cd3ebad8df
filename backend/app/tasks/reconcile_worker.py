"""Background worker that drains queued payment events and due ledger dispatches

Polls the event table (processed=False rows are the queue) and the dispatch
schedule, and spawns one async task per invoice without blocking the polling
loop. Invoices already in flight are skipped until their task finishes.
"""
import asyncio
import logging
from typing import Callable, List, Set

from app.core.config import settings
from app.core.metrics import unprocessed_events_gauge
from app.core.otel import get_tracer
from app.db.session import SessionLocal
from app.services.event_store import (
    count_unprocessed, get_pending_invoice_ids, mark_orphan_events_processed
)
from app.services.orchestrator import dispatch_invoice, get_due_invoice_ids, reconcile_invoice

logger = logging.getLogger(__name__)
reconcile_logger = logging.getLogger("reconcile")
tracer = get_tracer()

_in_flight: Set[str] = set()
# Strong references to spawned invoice tasks until they finish
_tasks: Set[asyncio.Task] = set()


async def process_invoice_task(invoice_id: str, kind: str, session_factory: Callable = SessionLocal) -> None:
    """Reconcile or dispatch one invoice (runs concurrently with other invoices)

    Args:
        invoice_id: BTCPay invoice id
        kind: "events" to evaluate queued events, "dispatch" for a due retry
        session_factory: Creates the DB session owned by this task
    """
    db = session_factory()
    try:
        with tracer.start_as_current_span(
            "reconcile.invoice",
            attributes={"reconciler.invoice_id": invoice_id, "reconciler.trigger": kind}
        ):
            if kind == "events":
                result = await reconcile_invoice(invoice_id, db, source="webhook")
            else:
                result = await dispatch_invoice(invoice_id, db)
        if result.get("outcome"):
            reconcile_logger.info(
                f"Invoice {invoice_id}: {result['reconciliation_status']} -> {result['outcome']} "
                f"({result.get('ledger_object_id') or 'no ledger object'})"
            )
    except Exception as e:
        # Failures stay queued (events unprocessed or dispatch still due) and are retried next pass
        reconcile_logger.error(f"Worker failed on invoice {invoice_id} ({kind}): {e}", exc_info=True)
        db.rollback()
    finally:
        try:
            db.close()
        except Exception as e:
            logger.warning(f"Error closing DB session for invoice {invoice_id}: {e}")
        _in_flight.discard(invoice_id)


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return task


async def cancel_inflight_tasks() -> None:
    """Cancel invoice tasks still running (shutdown) and wait for their cleanup"""
    pending = list(_tasks)
    if not pending:
        return
    logger.info(f"Cancelling {len(pending)} in-flight invoice tasks")
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def run_worker_pass(session_factory: Callable = SessionLocal) -> List[asyncio.Task]:
    """Find queued work and spawn a task per invoice. Returns the spawned tasks."""
    db = session_factory()
    try:
        mark_orphan_events_processed(db)
        event_invoices = get_pending_invoice_ids(db, limit=settings.WORKER_BATCH_SIZE)
        due_invoices = get_due_invoice_ids(db, limit=settings.WORKER_BATCH_SIZE)
        unprocessed_events_gauge.set(count_unprocessed(db))
    finally:
        db.close()

    tasks = []
    for invoice_id in event_invoices:
        if invoice_id in _in_flight:
            continue
        _in_flight.add(invoice_id)
        tasks.append(_spawn(process_invoice_task(invoice_id, "events", session_factory)))
    for invoice_id in due_invoices:
        if invoice_id in _in_flight:
            continue
        _in_flight.add(invoice_id)
        tasks.append(_spawn(process_invoice_task(invoice_id, "dispatch", session_factory)))
    return tasks


async def reconcile_worker_task() -> None:
    """Main worker loop; runs until cancelled"""
    logger.info("Starting reconciliation worker task")

    while True:
        try:
            tasks = await run_worker_pass()
            if tasks:
                logger.debug(f"Spawned {len(tasks)} invoice tasks")
            await asyncio.sleep(settings.WORKER_POLL_INTERVAL)
        except asyncio.CancelledError:
            logger.info("Reconciliation worker stopped")
            raise
        except Exception as e:
            logger.error(f"Error in reconciliation worker loop: {e}", exc_info=True)
            # Wait a bit before retrying to avoid tight error loops
            await asyncio.sleep(5)
