"""Reconciliation worker tests - queue draining and due retries"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.models.payment_event import PaymentEvent
from app.services.ledger import LedgerTransientError
from app.services.orchestrator import STATE_FAILED_RETRYABLE, STATE_RECONCILED, get_dispatch_state
from app.services.receiver import receive_delivery
from app.tasks import reconcile_worker
from app.tasks.reconcile_worker import run_worker_pass

from conftest import TestSessionLocal, make_delivery, sign


def deliver(db, delivery_id, event_type, invoice_id):
    body = make_delivery(delivery_id, event_type, invoice_id)
    return receive_delivery(body, sign(body), db)


async def drain():
    tasks = await run_worker_pass(session_factory=TestSessionLocal)
    await asyncio.gather(*tasks)
    return tasks


@pytest.mark.critical
class TestWorkerPass:

    @pytest.mark.asyncio
    async def test_queued_events_are_reconciled(self, reconciler):
        db, ledger, btcpay = reconciler["db"], reconciler["ledger"], reconciler["btcpay"]
        btcpay.set_invoice("INV-W1", "10.00", status="Settled", payments=[("tx-w1-0", "10.00")])
        btcpay.set_invoice("INV-W2", "20.00", status="Settled", payments=[("tx-w2-0", "20.00")])
        deliver(db, "w-1", "InvoiceSettled", "INV-W1")
        deliver(db, "w-2", "InvoiceSettled", "INV-W2")

        tasks = await drain()

        assert len(tasks) == 2
        db.expire_all()
        assert db.query(PaymentEvent).filter(PaymentEvent.processed.is_(False)).count() == 0
        assert sorted(c["payload"].invoice_id for c in ledger.calls) == ["INV-W1", "INV-W2"]
        assert get_dispatch_state("INV-W1", db).state == STATE_RECONCILED
        assert reconcile_worker._in_flight == set()

    @pytest.mark.asyncio
    async def test_nothing_queued_spawns_nothing(self, reconciler):
        assert await drain() == []

    @pytest.mark.asyncio
    async def test_due_retry_is_dispatched(self, reconciler):
        db, ledger, btcpay = reconciler["db"], reconciler["ledger"], reconciler["btcpay"]
        btcpay.set_invoice("INV-W3", "10.00", status="Settled", payments=[("tx-w3-0", "10.00")])
        ledger.fail_next(LedgerTransientError("503"))
        deliver(db, "w-3", "InvoiceSettled", "INV-W3")

        await drain()
        db.expire_all()
        state = get_dispatch_state("INV-W3", db)
        assert state.state == STATE_FAILED_RETRYABLE

        # Retry not due yet
        assert await drain() == []

        state.next_attempt_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        db.commit()
        await drain()

        db.expire_all()
        assert get_dispatch_state("INV-W3", db).state == STATE_RECONCILED
        assert len(ledger.calls) == 2

    @pytest.mark.asyncio
    async def test_upstream_outage_leaves_events_for_next_pass(self, reconciler):
        db, ledger, btcpay = reconciler["db"], reconciler["ledger"], reconciler["btcpay"]
        btcpay.set_invoice("INV-W4", "10.00", status="Settled", payments=[("tx-w4-0", "10.00")])
        btcpay.fail_status = 503
        deliver(db, "w-4", "InvoiceSettled", "INV-W4")

        await drain()
        db.expire_all()
        assert db.query(PaymentEvent).filter(PaymentEvent.delivery_id == "w-4").first().processed is False

        btcpay.fail_status = None
        await drain()
        db.expire_all()
        assert db.query(PaymentEvent).filter(PaymentEvent.delivery_id == "w-4").first().processed is True
        assert len(ledger.calls) == 1

    @pytest.mark.asyncio
    async def test_events_without_invoice_are_cleared(self, reconciler):
        db = reconciler["db"]
        deliver(db, "w-5", "InvoiceCreated", None)

        tasks = await drain()

        assert tasks == []
        db.expire_all()
        event = db.query(PaymentEvent).filter(PaymentEvent.delivery_id == "w-5").first()
        assert event.processed is True
        assert event.error_message == "No invoice id in payload"

    @pytest.mark.asyncio
    async def test_task_error_is_contained(self, reconciler, monkeypatch):
        db, btcpay = reconciler["db"], reconciler["btcpay"]
        deliver(db, "w-6", "InvoiceSettled", "INV-W6")

        async def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(reconcile_worker, "reconcile_invoice", explode)

        await drain()

        db.expire_all()
        assert db.query(PaymentEvent).filter(PaymentEvent.delivery_id == "w-6").first().processed is False
        assert reconcile_worker._in_flight == set()


@pytest.mark.high
class TestInvoiceTaskLifecycle:

    @pytest.mark.asyncio
    async def test_spawned_tasks_are_held_until_done(self, reconciler):
        db, btcpay = reconciler["db"], reconciler["btcpay"]
        btcpay.set_invoice("INV-W7", "10.00", status="Settled", payments=[("tx-w7-0", "10.00")])
        deliver(db, "w-7", "InvoiceSettled", "INV-W7")

        tasks = await run_worker_pass(session_factory=TestSessionLocal)
        assert len(tasks) == 1
        assert set(tasks) <= reconcile_worker._tasks

        await asyncio.gather(*tasks)
        assert reconcile_worker._tasks == set()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_tasks(self, reconciler, monkeypatch):
        db, ledger = reconciler["db"], reconciler["ledger"]
        deliver(db, "w-8", "InvoiceSettled", "INV-W8")
        started = asyncio.Event()

        async def stuck(*args, **kwargs):
            started.set()
            await asyncio.Event().wait()

        monkeypatch.setattr(reconcile_worker, "reconcile_invoice", stuck)

        tasks = await run_worker_pass(session_factory=TestSessionLocal)
        await asyncio.wait_for(started.wait(), timeout=1)
        await reconcile_worker.cancel_inflight_tasks()

        assert all(t.cancelled() for t in tasks)
        assert reconcile_worker._tasks == set()
        assert reconcile_worker._in_flight == set()
        assert ledger.calls == []
        db.expire_all()
        # Left queued for the next process
        assert db.query(PaymentEvent).filter(PaymentEvent.delivery_id == "w-8").first().processed is False

    @pytest.mark.asyncio
    async def test_cancel_with_nothing_running(self, reconciler):
        await reconcile_worker.cancel_inflight_tasks()

        assert reconcile_worker._tasks == set()
