"""Invoice aggregator tests - status derivation, leg merging and upstream parsing"""
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.services.aggregator import (
    FAILED, FULL, INVALIDATED, OVERPAID, PARTIAL, PENDING, DerivationError,
    InvoiceSnapshot, PaymentLeg, derive_reconciliation_status, mark_aggregate_failed,
    recompute_aggregate, upstream_status_from_events
)
from app.services.btcpay_client import parse_invoice_snapshot, parse_payment_legs
from app.services.event_store import get_events_for_invoice, record_delivery


def leg(payment_id, amount, status="Settled", minute=1):
    return PaymentLeg(
        id=payment_id,
        txid=payment_id.rsplit("-", 1)[0],
        amount=Decimal(amount),
        crypto_amount=Decimal(amount) / Decimal("50000"),
        payment_method="BTC-CHAIN",
        status=status,
        paid_at=datetime(2026, 10, 1, 12, minute, tzinfo=timezone.utc)
    )


def snapshot(invoice_id, amount, status, legs=(), order_id=None):
    return InvoiceSnapshot(
        invoice_id=invoice_id,
        store_id="store-test",
        amount=Decimal(amount) if amount is not None else None,
        currency="USD",
        status=status,
        order_id=order_id,
        legs=list(legs)
    )


def add_event(db, delivery_id, event_type, invoice_id="INV-1"):
    record_delivery(delivery_id, event_type, invoice_id, "store-test", "{}", db)


@pytest.mark.critical
class TestDeriveStatus:
    """Pure status table"""

    @pytest.mark.parametrize("paid,invoice,upstream,expected", [
        ("0", "100", "New", PENDING),
        ("0", "100", "Expired", INVALIDATED),
        ("0", "100", "Invalid", INVALIDATED),
        ("40", "100", "New", PARTIAL),
        ("40", "100", "Expired", PARTIAL),
        ("40", "100", "Invalid", PARTIAL),
        ("100", "100", "Settled", FULL),
        ("100", "100", "Processing", PENDING),
        ("100", "100", "Expired", FULL),
        ("101", "100", "Settled", FULL),
        ("101.01", "100", "Settled", OVERPAID),
        ("25", None, "Settled", FULL),
        ("25", None, "New", PENDING),
    ])
    def test_status_table(self, paid, invoice, upstream, expected):
        invoice_amount = Decimal(invoice) if invoice is not None else None

        assert derive_reconciliation_status(Decimal(paid), invoice_amount, upstream, Decimal("0.01")) == expected

    def test_tolerance_band_is_inclusive(self):
        assert derive_reconciliation_status(Decimal("99.00"), Decimal("100"), "Settled", Decimal("0.01")) == FULL
        assert derive_reconciliation_status(Decimal("98.99"), Decimal("100"), "Settled", Decimal("0.01")) == PARTIAL
        assert derive_reconciliation_status(Decimal("101.00"), Decimal("100"), "Settled", Decimal("0.01")) == FULL

    def test_negative_amounts_raise(self):
        with pytest.raises(DerivationError):
            derive_reconciliation_status(Decimal("-1"), Decimal("100"), "Settled")
        with pytest.raises(DerivationError):
            derive_reconciliation_status(Decimal("1"), Decimal("-100"), "Settled")


@pytest.mark.high
class TestUpstreamStatusFromEvents:

    def test_settled_not_undone_by_stale_expired(self, db_session):
        add_event(db_session, "d-1", "InvoiceSettled")
        add_event(db_session, "d-2", "InvoiceExpired")

        assert upstream_status_from_events(get_events_for_invoice("INV-1", db_session)) == "Settled"

    def test_ignores_informational_events(self, db_session):
        add_event(db_session, "d-1", "InvoiceCreated")
        add_event(db_session, "d-2", "InvoiceReceivedPayment")

        assert upstream_status_from_events(get_events_for_invoice("INV-1", db_session)) is None


@pytest.mark.critical
class TestRecomputeAggregate:

    def test_full_payment(self, db_session):
        add_event(db_session, "d-1", "InvoiceSettled")
        events = get_events_for_invoice("INV-1", db_session)

        aggregate = recompute_aggregate("INV-1", events, snapshot("INV-1", "100", "Settled", [leg("tx1-0", "100")]), db_session)

        assert aggregate.reconciliation_status == FULL
        assert aggregate.paid_amount == Decimal("100")
        assert aggregate.payment_count == 1
        assert aggregate.currency == "USD"

    def test_legs_merged_by_id(self, db_session):
        add_event(db_session, "d-1", "InvoicePaymentSettled")
        events = get_events_for_invoice("INV-1", db_session)
        recompute_aggregate("INV-1", events, snapshot("INV-1", "100", "New", [leg("tx1-0", "40")]), db_session)

        # Same leg reported again alongside a new one
        aggregate = recompute_aggregate(
            "INV-1", events,
            snapshot("INV-1", "100", "New", [leg("tx1-0", "40"), leg("tx2-0", "30", minute=5)]),
            db_session
        )

        assert aggregate.payment_count == 2
        assert aggregate.paid_amount == Decimal("70")
        assert aggregate.reconciliation_status == PARTIAL

    def test_unconfirmed_legs_do_not_count(self, db_session):
        aggregate = recompute_aggregate(
            "INV-1", [],
            snapshot("INV-1", "100", "Processing", [leg("tx1-0", "100", status="Processing")]),
            db_session
        )

        assert aggregate.paid_amount == Decimal("0")
        assert aggregate.reconciliation_status == PENDING

    def test_leg_order_does_not_matter(self, db_session):
        legs = [leg("tx1-0", "60", minute=1), leg("tx2-0", "40", minute=2)]
        first = recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "Settled", legs), db_session)
        second = recompute_aggregate("INV-2", [], snapshot("INV-2", "100", "Settled", list(reversed(legs))), db_session)

        assert first.paid_amount == second.paid_amount
        assert first.payments == second.payments
        assert first.reconciliation_status == second.reconciliation_status == FULL

    def test_status_never_regresses(self, db_session):
        recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "Settled", [leg("tx1-0", "100")]), db_session)

        # Upstream later reports fewer legs (e.g. reorg view); stored legs are kept
        aggregate = recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "Settled", []), db_session)

        assert aggregate.paid_amount == Decimal("100")
        assert aggregate.reconciliation_status == FULL

    def test_invoice_amount_locked_on_first_sight(self, db_session):
        recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "New", [leg("tx1-0", "50")]), db_session)

        aggregate = recompute_aggregate("INV-1", [], snapshot("INV-1", "50", "Settled", [leg("tx1-0", "50")]), db_session)

        assert aggregate.invoice_amount == Decimal("100")
        assert aggregate.reconciliation_status == PARTIAL

    def test_expired_with_partial_payment_is_partial(self, db_session):
        add_event(db_session, "d-1", "InvoiceExpired")
        events = get_events_for_invoice("INV-1", db_session)

        aggregate = recompute_aggregate("INV-1", events, snapshot("INV-1", "100", "Expired", [leg("tx1-0", "30")]), db_session)

        assert aggregate.reconciliation_status == PARTIAL
        assert aggregate.upstream_status == "Expired"

    def test_late_payment_after_expiry_upgrades(self, db_session):
        recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "Expired", [leg("tx1-0", "30")]), db_session)

        aggregate = recompute_aggregate(
            "INV-1", [],
            snapshot("INV-1", "100", "Expired", [leg("tx1-0", "30"), leg("tx2-0", "70", minute=30)]),
            db_session
        )

        assert aggregate.reconciliation_status == FULL

    def test_top_up_invoice_settles_as_full(self, db_session):
        aggregate = recompute_aggregate("INV-1", [], snapshot("INV-1", None, "Settled", [leg("tx1-0", "12.34")]), db_session)

        assert aggregate.invoice_amount is None
        assert aggregate.reconciliation_status == FULL

    def test_order_id_kept_from_metadata(self, db_session):
        aggregate = recompute_aggregate("INV-1", [], snapshot("INV-1", "10", "Settled", [leg("tx1-0", "10")], order_id="ORD-9"), db_session)

        assert aggregate.order_id == "ORD-9"

    def test_snapshot_for_other_invoice_raises(self, db_session):
        with pytest.raises(DerivationError):
            recompute_aggregate("INV-1", [], snapshot("INV-OTHER", "10", "Settled"), db_session)

    def test_stored_payload_must_be_json(self, db_session):
        record_delivery("d-bad", "InvoiceSettled", "INV-1", "store-test", "not-json", db_session)
        events = get_events_for_invoice("INV-1", db_session)

        with pytest.raises(DerivationError):
            recompute_aggregate("INV-1", events, snapshot("INV-1", "10", "Settled"), db_session)


@pytest.mark.high
class TestMarkFailed:

    def test_pending_becomes_failed(self, db_session):
        recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "New"), db_session)

        assert mark_aggregate_failed("INV-1", db_session).reconciliation_status == FAILED

    def test_earned_status_is_kept(self, db_session):
        recompute_aggregate("INV-1", [], snapshot("INV-1", "100", "Settled", [leg("tx1-0", "100")]), db_session)

        assert mark_aggregate_failed("INV-1", db_session).reconciliation_status == FULL

    def test_unknown_invoice_gets_failed_row(self, db_session):
        assert mark_aggregate_failed("INV-NEW", db_session).reconciliation_status == FAILED


@pytest.mark.high
class TestParseUpstream:

    def test_legs_converted_at_invoice_rate(self):
        legs = parse_payment_legs([{
            "paymentMethodId": "BTC-CHAIN",
            "rate": "60000",
            "payments": [{"id": "abc-1", "value": "0.001", "status": "Settled", "receivedDate": 1760000000}],
        }])

        assert len(legs) == 1
        assert legs[0].amount == Decimal("60.00000000")
        assert legs[0].txid == "abc"
        assert legs[0].paid_at == datetime.fromtimestamp(1760000000, tz=timezone.utc)

    def test_methods_without_payments_skipped(self):
        assert parse_payment_legs([{"paymentMethodId": "BTC-LN", "rate": None, "payments": []}]) == []

    @pytest.mark.parametrize("methods", [
        {"not": "a list"},
        [{"paymentMethodId": "BTC", "rate": "x", "payments": [{"id": "a-0", "value": "1"}]}],
        [{"paymentMethodId": "BTC", "rate": "1", "payments": [{"value": "1"}]}],
        [{"paymentMethodId": "BTC", "rate": "1", "payments": [{"id": "a-0", "value": "NaN"}]}],
    ])
    def test_bad_shapes_raise(self, methods):
        with pytest.raises(DerivationError):
            parse_payment_legs(methods)

    def test_invoice_snapshot(self):
        parsed = parse_invoice_snapshot(
            {"id": "INV-1", "storeId": "s", "amount": "25.50", "currency": "EUR", "status": "Settled",
             "additionalStatus": "None", "metadata": {"orderId": "A-1"}},
            []
        )

        assert parsed.amount == Decimal("25.50")
        assert parsed.additional_status is None
        assert parsed.order_id == "A-1"

    def test_invoice_without_status_raises(self):
        with pytest.raises(DerivationError):
            parse_invoice_snapshot({"id": "INV-1"}, [])
