"""Invoice aggregator - derives paid totals and reconciliation status per invoice

Amounts come from the upstream invoice snapshot (BTCPay payment legs converted
at the rate BTCPay reports); webhook events contribute lifecycle hints only.
Legs are merged by payment id and never removed, so paid_amount can only grow.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import invoices_status_counter
from app.models.invoice_aggregate import InvoiceAggregate
from app.models.payment_event import PaymentEvent

logger = logging.getLogger(__name__)
reconcile_logger = logging.getLogger("reconcile")

# Reconciliation statuses
PENDING = "pending"
FULL = "full"
PARTIAL = "partial"
OVERPAID = "overpaid"
INVALIDATED = "invalidated"
FAILED = "failed"

# A recompute never moves an invoice to a lower rank
STATUS_RANK = {
    FAILED: -1,
    PENDING: 0,
    INVALIDATED: 1,
    PARTIAL: 2,
    FULL: 3,
    OVERPAID: 4,
}

# BTCPay webhook event types
EVENT_SETTLED = "InvoiceSettled"
EVENT_PAYMENT_SETTLED = "InvoicePaymentSettled"
EVENT_EXPIRED = "InvoiceExpired"
EVENT_INVALID = "InvoiceInvalid"
EVENT_RECEIVED_PAYMENT = "InvoiceReceivedPayment"
EVENT_CREATED = "InvoiceCreated"
EVENT_PROCESSING = "InvoiceProcessing"

RELEVANT_EVENT_TYPES = {EVENT_SETTLED, EVENT_PAYMENT_SETTLED, EVENT_EXPIRED, EVENT_INVALID}

# Upstream invoice statuses
UPSTREAM_SETTLED = "Settled"
UPSTREAM_EXPIRED = "Expired"
UPSTREAM_INVALID = "Invalid"
CLOSED_UPSTREAM_STATUSES = {UPSTREAM_EXPIRED, UPSTREAM_INVALID}

EVENT_TO_UPSTREAM_STATUS = {
    EVENT_SETTLED: UPSTREAM_SETTLED,
    EVENT_EXPIRED: UPSTREAM_EXPIRED,
    EVENT_INVALID: UPSTREAM_INVALID,
}

AMOUNT_QUANTUM = Decimal("0.00000001")


class DerivationError(Exception):
    """Upstream data could not be turned into an aggregate"""


class SnapshotUnavailable(Exception):
    """Upstream invoice detail could not be fetched right now"""


@dataclass(frozen=True)
class PaymentLeg:
    """One confirmed on-chain payment contributing to an invoice"""
    id: str
    txid: str
    amount: Decimal  # fiat, converted at BTCPay's invoice rate
    crypto_amount: Decimal
    payment_method: str
    status: str
    paid_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "txid": self.txid,
            "amount": str(self.amount),
            "crypto_amount": str(self.crypto_amount),
            "payment_method": self.payment_method,
            "status": self.status,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


@dataclass
class InvoiceSnapshot:
    """Current invoice state as reported by BTCPay"""
    invoice_id: str
    store_id: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    status: str
    additional_status: Optional[str] = None
    order_id: Optional[str] = None
    legs: List[PaymentLeg] = field(default_factory=list)


def to_decimal(value, what: str) -> Decimal:
    """Parse an upstream amount; anything non-numeric is a derivation error"""
    if value is None or value == "":
        raise DerivationError(f"Missing {what}")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise DerivationError(f"Non-numeric {what}: {value!r}")
    if not result.is_finite():
        raise DerivationError(f"Non-finite {what}: {value!r}")
    return result


def status_rank(status: Optional[str]) -> int:
    return STATUS_RANK.get(status or PENDING, 0)


def derive_reconciliation_status(
    paid_amount: Decimal,
    invoice_amount: Optional[Decimal],
    upstream_status: Optional[str],
    tolerance: Optional[Decimal] = None
) -> str:
    """Pure verdict from paid vs invoiced amount and the upstream lifecycle status.

    Expired or invalid invoices that received funds are judged on amounts;
    only a closed invoice with nothing paid is invalidated.
    """
    if tolerance is None:
        tolerance = settings.RECONCILE_TOLERANCE
    paid = Decimal(paid_amount or 0)
    settled = upstream_status == UPSTREAM_SETTLED
    closed = upstream_status in CLOSED_UPSTREAM_STATUSES

    if paid < 0:
        raise DerivationError(f"Negative paid amount {paid}")

    if paid == 0:
        return INVALIDATED if closed else PENDING

    # Top-up invoices have no fixed amount: whatever settled is the full payment
    if invoice_amount is None or invoice_amount == 0:
        return FULL if (settled or closed) else PENDING

    if invoice_amount < 0:
        raise DerivationError(f"Negative invoice amount {invoice_amount}")

    lower = invoice_amount * (Decimal(1) - tolerance)
    upper = invoice_amount * (Decimal(1) + tolerance)

    if paid > upper:
        return OVERPAID
    if paid < lower:
        return PARTIAL
    if settled or closed:
        return FULL
    # In band but upstream has not settled yet; wait for the settled event
    return PENDING


def upstream_status_from_events(events: Iterable[PaymentEvent]) -> Optional[str]:
    """Latest lifecycle status implied by the event history (receipt order)"""
    status = None
    for event in events:
        mapped = EVENT_TO_UPSTREAM_STATUS.get(event.event_type)
        if mapped is None:
            continue
        # A settled invoice does not go back to expired/invalid on a stale replay
        if status == UPSTREAM_SETTLED and mapped != UPSTREAM_SETTLED:
            continue
        status = mapped
    return status


def _event_payload(event: PaymentEvent) -> Dict:
    try:
        data = json.loads(event.raw_payload)
    except (TypeError, ValueError):
        raise DerivationError(f"Stored payload of delivery {event.delivery_id} is not valid JSON")
    if not isinstance(data, dict):
        raise DerivationError(f"Stored payload of delivery {event.delivery_id} is not an object")
    return data


def merge_legs(stored: List[Dict], incoming: Iterable[PaymentLeg]) -> List[Dict]:
    """Add newly seen settled legs; legs already stored are kept as first recorded"""
    merged = list(stored or [])
    seen = {leg.get("id") for leg in merged}
    for leg in incoming:
        if leg.status != UPSTREAM_SETTLED or leg.id in seen:
            continue
        merged.append(leg.to_dict())
        seen.add(leg.id)
    merged.sort(key=lambda leg: (leg.get("paid_at") or "", leg.get("id") or ""))
    return merged


def sum_legs(legs: List[Dict]) -> Decimal:
    total = Decimal(0)
    for leg in legs:
        total += to_decimal(leg.get("amount"), f"amount of payment {leg.get('id')}")
    return total.quantize(AMOUNT_QUANTUM)


def get_aggregate(invoice_id: str, db: Session) -> Optional[InvoiceAggregate]:
    return db.query(InvoiceAggregate).filter(InvoiceAggregate.invoice_id == invoice_id).first()


def recompute_aggregate(
    invoice_id: str,
    events: List[PaymentEvent],
    snapshot: Optional[InvoiceSnapshot],
    db: Session,
    tolerance: Optional[Decimal] = None
) -> InvoiceAggregate:
    """Recompute (or lazily create) the aggregate for an invoice and commit it.

    Args:
        invoice_id: BTCPay invoice id
        events: All stored events for the invoice in receipt order
        snapshot: Fresh upstream invoice detail, or None to reuse stored legs
        db: Database session
        tolerance: Override for the full-payment band

    Raises:
        DerivationError: If upstream data has an unexpected shape
    """
    aggregate = get_aggregate(invoice_id, db)
    if aggregate is None:
        aggregate = InvoiceAggregate(
            invoice_id=invoice_id,
            paid_amount=Decimal(0),
            payment_count=0,
            payments=[],
            reconciliation_status=PENDING
        )
        db.add(aggregate)

    relevant = [e for e in events if e.event_type in RELEVANT_EVENT_TYPES]
    for event in relevant:
        _event_payload(event)  # shape check, raises DerivationError

    if events:
        aggregate.store_id = aggregate.store_id or next((e.store_id for e in events if e.store_id), None)
        aggregate.last_event_at = max(e.received_at for e in events)

    legs = list(aggregate.payments or [])
    upstream_status = upstream_status_from_events(relevant) or aggregate.upstream_status

    if snapshot is not None:
        if snapshot.invoice_id != invoice_id:
            raise DerivationError(f"Snapshot is for invoice {snapshot.invoice_id}, expected {invoice_id}")
        # Invoice amount is locked the first time it is seen
        if aggregate.invoice_amount is None and snapshot.amount is not None:
            aggregate.invoice_amount = snapshot.amount
            aggregate.currency = snapshot.currency
        aggregate.store_id = aggregate.store_id or snapshot.store_id
        aggregate.order_id = aggregate.order_id or snapshot.order_id
        aggregate.additional_status = snapshot.additional_status
        legs = merge_legs(legs, snapshot.legs)
        if not (aggregate.upstream_status == UPSTREAM_SETTLED and snapshot.status != UPSTREAM_SETTLED):
            upstream_status = snapshot.status

    previous_paid = Decimal(aggregate.paid_amount or 0)
    paid = sum_legs(legs)
    if paid < previous_paid:
        # Stored legs are append-only, this means the stored rows were tampered with
        raise DerivationError(f"Paid amount for {invoice_id} would drop from {previous_paid} to {paid}")

    aggregate.payments = legs
    aggregate.payment_count = len(legs)
    aggregate.paid_amount = paid
    aggregate.upstream_status = upstream_status

    derived = derive_reconciliation_status(
        paid,
        Decimal(aggregate.invoice_amount) if aggregate.invoice_amount is not None else None,
        upstream_status,
        tolerance
    )
    current = aggregate.reconciliation_status or PENDING
    if status_rank(derived) >= status_rank(current):
        aggregate.reconciliation_status = derived
    else:
        reconcile_logger.info(
            f"Invoice {invoice_id}: keeping status {current} (recomputed {derived}, no regression)"
        )

    db.commit()
    db.refresh(aggregate)
    invoices_status_counter.labels(status=aggregate.reconciliation_status).inc()
    reconcile_logger.debug(
        f"Invoice {invoice_id}: paid {aggregate.paid_amount} of {aggregate.invoice_amount} "
        f"{aggregate.currency or ''} ({aggregate.payment_count} legs) -> {aggregate.reconciliation_status}"
    )
    return aggregate


def mark_aggregate_failed(invoice_id: str, db: Session) -> Optional[InvoiceAggregate]:
    """Flag an invoice whose data could not be derived; earned statuses are kept"""
    aggregate = get_aggregate(invoice_id, db)
    if aggregate is None:
        aggregate = InvoiceAggregate(
            invoice_id=invoice_id,
            paid_amount=Decimal(0),
            payment_count=0,
            payments=[],
            reconciliation_status=FAILED
        )
        db.add(aggregate)
    elif aggregate.reconciliation_status == PENDING:
        aggregate.reconciliation_status = FAILED
    aggregate.updated_at = datetime.now(timezone.utc)
    db.commit()
    return aggregate
