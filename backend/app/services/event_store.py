"""Event store - append-only log of BTCPay webhook deliveries

The PaymentEvent row is also the durable unit of work for the reconciliation
worker: rows with processed=False are pending.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.payment_event import PaymentEvent

logger = logging.getLogger(__name__)


def get_event(delivery_id: str, db: Session) -> Optional[PaymentEvent]:
    return db.query(PaymentEvent).filter(PaymentEvent.delivery_id == delivery_id).first()


def record_delivery(
    delivery_id: str,
    event_type: str,
    invoice_id: Optional[str],
    store_id: Optional[str],
    raw_payload: str,
    db: Session
) -> Tuple[PaymentEvent, bool]:
    """Insert a delivery once.

    Returns:
        (event, created) - created is False when the delivery id was already stored;
        the stored row is returned untouched.

    Raises:
        SQLAlchemyError: If the write fails for any reason other than a duplicate
    """
    existing = get_event(delivery_id, db)
    if existing:
        return existing, False

    event = PaymentEvent(
        delivery_id=delivery_id,
        event_type=event_type,
        invoice_id=invoice_id,
        store_id=store_id,
        raw_payload=raw_payload,
        processed=False
    )
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same id won the insert
        db.rollback()
        existing = get_event(delivery_id, db)
        if existing is None:
            raise
        return existing, False
    db.refresh(event)
    return event, True


def mark_processed(delivery_id: str, db: Session, error_message: Optional[str] = None) -> bool:
    """Flip processed false -> true. Returns False if another worker already did."""
    result = db.execute(
        update(PaymentEvent)
        .where(PaymentEvent.delivery_id == delivery_id, PaymentEvent.processed.is_(False))
        .values(
            processed=True,
            processed_at=datetime.now(timezone.utc),
            error_message=error_message
        )
    )
    db.commit()
    return result.rowcount == 1


def get_events_for_invoice(invoice_id: str, db: Session) -> List[PaymentEvent]:
    """All events for an invoice in receipt order"""
    return (
        db.query(PaymentEvent)
        .filter(PaymentEvent.invoice_id == invoice_id)
        .order_by(PaymentEvent.received_at.asc(), PaymentEvent.delivery_id.asc())
        .all()
    )


def get_pending_invoice_ids(db: Session, limit: int = 100) -> List[str]:
    """Invoices with unprocessed events, oldest first"""
    rows = (
        db.query(PaymentEvent.invoice_id, func.min(PaymentEvent.received_at).label("first_received"))
        .filter(PaymentEvent.processed.is_(False), PaymentEvent.invoice_id.isnot(None))
        .group_by(PaymentEvent.invoice_id)
        .order_by("first_received")
        .limit(limit)
        .all()
    )
    return [row[0] for row in rows]


def mark_orphan_events_processed(db: Session) -> int:
    """Events without an invoice id carry nothing to reconcile"""
    orphans = (
        db.query(PaymentEvent.delivery_id)
        .filter(PaymentEvent.processed.is_(False), PaymentEvent.invoice_id.is_(None))
        .all()
    )
    count = 0
    for (delivery_id,) in orphans:
        if mark_processed(delivery_id, db, error_message="No invoice id in payload"):
            count += 1
    if count:
        logger.info(f"Marked {count} events without invoice id as processed")
    return count


def count_unprocessed(db: Session) -> int:
    return db.query(func.count(PaymentEvent.delivery_id)).filter(PaymentEvent.processed.is_(False)).scalar() or 0


def get_recent_events(db: Session, limit: int = 50) -> List[PaymentEvent]:
    return (
        db.query(PaymentEvent)
        .order_by(PaymentEvent.received_at.desc())
        .limit(limit)
        .all()
    )
