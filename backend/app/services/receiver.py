"""Notification receiver - validates BTCPay deliveries and stores them

Only the signature check, parsing and a single insert happen here; all
reconciliation work is left to the worker so the acknowledgment stays fast.
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import webhook_deliveries_counter
from app.core.security import verify_btcpay_signature
from app.models.webhook_config import WebhookConfig
from app.schemas.webhooks import BTCPayWebhookPayload
from app.services.event_store import record_delivery
from app.utils.encryption import decrypt, encrypt

webhook_logger = logging.getLogger("webhook")


class ReceiveResult(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    BAD_SIGNATURE = "rejected-bad-signature"
    MALFORMED = "rejected-malformed"


@dataclass
class Receipt:
    result: ReceiveResult
    delivery_id: Optional[str] = None
    event_type: Optional[str] = None
    invoice_id: Optional[str] = None
    detail: Optional[str] = None


class WebhookSecretMissing(Exception):
    """No signing secret is configured, nothing can be verified"""


def get_webhook_secrets(db: Session, store_id: Optional[str] = None) -> List[str]:
    """Active secrets for the store (all stores if it has none) plus the global one"""
    secrets_found = []
    query = db.query(WebhookConfig).filter(WebhookConfig.active.is_(True))
    configs = query.filter(WebhookConfig.store_id == store_id).all() if store_id else []
    if not configs:
        configs = query.all()
    for config in configs:
        try:
            secret = decrypt(config.secret)
        except ValueError as e:
            webhook_logger.error(f"Could not decrypt secret for webhook {config.webhook_id}: {e}")
            continue
        if secret:
            secrets_found.append(secret)
    if settings.BTCPAY_WEBHOOK_SECRET:
        secrets_found.append(settings.BTCPAY_WEBHOOK_SECRET)
    return secrets_found


def save_webhook_config(
    webhook_id: str,
    store_id: str,
    url: str,
    secret: str,
    events: List[str],
    active: bool,
    db: Session
) -> WebhookConfig:
    """Create or update the stored secret for a BTCPay webhook"""
    config = db.query(WebhookConfig).filter(WebhookConfig.webhook_id == webhook_id).first()
    if config is None:
        config = WebhookConfig(webhook_id=webhook_id)
        db.add(config)
    config.store_id = store_id
    config.url = url
    config.secret = encrypt(secret)
    config.events = list(events)
    config.active = active
    db.commit()
    db.refresh(config)
    webhook_logger.info(f"Saved webhook config {webhook_id} for store {store_id} (active={active})")
    return config


def _claimed_store_id(raw_body: bytes) -> Optional[str]:
    """storeId from the not-yet-verified body; only used to pick the secret"""
    try:
        data = json.loads(raw_body)
    except ValueError:
        return None
    store_id = data.get("storeId") if isinstance(data, dict) else None
    return store_id if isinstance(store_id, str) else None


def _reject(result: ReceiveResult, detail: str) -> Receipt:
    webhook_deliveries_counter.labels(result=result.value).inc()
    webhook_logger.warning(f"Rejected webhook delivery: {detail}")
    return Receipt(result=result, detail=detail)


def receive_delivery(raw_body: bytes, signature: Optional[str], db: Session) -> Receipt:
    """Validate and persist one webhook delivery

    Args:
        raw_body: Request body exactly as received (signature covers these bytes)
        signature: Value of the BTCPay-Sig header
        db: Database session

    Returns:
        Receipt describing the result

    Raises:
        WebhookSecretMissing: If no secret is configured
        SQLAlchemyError: If the event could not be persisted (caller must not ack)
    """
    secrets_to_try = get_webhook_secrets(db, store_id=_claimed_store_id(raw_body))
    if not secrets_to_try:
        webhook_logger.error("No webhook secret configured - cannot verify delivery")
        raise WebhookSecretMissing("Webhook secret not configured")

    if not verify_btcpay_signature(raw_body, signature, secrets_to_try):
        return _reject(ReceiveResult.BAD_SIGNATURE, "Invalid signature")

    try:
        body_text = raw_body.decode("utf-8")
        data = json.loads(body_text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return _reject(ReceiveResult.MALFORMED, f"Invalid JSON payload: {e}")

    if not isinstance(data, dict):
        return _reject(ReceiveResult.MALFORMED, "Payload is not a JSON object")

    try:
        payload = BTCPayWebhookPayload.model_validate(data)
    except ValidationError as e:
        return _reject(ReceiveResult.MALFORMED, f"Invalid webhook payload: {e.error_count()} validation errors")

    event, created = record_delivery(
        delivery_id=payload.delivery_id,
        event_type=payload.type,
        invoice_id=payload.invoice_id,
        store_id=payload.store_id,
        raw_payload=body_text,
        db=db
    )

    if not created:
        webhook_deliveries_counter.labels(result=ReceiveResult.DUPLICATE.value).inc()
        webhook_logger.info(f"Duplicate delivery {payload.delivery_id} ({payload.type}) - already stored")
        return Receipt(
            result=ReceiveResult.DUPLICATE,
            delivery_id=event.delivery_id,
            event_type=event.event_type,
            invoice_id=event.invoice_id
        )

    webhook_deliveries_counter.labels(result=ReceiveResult.ACCEPTED.value).inc()
    webhook_logger.info(
        f"Stored delivery {payload.delivery_id} ({payload.type}) for invoice {payload.invoice_id}"
        + (" [redelivery]" if payload.is_redelivery else "")
    )
    return Receipt(
        result=ReceiveResult.ACCEPTED,
        delivery_id=event.delivery_id,
        event_type=event.event_type,
        invoice_id=event.invoice_id
    )
