"""BTCPay webhook registration - create, sync and remove the store webhooks

Every webhook this service creates gets a fresh signing secret that is stored
(encrypted) in webhook_configs, so deliveries can be verified right away.
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.webhook_config import WebhookConfig
from app.services.aggregator import (
    EVENT_EXPIRED, EVENT_INVALID, EVENT_PAYMENT_SETTLED, EVENT_PROCESSING,
    EVENT_RECEIVED_PAYMENT, EVENT_SETTLED, DerivationError, SnapshotUnavailable
)
from app.services.btcpay_client import BTCPayClient, BTCPayError, get_btcpay_client
from app.services.receiver import save_webhook_config

webhook_logger = logging.getLogger("webhook")

REQUIRED_WEBHOOK_EVENTS = (
    EVENT_SETTLED,
    EVENT_PAYMENT_SETTLED,
    EVENT_RECEIVED_PAYMENT,
    EVENT_PROCESSING,
    EVENT_EXPIRED,
    EVENT_INVALID,
)

UPSTREAM_ERRORS = (SnapshotUnavailable, BTCPayError, DerivationError)


class WebhookSetupError(Exception):
    """Webhook registration could not be completed"""


@dataclass
class WebhookStatus:
    url: Optional[str]
    webhooks: List[Dict] = field(default_factory=list)
    missing_events: List[str] = field(default_factory=lambda: list(REQUIRED_WEBHOOK_EVENTS))
    errors: List[str] = field(default_factory=list)

    @property
    def setup_complete(self) -> bool:
        return not self.missing_events and not self.errors

    def to_dict(self) -> Dict:
        return {
            "url": self.url,
            "webhooks": self.webhooks,
            "required_events": list(REQUIRED_WEBHOOK_EVENTS),
            "missing_events": self.missing_events,
            "setup_complete": self.setup_complete,
            "errors": self.errors,
        }


def _webhook_events(webhook: Dict) -> List[str]:
    authorized = webhook.get("authorizedEvents") or {}
    if authorized.get("everything"):
        return list(REQUIRED_WEBHOOK_EVENTS)
    return list(authorized.get("specificEvents") or [])


def _summary(webhook: Dict) -> Dict:
    return {
        "id": webhook.get("id"),
        "url": webhook.get("url"),
        "events": _webhook_events(webhook),
        "active": bool(webhook.get("enabled")),
    }


def _store_and_url(store_id: Optional[str], url: Optional[str] = None):
    store_id = store_id or settings.BTCPAY_STORE_ID
    if not store_id:
        raise WebhookSetupError("BTCPAY_STORE_ID is not set")
    return store_id, url if url is not None else settings.BTCPAY_WEBHOOK_URL


async def get_webhook_status(
    url: Optional[str] = None,
    store_id: Optional[str] = None,
    client: Optional[BTCPayClient] = None
) -> WebhookStatus:
    """Which required events are covered by active webhooks pointing at url"""
    store_id, url = _store_and_url(store_id, url)
    status = WebhookStatus(url=url or None)
    if not url:
        status.errors.append("No webhook URL configured (BTCPAY_WEBHOOK_URL)")
        return status

    client = client or get_btcpay_client()
    try:
        webhooks = await client.list_webhooks(store_id)
    except UPSTREAM_ERRORS as e:
        status.errors.append(f"Failed to list webhooks: {e}")
        return status

    status.webhooks = [_summary(w) for w in webhooks if isinstance(w, dict)]
    covered = set()
    for webhook in status.webhooks:
        if webhook["url"] == url and webhook["active"]:
            covered.update(webhook["events"])
    status.missing_events = [e for e in REQUIRED_WEBHOOK_EVENTS if e not in covered]
    return status


async def register_webhook(
    url: str,
    db: Session,
    events: Iterable[str] = REQUIRED_WEBHOOK_EVENTS,
    store_id: Optional[str] = None,
    client: Optional[BTCPayClient] = None
) -> WebhookConfig:
    """Create a BTCPay webhook and store its signing secret

    Raises:
        WebhookSetupError: BTCPay refused or could not be reached
    """
    store_id, _ = _store_and_url(store_id)
    client = client or get_btcpay_client()
    events = list(events)
    secret = secrets.token_urlsafe(32)
    try:
        created = await client.create_webhook(store_id, url, events, secret)
    except UPSTREAM_ERRORS as e:
        webhook_logger.error(f"Failed to create webhook for {url}: {e}")
        raise WebhookSetupError(f"Failed to create webhook: {e}")

    # BTCPay echoes the secret it will sign with; prefer it when present
    config = save_webhook_config(
        webhook_id=str(created["id"]),
        store_id=store_id,
        url=url,
        secret=created.get("secret") or secret,
        events=events,
        active=bool(created.get("enabled", True)),
        db=db
    )
    webhook_logger.info(f"Registered webhook {config.webhook_id} for {', '.join(events)}")
    return config


async def sync_webhook_secrets(
    db: Session,
    store_id: Optional[str] = None,
    client: Optional[BTCPayClient] = None
) -> int:
    """Bring stored webhook configs in line with what BTCPay reports

    Secrets returned by the listing are stored. Known webhooks get their url,
    events and enabled flag refreshed; stored ones BTCPay no longer has are
    deactivated. Returns the number of configs written.
    """
    store_id, _ = _store_and_url(store_id)
    client = client or get_btcpay_client()
    try:
        webhooks = await client.list_webhooks(store_id)
    except UPSTREAM_ERRORS as e:
        raise WebhookSetupError(f"Failed to list webhooks: {e}")

    stored = {
        c.webhook_id: c
        for c in db.query(WebhookConfig).filter(WebhookConfig.store_id == store_id).all()
    }
    seen = set()
    written = 0
    for webhook in webhooks:
        if not isinstance(webhook, dict) or not webhook.get("id"):
            continue
        webhook_id = str(webhook["id"])
        seen.add(webhook_id)
        summary = _summary(webhook)
        if webhook.get("secret"):
            save_webhook_config(
                webhook_id=webhook_id,
                store_id=store_id,
                url=summary["url"] or "",
                secret=webhook["secret"],
                events=summary["events"],
                active=summary["active"],
                db=db
            )
            written += 1
        elif webhook_id in stored:
            config = stored[webhook_id]
            config.url = summary["url"] or config.url
            config.events = summary["events"]
            config.active = summary["active"]
            written += 1
        else:
            webhook_logger.warning(f"Webhook {webhook_id} has no stored secret, its deliveries cannot be verified")

    for webhook_id, config in stored.items():
        if webhook_id not in seen and config.active:
            config.active = False
            written += 1
            webhook_logger.warning(f"Webhook {webhook_id} no longer exists in BTCPay, deactivated")
    db.commit()
    webhook_logger.info(f"Synced {written} webhook configs for store {store_id}")
    return written


async def ensure_webhook(
    db: Session,
    url: Optional[str] = None,
    store_id: Optional[str] = None,
    client: Optional[BTCPayClient] = None
) -> WebhookStatus:
    """Make sure every required event is delivered to url, creating a webhook if not"""
    store_id, url = _store_and_url(store_id, url)
    client = client or get_btcpay_client()
    status = await get_webhook_status(url, store_id, client)
    if status.errors:
        webhook_logger.warning(f"Webhook setup incomplete: {'; '.join(status.errors)}")
        return status

    try:
        await sync_webhook_secrets(db, store_id, client)
        if status.setup_complete:
            return status
        webhook_logger.info(f"Creating webhook for missing events: {', '.join(status.missing_events)}")
        await register_webhook(url, db, status.missing_events, store_id, client)
    except WebhookSetupError as e:
        refreshed = await get_webhook_status(url, store_id, client)
        refreshed.errors.append(str(e))
        return refreshed
    return await get_webhook_status(url, store_id, client)


async def delete_webhook(
    webhook_id: str,
    db: Session,
    store_id: Optional[str] = None,
    client: Optional[BTCPayClient] = None
) -> bool:
    """Remove a webhook upstream and forget its secret

    Returns:
        False if neither BTCPay nor the database knew the webhook
    """
    store_id, _ = _store_and_url(store_id)
    client = client or get_btcpay_client()
    found_upstream = True
    try:
        await client.delete_webhook(store_id, webhook_id)
    except BTCPayError as e:
        if e.status_code != 404:
            raise WebhookSetupError(f"Failed to delete webhook {webhook_id}: {e}")
        found_upstream = False
    except (SnapshotUnavailable, DerivationError) as e:
        raise WebhookSetupError(f"Failed to delete webhook {webhook_id}: {e}")

    config = db.query(WebhookConfig).filter(WebhookConfig.webhook_id == webhook_id).first()
    if config is not None:
        db.delete(config)
        db.commit()
    if found_upstream or config is not None:
        webhook_logger.info(f"Deleted webhook {webhook_id}")
        return True
    return False
