"""BTCPay webhook registration tests - create, sync, ensure and delete"""
import json

import pytest

from app.core.config import settings
from app.models.webhook_config import WebhookConfig
from app.services.receiver import ReceiveResult, get_webhook_secrets, receive_delivery, save_webhook_config
from app.services.webhook_setup import (
    REQUIRED_WEBHOOK_EVENTS, WebhookSetupError, delete_webhook, ensure_webhook,
    get_webhook_status, register_webhook, sync_webhook_secrets
)
from app.utils.encryption import decrypt

from conftest import make_delivery, sign

HOOK_URL = "https://reconciler.example/api/webhooks/btcpay"


def stored_config(db, webhook_id):
    db.expire_all()
    return db.query(WebhookConfig).filter(WebhookConfig.webhook_id == webhook_id).first()


@pytest.mark.high
class TestRegisterWebhook:

    @pytest.mark.asyncio
    async def test_register_stores_secret_sent_to_btcpay(self, db_session, btcpay):
        config = await register_webhook(HOOK_URL, db_session, client=btcpay.client())

        assert config.webhook_id in btcpay.webhooks
        sent = btcpay.created_secrets[config.webhook_id]
        assert len(sent) >= 32
        assert config.secret != sent
        assert decrypt(config.secret) == sent
        assert config.events == list(REQUIRED_WEBHOOK_EVENTS)
        assert config.store_id == btcpay.store_id

    @pytest.mark.asyncio
    async def test_registered_secret_verifies_deliveries(self, db_session, btcpay, monkeypatch):
        monkeypatch.setattr(settings, "BTCPAY_WEBHOOK_SECRET", "")
        config = await register_webhook(HOOK_URL, db_session, client=btcpay.client())
        body = make_delivery("setup-1", "InvoiceSettled", "INV-W1")

        receipt = receive_delivery(body, sign(body, secret=btcpay.created_secrets[config.webhook_id]), db_session)

        assert receipt.result == ReceiveResult.ACCEPTED

    @pytest.mark.asyncio
    async def test_create_request_payload(self, db_session, btcpay):
        await register_webhook(HOOK_URL, db_session, events=["InvoiceSettled"], client=btcpay.client())

        request = [r for r in btcpay.requests if r.method == "POST"][0]
        body = json.loads(request.content)
        assert body["url"] == HOOK_URL
        assert body["automaticRedelivery"] is True
        assert body["authorizedEvents"] == {"everything": False, "specificEvents": ["InvoiceSettled"]}

    @pytest.mark.asyncio
    async def test_upstream_failure_stores_nothing(self, db_session, btcpay):
        btcpay.fail_status = 403

        with pytest.raises(WebhookSetupError):
            await register_webhook(HOOK_URL, db_session, client=btcpay.client())

        assert db_session.query(WebhookConfig).count() == 0


@pytest.mark.high
class TestEnsureWebhook:

    @pytest.mark.asyncio
    async def test_creates_webhook_when_none_exists(self, db_session, btcpay):
        status = await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())

        assert status.setup_complete
        assert len(btcpay.webhooks) == 1
        assert db_session.query(WebhookConfig).count() == 1

    @pytest.mark.asyncio
    async def test_second_run_creates_nothing(self, db_session, btcpay):
        await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())
        status = await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())

        assert status.setup_complete
        assert len(btcpay.webhooks) == 1

    @pytest.mark.asyncio
    async def test_only_missing_events_are_registered(self, db_session, btcpay):
        btcpay.add_webhook("wh-ui", HOOK_URL, ["InvoiceSettled", "InvoiceExpired"])

        status = await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())

        assert status.setup_complete
        created = [w for w in btcpay.webhooks.values() if w["id"] != "wh-ui"][0]
        events = created["authorizedEvents"]["specificEvents"]
        assert "InvoiceSettled" not in events
        assert "InvoicePaymentSettled" in events

    @pytest.mark.asyncio
    async def test_disabled_or_foreign_webhooks_do_not_count(self, db_session, btcpay):
        btcpay.add_webhook("wh-off", HOOK_URL, list(REQUIRED_WEBHOOK_EVENTS), enabled=False)
        btcpay.add_webhook("wh-other", "https://elsewhere.example/hook", list(REQUIRED_WEBHOOK_EVENTS))

        status = await get_webhook_status(HOOK_URL, client=btcpay.client())

        assert status.missing_events == list(REQUIRED_WEBHOOK_EVENTS)
        assert not status.setup_complete

    @pytest.mark.asyncio
    async def test_unreachable_btcpay_reports_error(self, db_session, btcpay):
        btcpay.fail_status = 503

        status = await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())

        assert not status.setup_complete
        assert status.errors
        assert db_session.query(WebhookConfig).count() == 0

    @pytest.mark.asyncio
    async def test_missing_url_is_an_error(self, db_session, btcpay, monkeypatch):
        monkeypatch.setattr(settings, "BTCPAY_WEBHOOK_URL", "")

        status = await ensure_webhook(db_session, client=btcpay.client())

        assert "BTCPAY_WEBHOOK_URL" in status.errors[0]
        assert btcpay.requests == []

    @pytest.mark.asyncio
    async def test_missing_store_id_raises(self, db_session, btcpay, monkeypatch):
        monkeypatch.setattr(settings, "BTCPAY_STORE_ID", "")

        with pytest.raises(WebhookSetupError):
            await ensure_webhook(db_session, url=HOOK_URL, client=btcpay.client())


@pytest.mark.medium
class TestSyncWebhookSecrets:

    @pytest.mark.asyncio
    async def test_listed_secret_is_stored(self, db_session, btcpay):
        btcpay.add_webhook("wh-s1", HOOK_URL, ["InvoiceSettled"], secret="listed-secret-value")

        written = await sync_webhook_secrets(db_session, client=btcpay.client())

        assert written == 1
        assert "listed-secret-value" in get_webhook_secrets(db_session, btcpay.store_id)

    @pytest.mark.asyncio
    async def test_known_webhook_keeps_secret_and_follows_enabled_flag(self, db_session, btcpay):
        save_webhook_config("wh-s2", btcpay.store_id, HOOK_URL, "kept-secret-value", ["InvoiceSettled"], True, db_session)
        btcpay.add_webhook("wh-s2", HOOK_URL, ["InvoiceSettled", "InvoiceExpired"], enabled=False)

        await sync_webhook_secrets(db_session, client=btcpay.client())

        config = stored_config(db_session, "wh-s2")
        assert decrypt(config.secret) == "kept-secret-value"
        assert config.active is False
        assert config.events == ["InvoiceSettled", "InvoiceExpired"]

    @pytest.mark.asyncio
    async def test_webhook_gone_upstream_is_deactivated(self, db_session, btcpay):
        save_webhook_config("wh-s3", btcpay.store_id, HOOK_URL, "stale-secret-value", [], True, db_session)

        await sync_webhook_secrets(db_session, client=btcpay.client())

        assert stored_config(db_session, "wh-s3").active is False


@pytest.mark.medium
class TestDeleteWebhook:

    @pytest.mark.asyncio
    async def test_delete_removes_upstream_and_secret(self, db_session, btcpay):
        config = await register_webhook(HOOK_URL, db_session, client=btcpay.client())
        webhook_id = config.webhook_id

        assert await delete_webhook(webhook_id, db_session, client=btcpay.client()) is True

        assert webhook_id not in btcpay.webhooks
        assert stored_config(db_session, webhook_id) is None

    @pytest.mark.asyncio
    async def test_unknown_webhook(self, db_session, btcpay):
        assert await delete_webhook("wh-missing", db_session, client=btcpay.client()) is False

    @pytest.mark.asyncio
    async def test_upstream_outage_keeps_secret(self, db_session, btcpay):
        save_webhook_config("wh-d1", btcpay.store_id, HOOK_URL, "outage-secret-value", [], True, db_session)
        btcpay.fail_status = 502

        with pytest.raises(WebhookSetupError):
            await delete_webhook("wh-d1", db_session, client=btcpay.client())

        assert stored_config(db_session, "wh-d1") is not None


@pytest.mark.medium
class TestWebhookEndpoints:

    def test_ensure_endpoint(self, client, btcpay):
        response = client.post("/api/webhooks/ensure", json={"url": HOOK_URL})

        assert response.status_code == 200
        data = response.json()
        assert data["setup_complete"] is True
        assert data["missing_events"] == []
        assert data["webhooks"][0]["url"] == HOOK_URL

    def test_status_endpoint_lists_missing_events(self, client, btcpay):
        response = client.get("/api/webhooks/status", params={"url": HOOK_URL})

        assert response.status_code == 200
        assert response.json()["missing_events"] == list(REQUIRED_WEBHOOK_EVENTS)

    def test_delete_endpoint(self, client, btcpay):
        btcpay.add_webhook("wh-api-del", HOOK_URL, ["InvoiceSettled"])

        assert client.delete("/api/webhooks/configs/wh-api-del").status_code == 200
        assert client.delete("/api/webhooks/configs/wh-api-del").status_code == 404

    def test_sync_endpoint(self, client, btcpay):
        btcpay.add_webhook("wh-api-sync", HOOK_URL, ["InvoiceSettled"], secret="api-sync-secret")

        response = client.post("/api/webhooks/sync")

        assert response.json() == {"synced": 1}

    def test_endpoints_require_operator_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "OPERATOR_API_KEY", "op-key")

        assert client.post("/api/webhooks/ensure", json={"url": HOOK_URL}).status_code == 401
        assert client.get("/api/webhooks/status").status_code == 401
        assert client.delete("/api/webhooks/configs/wh-x").status_code == 401
