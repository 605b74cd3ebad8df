"""Shared pytest fixtures for test suite"""
import json
import os
import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import Dict, Generator, List, Optional
from urllib.parse import parse_qs

import pytest
import fakeredis
import httpx
from cryptography.fernet import Fernet

# Configure the app for tests before anything reads settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("BTCPAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("BTCPAY_STORE_ID", "store-test")
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("RUN_BACKGROUND_TASKS", "false")
os.environ.setdefault("OPERATOR_API_KEY", "")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.security import compute_btcpay_signature
from app.db.redis import set_redis_client
from app.db.session import get_db
from app.models import Base
from app.services.btcpay_client import BTCPayClient, set_btcpay_client
from app.services.ledger import set_ledger_adapter
from app.services.ledger.memory import MemoryLedger
from app.services.ledger_auth import LedgerAuthState, set_ledger_auth_state


TEST_WEBHOOK_SECRET = os.environ["BTCPAY_WEBHOOK_SECRET"]
TEST_STORE_ID = os.environ["BTCPAY_STORE_ID"]
BTC_RATE = Decimal("50000")

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeBTCPayServer:
    """Serves Greenfield invoice and webhook endpoints from in-memory state via httpx.MockTransport"""

    def __init__(self, store_id: str = TEST_STORE_ID):
        self.store_id = store_id
        self.invoices: Dict[str, Dict] = {}
        self.payment_methods: Dict[str, List[Dict]] = {}
        self.fail_status: Optional[int] = None
        self.requests: List[httpx.Request] = []
        self.webhooks: Dict[str, Dict] = {}
        self.created_secrets: Dict[str, Optional[str]] = {}

    def set_invoice(
        self,
        invoice_id: str,
        amount: Optional[str],
        status: str = "Settled",
        payments: Optional[List] = None,
        currency: str = "USD",
        order_id: Optional[str] = None,
        additional_status: str = "None",
        created_time: Optional[int] = None
    ) -> None:
        """Register an invoice; payments are (payment id, fiat amount[, status]) tuples"""
        if created_time is None:
            created_time = int(time.time()) - 3600
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "storeId": self.store_id,
            "amount": amount,
            "currency": currency,
            "status": status,
            "additionalStatus": additional_status,
            "createdTime": created_time,
            "metadata": {"orderId": order_id} if order_id else {},
        }
        legs = []
        for index, payment in enumerate(payments or []):
            payment_id, fiat = payment[0], Decimal(payment[1])
            leg_status = payment[2] if len(payment) > 2 else "Settled"
            legs.append({
                "id": payment_id,
                "receivedDate": created_time + 60 * (index + 1),
                "value": str(fiat / BTC_RATE),
                "fee": "0.0",
                "status": leg_status,
                "destination": "bc1qtest",
            })
        self.payment_methods[invoice_id] = [{
            "paymentMethodId": "BTC-CHAIN",
            "rate": str(BTC_RATE),
            "amount": str(Decimal(amount or 0) / BTC_RATE),
            "payments": legs,
        }]

    def add_webhook(
        self,
        webhook_id: str,
        url: str,
        events: List[str],
        enabled: bool = True,
        secret: Optional[str] = None
    ) -> None:
        """Register a webhook as if created in the BTCPay UI; secret is echoed by listings"""
        self.webhooks[webhook_id] = {
            "id": webhook_id,
            "enabled": enabled,
            "automaticRedelivery": True,
            "url": url,
            "authorizedEvents": {"everything": False, "specificEvents": list(events)},
        }
        if secret is not None:
            self.webhooks[webhook_id]["secret"] = secret

    def _handle_webhooks(self, request: httpx.Request, parts: List[str]) -> httpx.Response:
        # /api/v1/stores/{store}/webhooks[/{id}]
        if len(parts) == 6 and request.method == "GET":
            return httpx.Response(200, json=list(self.webhooks.values()))
        if len(parts) == 6 and request.method == "POST":
            body = json.loads(request.content)
            webhook_id = f"wh-{len(self.created_secrets) + 1}"
            self.add_webhook(
                webhook_id,
                body["url"],
                body["authorizedEvents"]["specificEvents"],
                enabled=body.get("enabled", True)
            )
            self.created_secrets[webhook_id] = body.get("secret")
            return httpx.Response(200, json={**self.webhooks[webhook_id], "secret": body.get("secret")})
        if len(parts) == 7 and request.method == "DELETE":
            if self.webhooks.pop(parts[6], None) is None:
                return httpx.Response(404, json={"code": "webhook-not-found"})
            return httpx.Response(200)
        return httpx.Response(405, json={"code": "method-not-allowed"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"message": "upstream failure"})

        parts = request.url.path.split("/")
        # /api/v1/stores/{store}/invoices[/{id}[/payment-methods]]
        if request.url.path.endswith("/server/info"):
            return httpx.Response(200, json={"version": "2.0.0"})
        if len(parts) >= 6 and parts[5] == "webhooks":
            return self._handle_webhooks(request, parts)
        if len(parts) == 6 and parts[5] == "invoices":
            query = parse_qs(request.url.query.decode())
            statuses = set(query.get("status", []))
            skip = int(query.get("skip", ["0"])[0])
            take = int(query.get("take", ["100"])[0])
            start_date = int(query.get("startDate", ["0"])[0])
            found = [
                inv for inv in self.invoices.values()
                if (not statuses or inv["status"] in statuses) and inv["createdTime"] >= start_date
            ]
            return httpx.Response(200, json=found[skip:skip + take])
        if len(parts) == 7:
            invoice = self.invoices.get(parts[6])
            if invoice is None:
                return httpx.Response(404, json={"code": "invoice-not-found"})
            return httpx.Response(200, json=invoice)
        if len(parts) == 8 and parts[7] == "payment-methods":
            if parts[6] not in self.invoices:
                return httpx.Response(404, json={"code": "invoice-not-found"})
            return httpx.Response(200, json=self.payment_methods.get(parts[6], []))
        return httpx.Response(404, json={"code": "not-found"})

    def client(self) -> BTCPayClient:
        return BTCPayClient(
            base_url="http://btcpay.test/api/v1",
            api_key="test-api-key",
            timeout=5,
            transport=httpx.MockTransport(self.handler)
        )


def make_delivery(
    delivery_id: str,
    event_type: str,
    invoice_id: Optional[str],
    store_id: str = TEST_STORE_ID,
    **extra
) -> bytes:
    """Raw body of a BTCPay webhook delivery"""
    payload = {
        "deliveryId": delivery_id,
        "webhookId": "wh-test",
        "originalDeliveryId": delivery_id,
        "isRedelivery": False,
        "type": event_type,
        "timestamp": 1760000000,
        "storeId": store_id,
        "invoiceId": invoice_id,
        "metadata": {},
    }
    payload.update(extra)
    return json.dumps(payload).encode("utf-8")


def sign(body: bytes, secret: str = TEST_WEBHOOK_SECRET) -> str:
    return compute_btcpay_signature(body, secret)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Swap the Redis client for fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    set_redis_client(fake_redis)
    try:
        yield fake_redis
    finally:
        set_redis_client(None)


@pytest.fixture(scope="function")
def memory_ledger() -> Generator[MemoryLedger, None, None]:
    ledger = MemoryLedger()
    set_ledger_adapter(ledger)
    try:
        yield ledger
    finally:
        set_ledger_adapter(None)


@pytest.fixture(scope="function")
def auth_state(db_session) -> Generator[LedgerAuthState, None, None]:
    state = LedgerAuthState(session_factory=TestSessionLocal)
    set_ledger_auth_state(state)
    try:
        yield state
    finally:
        set_ledger_auth_state(None)


@pytest.fixture(scope="function")
def btcpay() -> Generator[FakeBTCPayServer, None, None]:
    server = FakeBTCPayServer()
    set_btcpay_client(server.client())
    try:
        yield server
    finally:
        set_btcpay_client(None)


@pytest.fixture(scope="function")
def reconciler(db_session, mock_redis, memory_ledger, auth_state, btcpay):
    """Everything the orchestrator needs, wired to test doubles"""
    return {
        "db": db_session,
        "ledger": memory_ledger,
        "auth": auth_state,
        "btcpay": btcpay,
    }


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, memory_ledger, auth_state, btcpay) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and test doubles"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Lifespan is not entered: background tasks and startup wiring stay off
        yield TestClient(app)
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()
