"""BTCPay Server Greenfield API client - invoices, invoice listing and webhook registration"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import httpx

from app.core.config import settings, BTCPAY_API_BASE
from app.services.aggregator import (
    AMOUNT_QUANTUM, DerivationError, InvoiceSnapshot, PaymentLeg,
    SnapshotUnavailable, to_decimal
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class BTCPayError(Exception):
    """Non-retryable error response from BTCPay"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BTCPayClient:
    """Thin async wrapper over the Greenfield endpoints the reconciler needs"""

    def __init__(
        self,
        base_url: str = BTCPAY_API_BASE,
        api_key: str = None,
        timeout: float = None,
        transport: httpx.AsyncBaseTransport = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BTCPAY_API_KEY
        self.timeout = timeout if timeout is not None else settings.BTCPAY_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"token {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, params: Any = None, json: Any = None) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.request(method, path, params=params, json=json)
        except httpx.RequestError as e:
            raise SnapshotUnavailable(f"BTCPay request {path} failed: {type(e).__name__}: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            raise SnapshotUnavailable(f"BTCPay returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise BTCPayError(f"BTCPay returned {response.status_code} for {path}: {response.text[:200]}", response.status_code)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            raise DerivationError(f"BTCPay returned non-JSON body for {path}")

    async def _get(self, path: str, params: Any = None) -> Any:
        return await self._request("GET", path, params=params)

    async def get_server_info(self) -> Dict:
        return await self._get("/server/info")

    async def get_invoice(self, store_id: str, invoice_id: str) -> Dict:
        return await self._get(f"/stores/{store_id}/invoices/{invoice_id}")

    async def get_payment_methods(self, store_id: str, invoice_id: str) -> List[Dict]:
        return await self._get(f"/stores/{store_id}/invoices/{invoice_id}/payment-methods")

    async def list_invoices(
        self,
        store_id: str,
        statuses: Iterable[str],
        start_date: Optional[datetime] = None
    ) -> List[Dict]:
        """All invoices in the given statuses created since start_date (paged)"""
        invoices: List[Dict] = []
        skip = 0
        while True:
            params = [("status", s) for s in statuses]
            if start_date is not None:
                params.append(("startDate", str(int(start_date.timestamp()))))
            params.extend([("skip", str(skip)), ("take", str(PAGE_SIZE))])
            page = await self._get(f"/stores/{store_id}/invoices", params=params)
            if not isinstance(page, list):
                raise DerivationError("BTCPay invoice listing is not a list")
            invoices.extend(page)
            if len(page) < PAGE_SIZE:
                return invoices
            skip += PAGE_SIZE

    async def list_webhooks(self, store_id: str) -> List[Dict]:
        webhooks = await self._get(f"/stores/{store_id}/webhooks")
        if not isinstance(webhooks, list):
            raise DerivationError("BTCPay webhook listing is not a list")
        return webhooks

    async def create_webhook(self, store_id: str, url: str, events: Iterable[str], secret: str) -> Dict:
        """Register a webhook for specific events; BTCPay signs deliveries with secret"""
        created = await self._request("POST", f"/stores/{store_id}/webhooks", json={
            "enabled": True,
            "automaticRedelivery": True,
            "url": url,
            "authorizedEvents": {"everything": False, "specificEvents": list(events)},
            "secret": secret,
        })
        if not isinstance(created, dict) or not created.get("id"):
            raise DerivationError("BTCPay webhook creation returned no id")
        return created

    async def delete_webhook(self, store_id: str, webhook_id: str) -> None:
        await self._request("DELETE", f"/stores/{store_id}/webhooks/{webhook_id}")

    async def fetch_snapshot(self, store_id: str, invoice_id: str) -> InvoiceSnapshot:
        """Invoice plus its payment legs, amounts converted to the invoice currency"""
        invoice = await self.get_invoice(store_id, invoice_id)
        payment_methods = await self.get_payment_methods(store_id, invoice_id)
        return parse_invoice_snapshot(invoice, payment_methods)

    async def connection_status(self) -> Dict[str, Any]:
        """Server reachability for the operator status page

        A 401/403 means the server answered but the API key was refused.
        """
        try:
            info = await self.get_server_info()
        except BTCPayError as e:
            logger.warning(f"BTCPay health check failed: {e}")
            authenticated = e.status_code not in (401, 403)
            return {"connected": True, "authenticated": authenticated, "version": None, "error": str(e)}
        except (SnapshotUnavailable, DerivationError) as e:
            logger.warning(f"BTCPay health check failed: {e}")
            return {"connected": False, "authenticated": False, "version": None, "error": str(e)}
        version = info.get("version") if isinstance(info, dict) else None
        return {"connected": True, "authenticated": True, "version": version, "error": None}


def _parse_timestamp(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise DerivationError(f"Invalid timestamp {value!r}")


def parse_payment_legs(payment_methods: Any) -> List[PaymentLeg]:
    """Flatten BTCPay payment-methods into legs valued in the invoice currency"""
    if not isinstance(payment_methods, list):
        raise DerivationError("payment-methods response is not a list")
    legs = []
    for method in payment_methods:
        if not isinstance(method, dict):
            raise DerivationError("payment method entry is not an object")
        method_id = method.get("paymentMethodId") or method.get("paymentMethod") or "BTC"
        payments = method.get("payments") or []
        if not payments:
            continue
        rate = to_decimal(method.get("rate"), f"rate of {method_id}")
        for payment in payments:
            if not isinstance(payment, dict):
                raise DerivationError(f"payment entry of {method_id} is not an object")
            payment_id = payment.get("id")
            if not payment_id:
                raise DerivationError(f"payment of {method_id} has no id")
            crypto_amount = to_decimal(payment.get("value"), f"value of payment {payment_id}")
            # Lightning ids are payment hashes; on-chain ids are "txid-vout"
            txid = str(payment_id).rsplit("-", 1)[0]
            legs.append(PaymentLeg(
                id=str(payment_id),
                txid=txid,
                amount=(crypto_amount * rate).quantize(AMOUNT_QUANTUM),
                crypto_amount=crypto_amount,
                payment_method=str(method_id),
                status=str(payment.get("status") or ""),
                paid_at=_parse_timestamp(payment.get("receivedDate"))
            ))
    return legs


def parse_invoice_snapshot(invoice: Any, payment_methods: Any) -> InvoiceSnapshot:
    if not isinstance(invoice, dict):
        raise DerivationError("invoice response is not an object")
    invoice_id = invoice.get("id")
    status = invoice.get("status")
    if not invoice_id or not status:
        raise DerivationError("invoice response is missing id or status")
    raw_amount = invoice.get("amount")
    amount = None if raw_amount in (None, "") else to_decimal(raw_amount, f"amount of invoice {invoice_id}")
    metadata = invoice.get("metadata") or {}
    additional_status = invoice.get("additionalStatus")
    return InvoiceSnapshot(
        invoice_id=str(invoice_id),
        store_id=invoice.get("storeId"),
        amount=amount if amount is None else Decimal(amount),
        currency=invoice.get("currency"),
        status=str(status),
        additional_status=None if additional_status in (None, "None") else str(additional_status),
        order_id=metadata.get("orderId") if isinstance(metadata, dict) else None,
        legs=parse_payment_legs(payment_methods)
    )


_default_client: Optional[BTCPayClient] = None


def get_btcpay_client() -> BTCPayClient:
    global _default_client
    if _default_client is None:
        _default_client = BTCPayClient()
    return _default_client


def set_btcpay_client(client: Optional[BTCPayClient]) -> None:
    """Override the upstream client (tests)"""
    global _default_client
    _default_client = client
