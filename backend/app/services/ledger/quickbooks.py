"""QuickBooks Online ledger backend - Deposits and invoice Payments over the v3 REST API"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

import httpx

from app.core.config import settings, QUICKBOOKS_COMPANY_URL
from app.db.redis import LEDGER_REFRESH_LOCK_KEY, distributed_lock, wait_for_lock_release
from app.db.session import SessionLocal
from app.services.ledger.base import (
    LedgerAdapter, LedgerAuthError, LedgerPayload, LedgerRefreshInProgress,
    LedgerRejectedError, LedgerResult, LedgerTransientError
)
from app.services.ledger.credentials import Credential, get_credential, save_credential

ledger_logger = logging.getLogger("ledger")

BACKEND_NAME = "quickbooks"
CENTS = Decimal("0.01")


def _money(value: Decimal) -> float:
    # QBO takes JSON numbers with two decimals
    return float(Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def _fault_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    fault = body.get("Fault") or body.get("fault") or {}
    errors = fault.get("Error") or fault.get("error") or []
    if errors:
        first = errors[0]
        return f"{first.get('Message')}: {first.get('Detail')}"
    return str(body)[:200]


class QuickBooksLedger(LedgerAdapter):
    """Writes reconciliations to QuickBooks Online with an OAuth bearer token"""

    name = BACKEND_NAME

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        company_url: str = QUICKBOOKS_COMPANY_URL,
        token_url: str = None,
        transport: httpx.AsyncBaseTransport = None
    ):
        self.session_factory = session_factory
        self.company_url = company_url.rstrip("/")
        self.token_url = token_url or settings.QUICKBOOKS_TOKEN_URL
        self._transport = transport
        # Token sent on our last request; a refresh elsewhere must replace it
        self._last_used_token: Optional[str] = None

    def _load_credential(self) -> Credential:
        db = self.session_factory()
        try:
            try:
                credential = get_credential(BACKEND_NAME, db)
            except ValueError as e:
                raise LedgerAuthError(f"Stored QuickBooks credential unreadable: {e}")
        finally:
            db.close()
        if credential is None:
            raise LedgerAuthError("QuickBooks is not connected")
        if credential.expired:
            raise LedgerAuthError("QuickBooks access token expired")
        return credential

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.LEDGER_CALL_TIMEOUT, transport=self._transport)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        credential = self._load_credential()
        realm_id = credential.realm_id or settings.QUICKBOOKS_REALM_ID
        if not realm_id:
            raise LedgerRejectedError("QuickBooks realm id is not configured")
        url = f"{self.company_url}/{realm_id}{path}"
        query = {"minorversion": str(settings.QUICKBOOKS_MINOR_VERSION)}
        query.update(params or {})
        self._last_used_token = credential.access_token
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Accept": "application/json",
        }

        try:
            async with self._client() as client:
                response = await client.request(method, url, json=json, params=query, headers=headers)
        except httpx.TimeoutException as e:
            raise LedgerTransientError(f"QuickBooks timeout: {e}")
        except httpx.RequestError as e:
            raise LedgerTransientError(f"QuickBooks request failed: {type(e).__name__}: {e}")

        if response.status_code in (401, 403):
            raise LedgerAuthError(f"QuickBooks rejected credential ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise LedgerTransientError(f"QuickBooks returned {response.status_code}: {_fault_message(response)}")
        if response.status_code >= 400:
            raise LedgerRejectedError(f"QuickBooks returned {response.status_code}: {_fault_message(response)}")
        try:
            return response.json()
        except ValueError:
            raise LedgerTransientError("QuickBooks returned a non-JSON body")

    def _memo(self, payload: LedgerPayload) -> str:
        memo = f"BTCPay invoice {payload.invoice_id} ({payload.reconciliation_status})"
        if payload.notes:
            memo = f"{memo} - {payload.notes}"
        return memo[:4000]

    async def reconcile_deposit(self, payload: LedgerPayload) -> LedgerResult:
        if not settings.QUICKBOOKS_DEPOSIT_ACCOUNT_ID:
            raise LedgerRejectedError("QUICKBOOKS_DEPOSIT_ACCOUNT_ID is not configured")
        line_detail = {}
        if settings.QUICKBOOKS_INCOME_ACCOUNT_ID:
            line_detail["AccountRef"] = {"value": settings.QUICKBOOKS_INCOME_ACCOUNT_ID}
        body = {
            "DepositToAccountRef": {"value": settings.QUICKBOOKS_DEPOSIT_ACCOUNT_ID},
            "CurrencyRef": {"value": payload.currency},
            "PrivateNote": self._memo(payload),
            "Line": [{
                "Amount": _money(payload.amount),
                "DetailType": "DepositLineDetail",
                "Description": f"Bitcoin payment for invoice {payload.order_id or payload.invoice_id}",
                "DepositLineDetail": line_detail,
            }],
        }
        if payload.paid_at:
            body["TxnDate"] = payload.paid_at.date().isoformat()

        data = await self._request("POST", "/deposit", json=body, params={"requestid": payload.idempotency_key})
        deposit = data.get("Deposit") or {}
        if not deposit.get("Id"):
            raise LedgerTransientError("QuickBooks deposit response has no Id")
        ledger_logger.info(f"Created QuickBooks deposit {deposit['Id']} for invoice {payload.invoice_id}")
        return LedgerResult(ledger_object_id=str(deposit["Id"]), object_type="Deposit")

    async def _find_invoice(self, doc_number: str) -> Optional[Dict]:
        escaped = doc_number.replace("'", "\\'")
        data = await self._request(
            "GET", "/query",
            params={"query": f"select * from Invoice where DocNumber = '{escaped}'"}
        )
        invoices = (data.get("QueryResponse") or {}).get("Invoice") or []
        return invoices[0] if invoices else None

    async def reconcile_invoice_payment(self, payload: LedgerPayload) -> LedgerResult:
        doc_number = payload.order_id or payload.invoice_id
        invoice = await self._find_invoice(doc_number)
        amount = _money(payload.amount)
        body = {
            "TotalAmt": amount,
            "CurrencyRef": {"value": payload.currency},
            "PrivateNote": self._memo(payload),
        }
        if invoice is not None:
            body["CustomerRef"] = invoice["CustomerRef"]
            body["Line"] = [{
                "Amount": amount,
                "LinkedTxn": [{"TxnId": invoice["Id"], "TxnType": "Invoice"}],
            }]
        elif settings.QUICKBOOKS_DEFAULT_CUSTOMER_ID:
            # Left unapplied for the bookkeeper to match by hand
            body["CustomerRef"] = {"value": settings.QUICKBOOKS_DEFAULT_CUSTOMER_ID}
            ledger_logger.warning(
                f"No QuickBooks invoice with DocNumber {doc_number}, recording unapplied payment "
                f"for BTCPay invoice {payload.invoice_id}"
            )
        else:
            raise LedgerRejectedError(f"No QuickBooks invoice with DocNumber {doc_number}")

        if settings.QUICKBOOKS_DEPOSIT_ACCOUNT_ID:
            body["DepositToAccountRef"] = {"value": settings.QUICKBOOKS_DEPOSIT_ACCOUNT_ID}
        if payload.paid_at:
            body["TxnDate"] = payload.paid_at.date().isoformat()

        data = await self._request("POST", "/payment", json=body, params={"requestid": payload.idempotency_key})
        payment = data.get("Payment") or {}
        if not payment.get("Id"):
            raise LedgerTransientError("QuickBooks payment response has no Id")
        ledger_logger.info(
            f"Created QuickBooks payment {payment['Id']} "
            f"against invoice {invoice['Id'] if invoice else '(unapplied)'} "
            f"for BTCPay invoice {payload.invoice_id}"
        )
        return LedgerResult(ledger_object_id=str(payment["Id"]), object_type="Payment")

    async def health(self) -> bool:
        try:
            credential = self._load_credential()
            realm_id = credential.realm_id or settings.QUICKBOOKS_REALM_ID
            await self._request("GET", f"/companyinfo/{realm_id}")
            return True
        except (LedgerAuthError, LedgerTransientError, LedgerRejectedError) as e:
            ledger_logger.warning(f"QuickBooks health check failed: {e}")
            return False

    def _stored_credential(self) -> Optional[Credential]:
        db = self.session_factory()
        try:
            return get_credential(BACKEND_NAME, db)
        except ValueError:
            return None
        finally:
            db.close()

    async def _await_other_refresh(self) -> bool:
        ledger_logger.info("QuickBooks token refresh already in progress elsewhere, waiting for it")
        if not await wait_for_lock_release(LEDGER_REFRESH_LOCK_KEY, settings.LEDGER_REFRESH_WAIT):
            raise LedgerRefreshInProgress("QuickBooks token refresh still in progress elsewhere")

        after = self._stored_credential()
        if after is None or after.expired:
            return False
        if after.access_token == self._last_used_token:
            ledger_logger.warning("QuickBooks token refresh elsewhere did not store a new token")
            return False
        ledger_logger.info("Using QuickBooks token refreshed by another worker")
        return True

    async def refresh_credentials(self) -> bool:
        """Exchange the stored refresh token for a new access token

        Only one worker refreshes at a time. A worker that loses the lock waits
        for the winner and succeeds if a new, unexpired token was stored.

        Raises:
            LedgerRefreshInProgress: The other worker did not finish in time
        """
        with distributed_lock(LEDGER_REFRESH_LOCK_KEY, timeout=30) as acquired:
            if not acquired:
                return await self._await_other_refresh()

            db = self.session_factory()
            try:
                try:
                    credential = get_credential(BACKEND_NAME, db)
                except ValueError as e:
                    ledger_logger.error(f"Cannot refresh QuickBooks token, stored credential unreadable: {e}")
                    return False
                if credential is None or not credential.refresh_token:
                    ledger_logger.warning("No QuickBooks refresh token stored")
                    return False

                try:
                    async with self._client() as client:
                        response = await client.post(
                            self.token_url,
                            data={"grant_type": "refresh_token", "refresh_token": credential.refresh_token},
                            auth=(settings.QUICKBOOKS_CLIENT_ID, settings.QUICKBOOKS_CLIENT_SECRET),
                            headers={"Accept": "application/json"}
                        )
                except httpx.RequestError as e:
                    ledger_logger.warning(f"QuickBooks token refresh request failed: {e}")
                    return False

                if response.status_code != 200:
                    ledger_logger.warning(f"QuickBooks token refresh rejected ({response.status_code}): {response.text[:200]}")
                    return False

                try:
                    token_data = response.json()
                except ValueError:
                    token_data = {}
                if not token_data.get("access_token"):
                    ledger_logger.warning("QuickBooks token refresh response has no access_token")
                    return False
                save_credential(
                    BACKEND_NAME,
                    token_data["access_token"],
                    db,
                    refresh_token=token_data.get("refresh_token"),
                    realm_id=credential.realm_id,
                    expires_in=token_data.get("expires_in"),
                    refresh_expires_in=token_data.get("x_refresh_token_expires_in")
                )
                ledger_logger.info("QuickBooks access token refreshed")
                return True
            finally:
                db.close()
