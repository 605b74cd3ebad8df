"""Abstract base class and value types for ledger backends"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

DEPOSIT_MODE = "deposit"
INVOICE_PAYMENT_MODE = "invoice_payment"


@dataclass(frozen=True)
class LedgerPayload:
    """Everything a backend needs to record one reconciliation.

    amount is what this write adds to the ledger: paid_amount minus whatever
    earlier successful writes for the same invoice already recorded.
    """
    invoice_id: str
    reconciliation_status: str
    paid_amount: Decimal
    invoice_amount: Optional[Decimal]
    amount: Decimal
    currency: str
    paid_at: Optional[datetime]
    idempotency_key: str
    notes: str = ""
    store_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerResult:
    ledger_object_id: str
    object_type: Optional[str] = None


class LedgerError(Exception):
    """Base class for ledger backend failures"""


class LedgerTransientError(LedgerError):
    """Network error, timeout, 5xx or throttling - safe to retry"""


class LedgerAuthError(LedgerError):
    """Credential rejected or expired"""


class LedgerRefreshInProgress(LedgerTransientError):
    """Another worker is still refreshing the credential"""


class LedgerRejectedError(LedgerError):
    """Backend refused the write; retrying the same payload will not help"""


class LedgerAdapter(ABC):
    """Abstract base class defining the contract every ledger backend implements.

    The orchestrator only ever sees LedgerPayload in and LedgerResult out;
    backend object shapes stay inside the adapter.
    """

    name = "abstract"

    @abstractmethod
    async def reconcile_deposit(self, payload: LedgerPayload) -> LedgerResult:
        """Record the payment as a deposit.

        Raises:
            LedgerTransientError, LedgerAuthError, LedgerRejectedError
        """
        pass

    @abstractmethod
    async def reconcile_invoice_payment(self, payload: LedgerPayload) -> LedgerResult:
        """Record the payment against the matching ledger invoice.

        Raises:
            LedgerTransientError, LedgerAuthError, LedgerRejectedError
        """
        pass

    @abstractmethod
    async def health(self) -> bool:
        """Return True if the backend is reachable with the current credential"""
        pass

    async def refresh_credentials(self) -> bool:
        """Try to renew the credential silently. Backends without refresh return False.

        Raises:
            LedgerRefreshInProgress: Another worker holds the refresh and has not finished
        """
        return False
