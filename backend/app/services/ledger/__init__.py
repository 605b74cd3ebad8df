"""Ledger adapter package - public API exports"""

from app.services.ledger.base import (
    DEPOSIT_MODE,
    INVOICE_PAYMENT_MODE,
    LedgerAdapter,
    LedgerAuthError,
    LedgerError,
    LedgerPayload,
    LedgerRefreshInProgress,
    LedgerRejectedError,
    LedgerResult,
    LedgerTransientError,
)
from app.services.ledger.registry import (
    LEDGER_BACKENDS,
    create_ledger_adapter,
    get_ledger_adapter,
    set_ledger_adapter,
)
