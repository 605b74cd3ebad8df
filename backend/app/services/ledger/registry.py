"""Ledger backend registry - the backend is chosen once, at startup"""
import logging
from typing import Optional

from app.core.config import settings
from app.services.ledger.base import LedgerAdapter
from app.services.ledger.memory import MemoryLedger
from app.services.ledger.quickbooks import QuickBooksLedger

logger = logging.getLogger(__name__)

LEDGER_BACKENDS = {
    "memory": MemoryLedger,
    "quickbooks": QuickBooksLedger,
}

_current_adapter: Optional[LedgerAdapter] = None


def create_ledger_adapter(name: str = None) -> LedgerAdapter:
    """Instantiate the configured backend

    Raises:
        ValueError: If the backend name is unknown
    """
    name = name or settings.LEDGER_BACKEND
    backend_cls = LEDGER_BACKENDS.get(name)
    if backend_cls is None:
        raise ValueError(f"Unknown LEDGER_BACKEND {name!r}; expected one of {sorted(LEDGER_BACKENDS)}")
    logger.info(f"Using ledger backend: {name}")
    return backend_cls()


def get_ledger_adapter() -> LedgerAdapter:
    """Return the active backend, creating it from settings on first use"""
    global _current_adapter
    if _current_adapter is None:
        _current_adapter = create_ledger_adapter()
    return _current_adapter


def set_ledger_adapter(adapter: Optional[LedgerAdapter]) -> None:
    """Override the active backend (startup wiring and tests)"""
    global _current_adapter
    _current_adapter = adapter
