"""Global ledger authorization state

When the ledger rejects our credential the orchestrator tries one silent
refresh. If that fails, dispatch halts system-wide (ingestion keeps going and
dispatches stay queued) until an operator reconnects. The state lives in
system_settings so a restart does not silently resume against a dead token.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

from app.core.config import settings
from app.core.metrics import ledger_halted_gauge
from app.db.helpers import (
    LEDGER_AUTH_REASON_KEY, LEDGER_AUTH_STATE_KEY,
    get_system_setting, set_system_setting
)
from app.db.session import SessionLocal
from app.services.ledger.base import LedgerAdapter, LedgerError, LedgerRefreshInProgress

ledger_logger = logging.getLogger("ledger")

NORMAL = "normal"
REFRESHING = "refreshing"
HALTED = "halted"
AUTH_STATES = (NORMAL, REFRESHING, HALTED)


class LedgerAuthState:
    """Owns the normal -> refreshing -> normal | halted transitions"""

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory
        self._lock = asyncio.Lock()
        self._last_refresh_ok: float = 0.0

    def _write(self, state: str, reason: Optional[str]) -> None:
        db = self.session_factory()
        try:
            set_system_setting(LEDGER_AUTH_STATE_KEY, state, db=db)
            set_system_setting(LEDGER_AUTH_REASON_KEY, reason or "", db=db)
        finally:
            db.close()
        ledger_halted_gauge.set(1 if state == HALTED else 0)

    def get_state(self) -> str:
        db = self.session_factory()
        try:
            return get_system_setting(LEDGER_AUTH_STATE_KEY, NORMAL, db=db)
        finally:
            db.close()

    def get_reason(self) -> Optional[str]:
        db = self.session_factory()
        try:
            return get_system_setting(LEDGER_AUTH_REASON_KEY, None, db=db) or None
        finally:
            db.close()

    def is_halted(self) -> bool:
        return self.get_state() == HALTED

    def halt(self, reason: str) -> None:
        self._write(HALTED, reason)
        ledger_logger.error(f"Ledger dispatch HALTED, reconnect required: {reason}")

    def resume(self) -> None:
        """Operator reconnected; dispatch resumes on the next worker pass"""
        was_halted = self.is_halted()
        self._write(NORMAL, None)
        self._last_refresh_ok = time.monotonic()
        if was_halted:
            ledger_logger.info("Ledger dispatch resumed after reconnect")

    async def refresh(self, adapter: LedgerAdapter, failed_at: float, reason: str) -> bool:
        """Try one silent credential refresh after an auth failure.

        Args:
            adapter: Active ledger backend
            failed_at: time.monotonic() of the call that was rejected
            reason: Error text of that rejection, kept if we halt

        Returns:
            True if the caller may retry its call, False if dispatch is halted

        Raises:
            LedgerRefreshInProgress: Another worker is still refreshing; nothing halted
        """
        async with self._lock:
            if self.is_halted():
                return False
            # Another invoice refreshed while we waited for the lock
            if self._last_refresh_ok > failed_at:
                return True

            self._write(REFRESHING, reason)
            ledger_logger.info(f"Ledger credential rejected ({reason}), attempting silent refresh")
            try:
                refreshed = await asyncio.wait_for(
                    adapter.refresh_credentials(),
                    timeout=settings.LEDGER_CALL_TIMEOUT
                )
            except asyncio.TimeoutError:
                ledger_logger.warning("Ledger credential refresh timed out")
                refreshed = False
            except LedgerRefreshInProgress as e:
                ledger_logger.warning(f"Ledger credential refresh unresolved, retrying later: {e}")
                if self.get_state() == REFRESHING:
                    self._write(NORMAL, None)
                raise
            except LedgerError as e:
                ledger_logger.warning(f"Ledger credential refresh failed: {e}")
                refreshed = False

            if refreshed:
                self._last_refresh_ok = time.monotonic()
                self._write(NORMAL, None)
                ledger_logger.info("Ledger credential refreshed, resuming dispatch")
                return True

            self.halt(reason)
            return False


_auth_state: Optional[LedgerAuthState] = None


def get_ledger_auth_state() -> LedgerAuthState:
    global _auth_state
    if _auth_state is None:
        _auth_state = LedgerAuthState()
    return _auth_state


def set_ledger_auth_state(state: Optional[LedgerAuthState]) -> None:
    """Override the auth state holder (tests)"""
    global _auth_state
    _auth_state = state
