"""In-process ledger backend for development and testing.

Records every call and can be told to fail, so reconciliation flows can be
exercised without a real accounting system.
"""
import asyncio
from collections import deque
from typing import Deque, Dict, List, Optional
from uuid import uuid4

from app.services.ledger.base import (
    LedgerAdapter, LedgerError, LedgerPayload, LedgerResult
)


class MemoryLedger(LedgerAdapter):
    """Configurable fake ledger"""

    name = "memory"

    def __init__(self) -> None:
        self.calls: List[Dict] = []
        self.objects: Dict[str, LedgerResult] = {}
        self.failures: Deque[LedgerError] = deque()
        self.healthy: bool = True
        self.refresh_succeeds: bool = True
        self.refresh_error: Optional[LedgerError] = None
        self.refresh_calls: int = 0
        self.delay: float = 0.0

    def fail_next(self, *errors: LedgerError) -> None:
        """Queue errors to raise on the next calls, in order"""
        self.failures.extend(errors)

    async def _record(self, method: str, payload: LedgerPayload, object_type: str) -> LedgerResult:
        self.calls.append({"method": method, "payload": payload})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.popleft()
        # Same idempotency key returns the object created the first time
        existing = self.objects.get(payload.idempotency_key)
        if existing is not None:
            return existing
        result = LedgerResult(ledger_object_id=f"mem_{object_type}_{uuid4().hex[:12]}", object_type=object_type)
        self.objects[payload.idempotency_key] = result
        return result

    async def reconcile_deposit(self, payload: LedgerPayload) -> LedgerResult:
        return await self._record("reconcile_deposit", payload, "deposit")

    async def reconcile_invoice_payment(self, payload: LedgerPayload) -> LedgerResult:
        return await self._record("reconcile_invoice_payment", payload, "payment")

    async def health(self) -> bool:
        return self.healthy

    async def refresh_credentials(self) -> bool:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_succeeds

    def calls_for(self, invoice_id: str) -> List[Dict]:
        return [c for c in self.calls if c["payload"].invoice_id == invoice_id]

    def last_payload(self) -> Optional[LedgerPayload]:
        return self.calls[-1]["payload"] if self.calls else None
