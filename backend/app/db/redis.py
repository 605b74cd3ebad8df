"""Redis client for distributed locks and short-lived coordination state"""
import asyncio
import logging
from uuid import uuid4
from contextlib import contextmanager
from typing import Optional

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

INVOICE_LOCK_PREFIX = "reconcile:invoice:"
LEDGER_REFRESH_LOCK_KEY = "reconcile:ledger_refresh"
SWEEP_LOCK_KEY = "reconcile:fallback_sweep"


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Swap the Redis client (tests use fakeredis)"""
    global _client
    _client = client


def ping() -> bool:
    """Return True if Redis answers"""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


def acquire_lock(lock_key: str, timeout: int = 30, token: Optional[str] = None) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)
        token: Value stored in the key, checked on release

    Returns:
        True if lock was acquired, False if lock already exists
    """
    # SET key value NX EX timeout - atomically set if not exists with expiration
    result = get_redis_client().set(lock_key, token or "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str, token: Optional[str] = None) -> None:
    """Release a distributed lock by deleting the key.

    When a token is given, the key is only deleted if it still holds that token
    (an expired lock may have been taken over by another worker).
    """
    client = get_redis_client()
    if token is not None and client.get(lock_key) != token:
        logger.debug(f"Lock {lock_key} no longer held by this worker, not releasing")
        return
    client.delete(lock_key)


@contextmanager
def distributed_lock(lock_key: str, timeout: int = 30):
    """Context manager yielding whether the lock was acquired"""
    token = uuid4().hex
    acquired = False
    try:
        acquired = acquire_lock(lock_key, timeout=timeout, token=token)
        yield acquired
    finally:
        if acquired:
            try:
                release_lock(lock_key, token=token)
            except redis.RedisError as e:
                logger.debug(f"Failed to release lock {lock_key}: {e}")


def invoice_lock(invoice_id: str):
    """Cross-process lock serializing reconciliation of one invoice"""
    return distributed_lock(f"{INVOICE_LOCK_PREFIX}{invoice_id}", timeout=settings.INVOICE_LOCK_TIMEOUT)


async def wait_for_lock_release(lock_key: str, timeout: float, interval: float = 0.25) -> bool:
    """Poll until another worker releases lock_key.

    Returns:
        True once the key is gone, False if it is still held after timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    client = get_redis_client()
    while client.exists(lock_key):
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)
    return True
