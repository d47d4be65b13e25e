"""
Per-seller mutual exclusion.

Every read-modify-write of a seller's ledger, provisioning state or
settlement goes through ``SellerLocks.hold(seller_id)``. Locks are never
taken across sellers. Events logged while a lock is held carry
``seller_id``.
"""
import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from deferred_payouts.config import Settings
from deferred_payouts.monitoring.logging import seller_context
from deferred_payouts.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SellerLockTimeout(Exception):
    """Raised when a per-seller lock cannot be acquired in time."""

    pass


class SellerLocks:
    """Interface for per-seller locks."""

    backend = "abstract"

    def hold(self, seller_id: str) -> AbstractAsyncContextManager[None]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InProcessSellerLocks(SellerLocks):
    """
    asyncio locks keyed by seller.

    Serializes work for a seller within one process. Suitable for a single
    API worker and for tests.
    """

    backend = "local"

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, seller_id: str) -> asyncio.Lock:
        lock = self._locks.get(seller_id)
        if lock is None:
            lock = self._locks[seller_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, seller_id: str) -> AsyncIterator[None]:
        async with self._lock_for(seller_id):
            metrics.record_seller_lock(self.backend, "acquired")
            with seller_context(seller_id):
                yield


class RedisSellerLocks(SellerLocks):
    """
    Redis-backed per-seller locks shared by every API worker.

    The lock expires after ``redis_lock_timeout`` seconds so a crashed
    holder cannot block a seller forever.
    """

    backend = "redis"

    def __init__(self, settings: Settings, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize Redis locks.

        Args:
            settings: Application settings
            redis_client: Optional Redis client (creates one if not provided)
        """
        self.settings = settings
        self.redis_client = redis_client or aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    @asynccontextmanager
    async def hold(self, seller_id: str) -> AsyncIterator[None]:
        lock_key = f"seller:lock:{seller_id}"
        lock = self.redis_client.lock(
            lock_key,
            timeout=self.settings.redis_lock_timeout,
            blocking_timeout=self.settings.redis_lock_timeout,
        )

        acquired = await lock.acquire()
        if not acquired:
            metrics.record_seller_lock(self.backend, "timeout")
            logger.warning("seller_lock_acquisition_failed", lock_key=lock_key)
            raise SellerLockTimeout(f"Could not lock seller {seller_id}")

        metrics.record_seller_lock(self.backend, "acquired")
        try:
            with seller_context(seller_id):
                yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lock expired while held; the work itself already finished.
                logger.warning("seller_lock_release_failed", lock_key=lock_key, error=str(e))

    async def close(self) -> None:
        """Close Redis connection."""
        await self.redis_client.aclose()


def build_seller_locks(settings: Settings) -> SellerLocks:
    """Select the lock backend configured in settings."""
    if settings.lock_backend == "redis":
        return RedisSellerLocks(settings)
    return InProcessSellerLocks()
