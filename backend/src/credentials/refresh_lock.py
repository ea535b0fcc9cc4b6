"""
Per-integration refresh lease.

Two callers refreshing the same token set with the same refresh token race
at the provider: the first wins and the second is rejected. The lease makes
concurrent callers queue behind the in-flight refresh; a caller that had to
wait re-reads the row and reuses the winner's token set instead of issuing a
second provider call.

Implementations:
- RedisRefreshLock: SET NX PX lease shared across worker processes
- InProcessRefreshLock: asyncio.Lock per integration (single instance, tests)

Key schema:
- vault:refresh_lock:{integration_id} -> random owner token (TTL = lease TTL)

Usage:
    lock = get_refresh_lock()
    async with lock.hold(integration_id) as lease:
        if lease.waited:
            # another caller may have refreshed already; re-read first
            ...
"""

import asyncio
import logging
import secrets
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

import redis

from src.config.vault import (
    REFRESH_LOCK_TTL_SECONDS,
    REFRESH_LOCK_WAIT_SECONDS,
    get_redis_url,
)

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "vault:refresh_lock"

# Compare-and-delete so a caller never releases a lease it no longer owns
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


@dataclass
class RefreshLease:
    """Handle yielded by hold()."""
    integration_id: str
    acquired: bool
    waited: bool


class InProcessRefreshLock:
    """
    asyncio.Lock per integration id. Only coordinates callers in this process.

    A lock lives only while some caller holds or waits for it.
    """

    def __init__(self, wait_seconds: float = REFRESH_LOCK_WAIT_SECONDS):
        self.wait_seconds = wait_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def _checkout(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[integration_id] = lock
        self._users[integration_id] = self._users.get(integration_id, 0) + 1
        return lock

    def _checkin(self, integration_id: str) -> None:
        remaining = self._users[integration_id] - 1
        if remaining:
            self._users[integration_id] = remaining
        else:
            del self._users[integration_id]
            del self._locks[integration_id]

    @asynccontextmanager
    async def hold(self, integration_id: str) -> AsyncIterator[RefreshLease]:
        lock = self._checkout(integration_id)
        waited = lock.locked()
        acquired = False

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
                acquired = True
            except asyncio.TimeoutError:
                logger.warning(
                    "Timed out waiting for refresh lease; proceeding without it",
                    extra={"integration_id": integration_id},
                )

            yield RefreshLease(integration_id=integration_id, acquired=acquired, waited=waited)
        finally:
            if acquired:
                lock.release()
            self._checkin(integration_id)


class RedisRefreshLock:
    """
    Redis lease shared by every worker process.

    Redis failures degrade to "no lease" (logged, never raised) so an outage
    does not block token refresh entirely. The client is synchronous; its
    calls run in a worker thread to keep the event loop free while polling.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_seconds: int = REFRESH_LOCK_TTL_SECONDS,
        wait_seconds: float = REFRESH_LOCK_WAIT_SECONDS,
        poll_interval: float = 0.1,
    ):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval

    @staticmethod
    def _key(integration_id: str) -> str:
        return f"{LOCK_KEY_PREFIX}:{integration_id}"

    async def _try_acquire(self, key: str, owner: str) -> Optional[bool]:
        """True if acquired, False if held elsewhere, None if Redis failed."""
        try:
            acquired = await asyncio.to_thread(
                self._redis.set, key, owner, nx=True, px=int(self.ttl_seconds * 1000),
            )
            return bool(acquired)
        except redis.RedisError:
            logger.warning(
                "Failed to acquire refresh lease in Redis",
                extra={"lock_key": key},
                exc_info=True,
            )
            return None

    async def _release(self, key: str, owner: str) -> None:
        try:
            await asyncio.to_thread(self._redis.eval, _RELEASE_SCRIPT, 1, key, owner)
        except redis.RedisError:
            # Lease expires on its own after the TTL
            logger.warning(
                "Failed to release refresh lease in Redis",
                extra={"lock_key": key},
                exc_info=True,
            )

    @asynccontextmanager
    async def hold(self, integration_id: str) -> AsyncIterator[RefreshLease]:
        key = self._key(integration_id)
        owner = secrets.token_hex(16)
        deadline = time.monotonic() + self.wait_seconds
        waited = False

        result = await self._try_acquire(key, owner)
        while result is False and time.monotonic() < deadline:
            waited = True
            await asyncio.sleep(self.poll_interval)
            result = await self._try_acquire(key, owner)

        acquired = result is True
        if result is False:
            logger.warning(
                "Timed out waiting for refresh lease; proceeding without it",
                extra={"integration_id": integration_id},
            )

        try:
            yield RefreshLease(integration_id=integration_id, acquired=acquired, waited=waited)
        finally:
            if acquired:
                await self._release(key, owner)


# --------------------------------------------------------------------------
# Module-level singleton
# --------------------------------------------------------------------------

_refresh_lock = None


def get_refresh_lock():
    """
    Return the process-wide refresh lock.

    Uses Redis when REDIS_URL is set, otherwise an in-process lock.
    """
    global _refresh_lock
    if _refresh_lock is None:
        redis_url = get_redis_url()
        if redis_url:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            _refresh_lock = RedisRefreshLock(client)
            logger.info("Refresh lease backed by Redis")
        else:
            _refresh_lock = InProcessRefreshLock()
            logger.info("Refresh lease is in-process (REDIS_URL not set)")
    return _refresh_lock


def reset_refresh_lock() -> None:
    """Drop the cached lock (tests)."""
    global _refresh_lock
    _refresh_lock = None
