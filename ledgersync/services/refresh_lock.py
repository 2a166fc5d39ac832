"""
Cross-process token refresh lock.

Import tasks for one integration can run in different Celery worker
processes at the same time. Xero rotates the refresh token on every refresh,
so two parallel refreshes would invalidate each other; this lock makes the
refresh single-flight across processes.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError

from ledgersync.config import Settings
from ledgersync.errors import TokenRefreshError

logger = structlog.get_logger()


class RedisRefreshLock:
    """
    Redis lock per integration guarding token refreshes.

    Every Celery task runs its own event loop, so a Redis client is opened
    per acquisition rather than shared across loops.

    Attributes:
        redis_url: Redis connection URL
        timeout: Lock expiry in seconds (a crashed holder frees it after this)
        blocking_timeout: Seconds to wait for another holder before giving up
    """

    KEY_PREFIX = "ledgersync:token-refresh:"

    def __init__(self, redis_url: str, timeout: int = 30, blocking_timeout: int = 60):
        self.redis_url = redis_url
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisRefreshLock":
        return cls(
            settings.redis_url,
            timeout=settings.token_refresh_lock_timeout_seconds,
            blocking_timeout=settings.token_refresh_lock_wait_seconds,
        )

    def key_for(self, integration_id: str) -> str:
        return f"{self.KEY_PREFIX}{integration_id}"

    @asynccontextmanager
    async def hold(self, integration_id: str) -> AsyncIterator[None]:
        """
        Hold the refresh lock of one integration.

        Raises:
            TokenRefreshError: If the lock could not be taken (retryable)
        """
        client = aioredis.from_url(self.redis_url)
        try:
            lock = client.lock(
                self.key_for(integration_id),
                timeout=self.timeout,
                blocking_timeout=self.blocking_timeout,
            )
            try:
                acquired = await lock.acquire()
            except (LockError, RedisError) as e:
                raise TokenRefreshError(
                    f"Could not take token refresh lock: {e}",
                    context={"integration_id": integration_id},
                ) from e
            if not acquired:
                raise TokenRefreshError(
                    "Timed out waiting for another token refresh",
                    context={"integration_id": integration_id},
                )
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # Expired while held; another worker may own it now
                    logger.warning("token_refresh_lock_expired", integration_id=integration_id)
        finally:
            await client.aclose()
