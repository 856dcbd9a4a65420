"""Per-page lock serializing issue mutations across workers."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from src import metrics
from src.config import settings
from src.errors import PageLockError

logger = logging.getLogger(__name__)

LOCK_KEY_TEMPLATE = "scan:page:{page_id}:lock"

# Delete only if the stored token is ours. 1 = deleted, 0 = missing or not ours
SAFE_UNLOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def lock_key(page_id: int) -> str:
    return LOCK_KEY_TEMPLATE.format(page_id=page_id)


class PageLockManager:
    """
    Two layers of mutual exclusion per product page.

    An in-process ``asyncio.Lock`` keeps coroutines in this worker in line, and
    a Redis ``SET NX EX`` key with a random token does the same across
    processes. If Redis cannot be reached the manager logs and carries on
    under the local lock alone.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        wait_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.page_lock_ttl_seconds
        self.wait_seconds = wait_seconds if wait_seconds is not None else settings.page_lock_wait_seconds
        self.poll_seconds = poll_seconds or settings.page_lock_poll_seconds
        self._redis: Optional[redis.Redis] = None
        self._local_locks: Dict[int, asyncio.Lock] = {}
        self._local_users: Dict[int, int] = {}

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    def local_lock(self, page_id: int) -> asyncio.Lock:
        lock = self._local_locks.get(page_id)
        if lock is None:
            lock = asyncio.Lock()
            self._local_locks[page_id] = lock
        return lock

    async def acquire(self, page_id: int, deadline: float) -> Optional[str]:
        """
        Take the Redis lock, polling until the deadline.

        Returns:
            Token if acquired, None if Redis is unavailable

        Raises:
            PageLockError: Another holder kept the lock past the deadline
        """
        token = uuid4().hex
        key = lock_key(page_id)
        started = time.monotonic()

        while True:
            try:
                redis_client = await self._get_redis()
                acquired = await redis_client.set(key, token, nx=True, ex=self.ttl_seconds)
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for page {page_id} lock, using in-process lock only: {e}"
                )
                return None

            if acquired:
                waited = time.monotonic() - started
                metrics.page_lock_wait_seconds.observe(waited)
                logger.debug(f"Acquired lock for page {page_id} after {waited:.2f}s")
                return token

            if time.monotonic() >= deadline:
                raise PageLockError(page_id, time.monotonic() - started)
            await asyncio.sleep(self.poll_seconds)

    async def release(self, page_id: int, token: str) -> bool:
        """Release the Redis lock if we still own it."""
        try:
            redis_client = await self._get_redis()
            result = await redis_client.eval(SAFE_UNLOCK_SCRIPT, 1, lock_key(page_id), token)
        except Exception as e:
            logger.error(f"Failed to release lock for page {page_id}: {e}")
            return False

        if result != 1:
            logger.warning(f"Lock for page {page_id} expired or changed owner before release")
            return False
        return True

    @asynccontextmanager
    async def hold(self, page_id: int) -> AsyncIterator[None]:
        """Hold the page lock for the duration of the block."""
        deadline = time.monotonic() + self.wait_seconds
        local = self.local_lock(page_id)
        self._local_users[page_id] = self._local_users.get(page_id, 0) + 1

        try:
            try:
                await asyncio.wait_for(local.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError:
                raise PageLockError(page_id, self.wait_seconds)

            try:
                token = await self.acquire(page_id, deadline)
                try:
                    yield
                finally:
                    if token is not None:
                        await self.release(page_id, token)
            finally:
                local.release()
        finally:
            self._forget_if_idle(page_id, local)

    def _forget_if_idle(self, page_id: int, local: asyncio.Lock) -> None:
        """Drop the in-process lock once no coroutine holds or waits for it."""
        users = self._local_users.get(page_id, 1) - 1
        if users > 0:
            self._local_users[page_id] = users
            return
        self._local_users.pop(page_id, None)
        if not local.locked() and self._local_locks.get(page_id) is local:
            del self._local_locks[page_id]


# Global page lock manager
page_lock_manager = PageLockManager()
