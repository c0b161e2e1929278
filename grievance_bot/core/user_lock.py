"""
Per-user Lock

Serializes processing of messages from the same citizen, so two photos sent
within milliseconds cannot race on the session read-modify-write.

Acquisition is bounded: after ``max_wait`` seconds the caller proceeds
without the lock rather than dropping the message.
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from grievance_bot.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

LOCK_KEY_PREFIX = "wa:lock:"

# Delete only if the lock still holds our token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def lock_key(user: str) -> str:
    return f"{LOCK_KEY_PREFIX}{user}"


class MemoryUserLock:
    """In-process FIFO lock per user (asyncio.Lock wakes waiters in order)"""

    def __init__(self, max_wait: float = 45.0):
        self._max_wait = max_wait
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user: str) -> AsyncIterator[bool]:
        """Yields True when the lock is held, False after a wait timeout"""
        lock = self._locks.setdefault(user, asyncio.Lock())
        self._refs[user] = self._refs.get(user, 0) + 1
        acquired = False
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._max_wait)
                acquired = True
            except asyncio.TimeoutError:
                logger.warning(
                    "User lock wait exceeded, proceeding without lock",
                    extra_data={
                        "user": user,
                        "max_wait_seconds": self._max_wait,
                    },
                )
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._refs[user] -= 1
            if self._refs[user] == 0:
                del self._refs[user]
                del self._locks[user]

    async def with_lock(self, user: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.hold(user):
            return await fn()

    def __len__(self) -> int:
        return len(self._locks)


class RedisUserLock:
    """
    Distributed lock: ``SET wa:lock:<user> <token> NX EX <ttl>``.

    The expiry releases the lock if its holder crashes. Falls back to the
    in-process lock when Redis cannot be reached.
    """

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[aioredis.Redis]],
        fallback: MemoryUserLock,
        *,
        ttl_seconds: int = 60,
        max_wait: float = 45.0,
        retry_interval: float = 0.3,
    ):
        self._client_factory = client_factory
        self._fallback = fallback
        self._ttl = ttl_seconds
        self._max_wait = max_wait
        self._retry_interval = retry_interval

    async def _acquire(self, client: aioredis.Redis, key: str, token: str) -> bool:
        deadline = time.monotonic() + self._max_wait
        while True:
            if await client.set(key, token, nx=True, ex=self._ttl):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self._retry_interval)

    async def _release(self, client: aioredis.Redis, key: str, token: str) -> None:
        try:
            await client.eval(_RELEASE_SCRIPT, 1, key, token)
        except (RedisError, OSError) as e:
            # The key expires on its own
            logger.warning(
                "Failed to release user lock",
                extra_data={"key": key, "error": str(e)},
            )

    @asynccontextmanager
    async def hold(self, user: str) -> AsyncIterator[bool]:
        key = lock_key(user)
        token = uuid.uuid4().hex
        client = None
        acquired = False
        try:
            client = await self._client_factory()
            acquired = await self._acquire(client, key, token)
        except (RedisError, OSError, RuntimeError) as e:
            logger.warning(
                "Redis lock unavailable, using in-process lock",
                extra_data={"user": user, "error": str(e)},
            )
            client = None

        if client is None:
            async with self._fallback.hold(user) as fallback_acquired:
                yield fallback_acquired
            return

        if not acquired:
            logger.warning(
                "User lock wait exceeded, proceeding without lock",
                extra_data={
                    "user": user,
                    "max_wait_seconds": self._max_wait,
                },
            )
        try:
            yield acquired
        finally:
            if acquired:
                await self._release(client, key, token)

    async def with_lock(self, user: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        async with self.hold(user):
            return await fn()


UserLock = MemoryUserLock | RedisUserLock
