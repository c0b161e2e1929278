"""
Conversation Session Store

Per-user ``Session`` records with a TTL refreshed on every write.

- ``RedisSessionBackend``: key ``wa:session:<user>``, ``SET EX``. Shared by
  every web process and the Celery worker.
- ``InMemorySessionBackend``: process-local dict with per-entry expiry.
- ``SessionStore``: routes to Redis while it is healthy and to memory
  otherwise. Its methods never raise: a failing store must not block the
  webhook path. Health changes are logged once per transition and exposed
  through ``status()`` for /health/ready.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError

from grievance_bot.core.logging import get_logger
from grievance_bot.state_machine.session import Session

logger = get_logger(__name__)

SESSION_KEY_PREFIX = "wa:session:"


def session_key(user: str) -> str:
    return f"{SESSION_KEY_PREFIX}{user}"


class SessionBackend(ABC):
    """Raw storage for serialized sessions. Implementations may raise."""

    name: str = "base"

    @abstractmethod
    async def get(self, user: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def set(self, session: Session, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, user: str) -> None:
        ...


class InMemorySessionBackend(SessionBackend):
    """Single-instance fallback. Expired entries are dropped on access and swept on write."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic, prune_interval: float = 60.0):
        self._clock = clock
        self._prune_interval = prune_interval
        self._entries: dict[str, tuple[float, str]] = {}
        self._last_prune = clock()

    def _prune(self, now: float) -> None:
        # Users who never come back are only reclaimed here
        if now - self._last_prune < self._prune_interval:
            return
        expired = [user for user, (expires_at, _) in self._entries.items() if expires_at <= now]
        for user in expired:
            del self._entries[user]
        self._last_prune = now

    async def get(self, user: str) -> Optional[Session]:
        entry = self._entries.get(user)
        if entry is None:
            return None
        expires_at, raw = entry
        if self._clock() >= expires_at:
            del self._entries[user]
            return None
        return Session.model_validate_json(raw)

    async def set(self, session: Session, ttl_seconds: int) -> None:
        now = self._clock()
        self._prune(now)
        self._entries[session.user] = (
            now + ttl_seconds,
            session.model_dump_json(),
        )

    async def delete(self, user: str) -> None:
        self._entries.pop(user, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisSessionBackend(SessionBackend):
    name = "redis"

    def __init__(self, client_factory: Callable[[], Awaitable[aioredis.Redis]]):
        self._client_factory = client_factory

    async def get(self, user: str) -> Optional[Session]:
        client = await self._client_factory()
        raw = await client.get(session_key(user))
        if raw is None:
            return None
        return Session.model_validate_json(raw)

    async def set(self, session: Session, ttl_seconds: int) -> None:
        client = await self._client_factory()
        await client.set(session_key(session.user), session.model_dump_json(), ex=ttl_seconds)

    async def delete(self, user: str) -> None:
        client = await self._client_factory()
        await client.delete(session_key(user))

    async def ping(self) -> None:
        client = await self._client_factory()
        await client.ping()

    async def scan_users(self) -> AsyncIterator[str]:
        """Users with a live session key (SCAN, never KEYS)"""
        client = await self._client_factory()
        async for key in client.scan_iter(match=f"{SESSION_KEY_PREFIX}*", count=200):
            yield key[len(SESSION_KEY_PREFIX):]


class SessionStore:
    """Session store with Redis primary and in-memory fallback"""

    def __init__(
        self,
        memory: InMemorySessionBackend,
        primary: Optional[RedisSessionBackend] = None,
        *,
        configured_backend: str = "auto",
        ttl_seconds: int = 3600,
        health_check_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._memory = memory
        self._primary = primary
        self._configured_backend = configured_backend
        self._ttl = ttl_seconds
        self._interval = health_check_interval
        self._clock = clock

        self._primary_healthy = primary is not None
        self._degraded_since: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_failure_at: float = 0.0
        self._monitor_task: Optional[asyncio.Task] = None

    # ── health ──

    @property
    def primary_healthy(self) -> bool:
        return self._primary_healthy

    @property
    def active_backend(self) -> SessionBackend:
        if self._primary is not None and self._primary_healthy:
            return self._primary
        return self._memory

    def _mark_unhealthy(self, error: BaseException) -> None:
        self._last_error = f"{type(error).__name__}: {error}"
        self._last_failure_at = self._clock()
        if self._primary_healthy:
            self._primary_healthy = False
            self._degraded_since = datetime.now(timezone.utc)
            logger.warning(
                "Session store degraded: Redis unavailable, using in-memory sessions",
                extra_data={"error": self._last_error},
            )

    def _mark_healthy(self) -> None:
        if not self._primary_healthy:
            self._primary_healthy = True
            logger.info(
                "Session store recovered: Redis available again",
                extra_data={"degraded_since": str(self._degraded_since)},
            )
            self._degraded_since = None

    def _primary_for_call(self) -> Optional[RedisSessionBackend]:
        """Primary to try for this call, including a periodic retry while degraded"""
        if self._primary is None:
            return None
        if self._primary_healthy:
            return self._primary
        if self._clock() - self._last_failure_at >= self._interval:
            return self._primary
        return None

    def status(self) -> dict[str, Any]:
        return {
            "backend": self.active_backend.name,
            "configured_backend": self._configured_backend,
            "primary_healthy": self._primary_healthy if self._primary is not None else None,
            "degraded_since": self._degraded_since.isoformat() if self._degraded_since else None,
            "last_error": self._last_error,
        }

    async def check_health(self) -> bool:
        """Ping the primary once and record the outcome"""
        if self._primary is None:
            return False
        try:
            await self._primary.ping()
        except Exception as e:
            self._mark_unhealthy(e)
            return False
        self._mark_healthy()
        return True

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.check_health()

    def start_monitor(self) -> None:
        if self._primary is None or self._monitor_task is not None:
            return
        self._monitor_task = asyncio.create_task(self._monitor())
        logger.info(
            "Session store health monitor started",
            extra_data={"interval_seconds": self._interval},
        )

    async def stop_monitor(self) -> None:
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None

    # ── contract ──

    async def get(self, user: str) -> Optional[Session]:
        primary = self._primary_for_call()
        if primary is not None:
            try:
                session = await primary.get(user)
            except ValidationError as e:
                logger.error(
                    "Corrupt session record dropped",
                    extra_data={"user": user, "error": str(e)},
                )
                return None
            except Exception as e:
                self._mark_unhealthy(e)
            else:
                self._mark_healthy()
                return session

        try:
            return await self._memory.get(user)
        except ValidationError as e:
            logger.error(
                "Corrupt in-memory session dropped",
                extra_data={"user": user, "error": str(e)},
            )
            await self._memory.delete(user)
            return None

    async def set(self, session: Session) -> None:
        session.last_message_at = time.time()
        primary = self._primary_for_call()
        if primary is not None:
            try:
                await primary.set(session, self._ttl)
            except Exception as e:
                self._mark_unhealthy(e)
            else:
                self._mark_healthy()
                return
        await self._memory.set(session, self._ttl)

    async def delete(self, user: str) -> None:
        # Also clear the fallback copy, so a stale memory session cannot
        # resurface on the next outage
        await self._memory.delete(user)
        primary = self._primary_for_call()
        if primary is None:
            return
        try:
            await primary.delete(user)
        except Exception as e:
            self._mark_unhealthy(e)
        else:
            self._mark_healthy()
