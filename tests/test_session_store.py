"""
Tests for the session store: Redis primary, in-memory fallback, health
transitions and TTL handling.
"""
import pytest

from grievance_bot.core.session_store import (
    InMemorySessionBackend,
    RedisSessionBackend,
    SessionStore,
    session_key,
)
from grievance_bot.state_machine.session import Attachment, Session
from grievance_bot.state_machine.states import ConversationState, Intent

USER = "919876543210"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _session(**fields) -> Session:
    return Session(user=USER, intent=Intent.FILE, state=ConversationState.COLLECT_BASICS, **fields)


class TestInMemoryBackend:

    @pytest.mark.unit
    async def test_round_trip(self):
        backend = InMemorySessionBackend()
        session = _session()
        session.data.contact_name = "Asha Verma"
        session.data.images.append(Attachment(url="https://b/x.jpg", media_id="x"))

        await backend.set(session, ttl_seconds=60)
        loaded = await backend.get(USER)

        assert loaded == session
        assert loaded is not session

    @pytest.mark.unit
    async def test_expiry(self):
        clock = FakeClock()
        backend = InMemorySessionBackend(clock=clock)
        await backend.set(_session(), ttl_seconds=60)

        clock.now += 59
        assert await backend.get(USER) is not None
        clock.now += 2
        assert await backend.get(USER) is None
        assert len(backend) == 0

    @pytest.mark.unit
    async def test_abandoned_sessions_swept_on_write(self):
        clock = FakeClock()
        backend = InMemorySessionBackend(clock=clock)
        for i in range(1000):
            await backend.set(Session(user=f"9170000{i:05d}"), ttl_seconds=1)
        assert len(backend) == 1000

        clock.now += 10_000
        await backend.set(_session(), ttl_seconds=60)

        assert len(backend) == 1
        assert await backend.get(USER) is not None

    @pytest.mark.unit
    async def test_sweep_is_amortized(self):
        clock = FakeClock()
        backend = InMemorySessionBackend(clock=clock, prune_interval=60)
        await backend.set(Session(user="917000000001"), ttl_seconds=1)

        clock.now += 30
        await backend.set(_session(), ttl_seconds=60)
        assert len(backend) == 2

        clock.now += 31
        await backend.set(_session(), ttl_seconds=60)
        assert len(backend) == 1


class TestRedisBackend:

    @pytest.mark.unit
    async def test_set_uses_key_and_ttl(self, fake_redis, redis_factory):
        backend = RedisSessionBackend(redis_factory)
        await backend.set(_session(), ttl_seconds=3600)

        assert fake_redis.ttl_of(session_key(USER)) == 3600
        loaded = await backend.get(USER)
        assert loaded.state == ConversationState.COLLECT_BASICS

    @pytest.mark.unit
    async def test_scan_users(self, fake_redis, redis_factory):
        backend = RedisSessionBackend(redis_factory)
        await backend.set(_session(), ttl_seconds=60)
        await backend.set(Session(user="917012345678"), ttl_seconds=60)
        await fake_redis.set("wa:lock:919876543210", "token")

        users = [user async for user in backend.scan_users()]
        assert sorted(users) == ["917012345678", USER]


class TestSessionStore:

    def _store(self, redis_factory, clock=None) -> SessionStore:
        return SessionStore(
            InMemorySessionBackend(),
            RedisSessionBackend(redis_factory),
            configured_backend="auto",
            ttl_seconds=3600,
            health_check_interval=5,
            clock=clock or FakeClock(),
        )

    @pytest.mark.unit
    async def test_uses_redis_while_healthy(self, fake_redis, redis_factory):
        store = self._store(redis_factory)
        await store.set(_session())

        assert await fake_redis.get(session_key(USER)) is not None
        assert store.status()["backend"] == "redis"
        assert store.status()["primary_healthy"] is True

    @pytest.mark.unit
    async def test_set_stamps_last_message_at(self, session_store):
        session = _session()
        await session_store.set(session)
        loaded = await session_store.get(USER)
        assert loaded.last_message_at is not None

    @pytest.mark.unit
    async def test_falls_back_to_memory_on_failure(self, fake_redis, redis_factory):
        store = self._store(redis_factory)
        fake_redis.fail = True

        await store.set(_session())
        loaded = await store.get(USER)

        assert loaded is not None
        assert loaded.state == ConversationState.COLLECT_BASICS
        status = store.status()
        assert status["backend"] == "memory"
        assert status["primary_healthy"] is False
        assert status["degraded_since"] is not None
        assert "Connection refused" in status["last_error"]

    @pytest.mark.unit
    async def test_recovers_after_interval(self, fake_redis, redis_factory):
        clock = FakeClock()
        store = self._store(redis_factory, clock)
        fake_redis.fail = True
        await store.set(_session())
        assert store.primary_healthy is False

        fake_redis.fail = False
        # Within the retry interval the primary is not tried again
        clock.now += 1
        await store.get(USER)
        assert store.primary_healthy is False

        clock.now += 5
        await store.get(USER)
        assert store.primary_healthy is True
        assert store.status()["degraded_since"] is None

    @pytest.mark.unit
    async def test_check_health(self, fake_redis, redis_factory):
        store = self._store(redis_factory)
        fake_redis.fail = True
        assert await store.check_health() is False
        fake_redis.fail = False
        assert await store.check_health() is True
        assert store.primary_healthy is True

    @pytest.mark.unit
    async def test_delete_clears_both_backends(self, fake_redis, redis_factory):
        clock = FakeClock()
        store = self._store(redis_factory, clock)
        fake_redis.fail = True
        await store.set(_session())

        fake_redis.fail = False
        clock.now += 10
        await store.delete(USER)
        assert await store.get(USER) is None

    @pytest.mark.unit
    async def test_corrupt_record_dropped(self, fake_redis, redis_factory):
        store = self._store(redis_factory)
        await fake_redis.set(session_key(USER), '{"user": "x", "state": "NOPE"}')
        assert await store.get(USER) is None
        # Bad data is not a Redis outage
        assert store.primary_healthy is True

    @pytest.mark.unit
    async def test_memory_only_store_status(self, session_store):
        status = session_store.status()
        assert status == {
            "backend": "memory",
            "configured_backend": "memory",
            "primary_healthy": None,
            "degraded_since": None,
            "last_error": None,
        }
        assert await session_store.check_health() is False

    @pytest.mark.unit
    async def test_monitor_start_stop(self, redis_factory):
        store = self._store(redis_factory)
        store.start_monitor()
        await store.stop_monitor()
        await store.stop_monitor()
