"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- Fake Redis and a fake WhatsApp Cloud API client
- A complete runtime wired with the fakes, and an HTTP test client
- Inbound message factories
"""
# Settings are read at import time, so the environment goes first
import os
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["REDIS_URL"] = ""
os.environ["SESSION_BACKEND"] = "memory"
os.environ["AI_JOB_BACKEND"] = "inline"
os.environ["WHATSAPP_VERIFY_TOKEN"] = "test-verify-token"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["WHATSAPP_APP_SECRET"] = ""

import fnmatch
import itertools
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from grievance_bot.core.config import settings
from grievance_bot.core.rate_limit import MessageDeduper, RateLimiter
from grievance_bot.core.runtime import build_runtime, set_runtime
from grievance_bot.core.session_store import InMemorySessionBackend, SessionStore
from grievance_bot.core.user_lock import MemoryUserLock
from grievance_bot.db.database import Base
from grievance_bot.db.models import grievance  # noqa: F401
from grievance_bot.domain.services.ai_parse_service import AIParseService, ParseResult
from grievance_bot.domain.services.grievance_service import GrievanceService
from grievance_bot.domain.services.storage_service import StorageService
from grievance_bot.domain.services.whatsapp.meta_client import MediaDownload, MetaWhatsAppClient
from grievance_bot.state_machine.session import InboundMessage, MessageType

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# A valid Indian mobile in WhatsApp's "from" format
TEST_SENDER = "919876543210"
ADMIN_HEADERS = {"X-Admin-API-Key": "test-admin-key"}


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def grievance_service(session_factory) -> GrievanceService:
    return GrievanceService(session_factory)


# ============================================================================
# Fake Redis
# ============================================================================

class FakeRedis:
    """In-memory stand-in for redis.asyncio with the commands the bot uses"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if missing) and EX (expiry in seconds)"""
        self._check()
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def eval(self, script: str, numkeys: int, *args: str) -> int:
        """Only the compare-and-delete lock release script"""
        self._check()
        key, token = args[0], args[1]
        if self._store.get(key) == token:
            return await self.delete(key)
        return 0

    async def scan_iter(self, match: str = "*", count: int | None = None):
        self._check()
        for key in list(self._store):
            if fnmatch.fnmatch(key, match):
                yield key

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_factory(fake_redis):
    async def _get_fake_redis():
        return fake_redis

    return _get_fake_redis


# ============================================================================
# Mock External Services
# ============================================================================

@pytest.fixture
def mock_meta_client():
    """WhatsApp Cloud API client with every network call mocked"""
    client = MagicMock(spec=MetaWhatsAppClient)
    client.configured = True
    client.flow_configured = False
    client.send_text = AsyncMock()
    client.send_flow = AsyncMock()
    client.mark_read = AsyncMock()
    client.download_media = AsyncMock(
        return_value=MediaDownload(
            content=b"\xff\xd8\xff" + b"0" * 64,
            file_name="media-1.jpg",
            mime_type="image/jpeg",
        )
    )
    return client


@pytest.fixture
def mock_s3_client():
    s3 = MagicMock()
    s3.put_object.return_value = {"ETag": '"abc"'}
    return s3


@pytest.fixture
def storage_service(mock_s3_client) -> StorageService:
    return StorageService(
        bucket="test-bucket",
        region="ap-south-1",
        folder="grievances",
        client=mock_s3_client,
    )


@pytest.fixture
def mock_ai_parse_service():
    service = MagicMock(spec=AIParseService)
    service.parse = AsyncMock(return_value=ParseResult(partial={}, missing_fields=[]))
    return service


# ============================================================================
# Runtime
# ============================================================================

@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(InMemorySessionBackend(), configured_backend="memory")


@pytest.fixture
def runtime(
    session_store,
    grievance_service,
    mock_meta_client,
    storage_service,
    mock_ai_parse_service,
):
    """Process runtime wired with fakes and installed as the global one"""
    rt = build_runtime(
        settings,
        session_store=session_store,
        user_lock=MemoryUserLock(max_wait=5.0),
        rate_limiter=RateLimiter(max_messages=100, window_seconds=60),
        deduper=MessageDeduper(ttl_seconds=300),
        meta_client=mock_meta_client,
        storage=storage_service,
        grievance_service=grievance_service,
        ai_parse_service=mock_ai_parse_service,
    )
    set_runtime(rt)
    yield rt
    set_runtime(None)


@pytest.fixture(scope="function")
async def test_client(runtime):
    """HTTP client against the app, using the fake runtime"""
    from httpx import AsyncClient, ASGITransport
    from grievance_bot.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ============================================================================
# Message factories
# ============================================================================

_message_ids = itertools.count(1)


@pytest.fixture
def inbound():
    """Build an InboundMessage with a fresh message id"""
    def _make(
        text: str | None = None,
        *,
        sender: str = TEST_SENDER,
        type: MessageType = MessageType.TEXT,
        **fields,
    ) -> InboundMessage:
        return InboundMessage(
            sender=sender,
            message_id=f"wamid.test.{next(_message_ids)}",
            type=type,
            text=text,
            **fields,
        )

    return _make


@pytest.fixture
def chat(runtime, inbound):
    """Send one text through the session manager with persistence"""
    from grievance_bot.api.webhooks.whatsapp import run_turn

    async def _say(text: str, sender: str = TEST_SENDER):
        return await run_turn(inbound(text, sender=sender), runtime)

    return _say


# ============================================================================
# Sample data
# ============================================================================

@pytest.fixture
def complete_grievance_data() -> dict:
    """Every required field, as collected by the chat"""
    return {
        "contact_name": "Asha Verma",
        "contact_email": "asha@example.com",
        "contact_phone": "+919876543210",
        "title": "Broken streetlight",
        "description": "The streetlight near the market has been off for two weeks.",
        "category": "electricity",
        "district_name": "Lucknow",
        "subdistrict_name": "Sadar",
        "area": "Hazratganj",
        "latitude": 26.85,
        "longitude": 80.95,
    }
