"""
Health checks - dependency checks for /health/ready.

- liveness: the process answers (no dependency checks)
- readiness: DB, Redis, Celery broker and the session store state

Only the database is a hard dependency. Redis and the broker report
"degraded": sessions keep working on the in-memory fallback.
"""
from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy import text

from grievance_bot.core.config import settings
from grievance_bot.core.logging import get_logger
from grievance_bot.core.redis_client import get_redis, redis_configured
from grievance_bot.core.session_store import SessionStore
from grievance_bot.db.database import AsyncSessionLocal

logger = get_logger(__name__)

STATUS_HEALTHY = "healthy"
STATUS_DEGRADED = "degraded"
STATUS_UNHEALTHY = "unhealthy"

_CHECK_OK = "ok"
_CHECK_DISABLED = "disabled"

# No infrastructure details in responses
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    if not redis_configured() or settings.SESSION_BACKEND == "memory":
        return _CHECK_DISABLED
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """Broker ping, only when AI jobs run on Celery"""
    if settings.AI_JOB_BACKEND != "celery":
        return _CHECK_DISABLED
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness(session_store: Optional[SessionStore] = None) -> dict[str, Any]:
    """
    Readiness of every external dependency.

    Returns a dict with the overall ``status`` (healthy / degraded /
    unhealthy), one entry per check ("ok", "disabled" or "error: ...") and
    ``session_store`` with the store status when a store is given.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
    }

    if checks["db"] != _CHECK_OK:
        overall = STATUS_UNHEALTHY
    elif all(v in (_CHECK_OK, _CHECK_DISABLED) for v in checks.values()):
        overall = STATUS_HEALTHY
    else:
        overall = STATUS_DEGRADED

    result: dict[str, Any] = {"status": overall, **checks}
    if session_store is not None:
        store_status = session_store.status()
        result["session_store"] = store_status
        if overall == STATUS_HEALTHY and store_status["primary_healthy"] is False:
            result["status"] = STATUS_DEGRADED

    if result["status"] != STATUS_HEALTHY:
        logger.warning("Readiness check not healthy", extra_data=result)
    return result
