"""
Grievance Bot - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from grievance_bot.core.config import settings
from grievance_bot.core.logging import setup_logging, get_logger
from grievance_bot.core.middleware import setup_middleware, setup_exception_handlers
from grievance_bot.core.runtime import get_runtime
from grievance_bot.api.routes import router as api_router
from grievance_bot.db.database import engine, Base
from grievance_bot.db.models import grievance  # noqa: F401  (registers the table)

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {
        "name": "whatsapp",
        "description": "WhatsApp Cloud API webhook, sandbox endpoints and session store status.",
    },
    {"name": "Health", "description": "Liveness and readiness checks."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="WhatsApp intake of citizen grievances: guided chat, AI-assisted free text and form submissions.",
    openapi_tags=_OPENAPI_TAGS,
)

setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "X-Admin-API-Key"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Create tables and start the session store health monitor"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    runtime = get_runtime()
    await runtime.session_store.check_health()
    runtime.session_store.start_monitor()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    runtime = get_runtime()
    await runtime.session_store.stop_monitor()
    # Let in-process AI jobs finish their reply
    await runtime.ai_parse_queue.drain()

    from grievance_bot.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness check",
    description="The process is up. No dependency checks, so a DB or Redis outage never triggers a restart.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness check",
    description=(
        "Checks DB, Redis, the Celery broker (when AI jobs run on Celery) and the session store. "
        "503 only when the database is unreachable."
    ),
    responses={
        200: {
            "description": "Ready (possibly degraded)",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "redis": "error: redis_unavailable",
                        "celery": "disabled",
                        "session_store": {
                            "backend": "memory",
                            "configured_backend": "auto",
                            "primary_healthy": False,
                            "degraded_since": "2026-01-31T10:00:00+00:00",
                            "last_error": "ConnectionError: Connection refused",
                        },
                    }
                }
            },
        },
        503: {"description": "Database unavailable"},
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from grievance_bot.domain.services.health_service import STATUS_UNHEALTHY, check_readiness

    result = await check_readiness(get_runtime().session_store)
    status_code = 503 if result["status"] == STATUS_UNHEALTHY else 200
    return JSONResponse(content=result, status_code=status_code)
