"""
Runtime wiring

Builds the process-scoped objects (session store, user lock, rate limiter,
deduper, Meta client, services, session manager, AI parse queue) once and
hands them to components through their constructors. Tests build their own
runtime with fakes via ``build_runtime(**overrides)``.
"""
from dataclasses import dataclass
from typing import Any, Optional

from grievance_bot.core.config import Settings, settings as default_settings
from grievance_bot.core.logging import get_logger
from grievance_bot.core.rate_limit import MessageDeduper, RateLimiter
from grievance_bot.core.redis_client import get_redis
from grievance_bot.core.session_store import (
    InMemorySessionBackend,
    RedisSessionBackend,
    SessionStore,
)
from grievance_bot.core.user_lock import MemoryUserLock, RedisUserLock, UserLock
from grievance_bot.domain.services.ai_parse_job import AIParseJob, AIParseQueue, build_ai_parse_queue
from grievance_bot.domain.services.ai_parse_service import AIParseService
from grievance_bot.domain.services.grievance_service import GrievanceService
from grievance_bot.domain.services.llm_client import LLMClient
from grievance_bot.domain.services.storage_service import StorageService
from grievance_bot.domain.services.whatsapp.meta_client import MetaWhatsAppClient
from grievance_bot.state_machine.flow_processor import FlowProcessor
from grievance_bot.state_machine.handlers import ConversationStateMachine
from grievance_bot.state_machine.manager import SessionManager
from grievance_bot.state_machine.track_handler import TrackHandler

logger = get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    session_store: SessionStore
    user_lock: UserLock
    rate_limiter: RateLimiter
    deduper: MessageDeduper
    meta_client: MetaWhatsAppClient
    storage: StorageService
    grievance_service: GrievanceService
    ai_parse_service: AIParseService
    state_machine: ConversationStateMachine
    track_handler: TrackHandler
    flow_processor: FlowProcessor
    session_manager: SessionManager
    ai_parse_job: AIParseJob
    ai_parse_queue: AIParseQueue


def use_redis_backend(cfg: Settings) -> bool:
    """auto -> Redis when REDIS_URL is set; redis -> always; memory -> never"""
    if cfg.SESSION_BACKEND == "memory":
        return False
    return bool(cfg.REDIS_URL)


def build_session_store(cfg: Settings, client_factory=get_redis) -> SessionStore:
    primary = RedisSessionBackend(client_factory) if use_redis_backend(cfg) else None
    return SessionStore(
        InMemorySessionBackend(),
        primary,
        configured_backend=cfg.SESSION_BACKEND,
        ttl_seconds=cfg.SESSION_TTL_SECONDS,
        health_check_interval=cfg.REDIS_HEALTH_CHECK_INTERVAL_SECONDS,
    )


def build_user_lock(cfg: Settings, client_factory=get_redis) -> UserLock:
    memory_lock = MemoryUserLock(max_wait=cfg.USER_LOCK_MAX_WAIT_SECONDS)
    if not use_redis_backend(cfg):
        return memory_lock
    return RedisUserLock(
        client_factory,
        memory_lock,
        ttl_seconds=cfg.USER_LOCK_TTL_SECONDS,
        max_wait=cfg.USER_LOCK_MAX_WAIT_SECONDS,
        retry_interval=cfg.USER_LOCK_RETRY_INTERVAL_SECONDS,
    )


def build_runtime(cfg: Optional[Settings] = None, **overrides: Any) -> Runtime:
    """
    Build a complete runtime.

    Any field of ``Runtime`` can be passed to replace the default object;
    dependents are built from the replacement.
    """
    cfg = cfg or default_settings

    def pick(name: str, factory):
        return overrides[name] if name in overrides else factory()

    session_store = pick("session_store", lambda: build_session_store(cfg))
    user_lock = pick("user_lock", lambda: build_user_lock(cfg))
    rate_limiter = pick(
        "rate_limiter",
        lambda: RateLimiter(cfg.RATE_LIMIT_MAX_MESSAGES, cfg.RATE_LIMIT_WINDOW_SECONDS),
    )
    deduper = pick("deduper", lambda: MessageDeduper(cfg.DEDUPE_TTL_SECONDS))
    meta_client = pick("meta_client", MetaWhatsAppClient)
    storage = pick("storage", StorageService)
    grievance_service = pick("grievance_service", GrievanceService)
    ai_parse_service = pick("ai_parse_service", lambda: AIParseService(LLMClient()))
    state_machine = pick("state_machine", lambda: ConversationStateMachine(grievance_service))
    track_handler = pick("track_handler", lambda: TrackHandler(grievance_service))
    flow_processor = pick("flow_processor", lambda: FlowProcessor(grievance_service))
    session_manager = pick(
        "session_manager",
        lambda: SessionManager(
            session_store,
            state_machine,
            track_handler,
            rate_limiter,
            meta_client,
            storage,
            stale_after_seconds=cfg.STALE_SESSION_SECONDS,
        ),
    )
    ai_parse_job = pick(
        "ai_parse_job",
        lambda: AIParseJob(session_store, ai_parse_service, meta_client),
    )
    ai_parse_queue = pick(
        "ai_parse_queue",
        lambda: build_ai_parse_queue(cfg.AI_JOB_BACKEND, ai_parse_job, user_lock),
    )

    logger.info(
        "Runtime built",
        extra_data={
            "session_backend": cfg.SESSION_BACKEND,
            "redis_sessions": use_redis_backend(cfg),
            "ai_job_backend": cfg.AI_JOB_BACKEND,
        },
    )
    return Runtime(
        settings=cfg,
        session_store=session_store,
        user_lock=user_lock,
        rate_limiter=rate_limiter,
        deduper=deduper,
        meta_client=meta_client,
        storage=storage,
        grievance_service=grievance_service,
        ai_parse_service=ai_parse_service,
        state_machine=state_machine,
        track_handler=track_handler,
        flow_processor=flow_processor,
        session_manager=session_manager,
        ai_parse_job=ai_parse_job,
        ai_parse_queue=ai_parse_queue,
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """Process-wide runtime, built on first use"""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    """Replace (or with None, reset) the process-wide runtime"""
    global _runtime
    _runtime = runtime
