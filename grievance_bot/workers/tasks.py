"""
Celery Tasks

``run_ai_parse_job`` is the worker side of ``CeleryAIParseQueue``: the web
process saves the AI_PROCESSING session and enqueues the user, the worker
parses under the same Redis user lock and sends the follow-up.
"""
import asyncio
import time
from contextlib import contextmanager

from grievance_bot.workers.celery_app import celery_app
from grievance_bot.core.config import settings
from grievance_bot.core.logging import get_logger, set_correlation_id
from grievance_bot.core.redis_client import get_redis
from grievance_bot.core.runtime import build_session_store, build_user_lock, use_redis_backend
from grievance_bot.core.session_store import RedisSessionBackend
from grievance_bot.core.validation import PhoneNumberValidator
from grievance_bot.domain.services.ai_parse_job import AIParseJob
from grievance_bot.domain.services.ai_parse_service import AIParseService
from grievance_bot.domain.services.llm_client import LLMClient
from grievance_bot.domain.services.whatsapp.meta_client import MetaWhatsAppClient
from grievance_bot.state_machine.states import ConversationState

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed with everything bound to it.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; the next task needs a new one
            from grievance_bot.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _build_job():
    """Session store, lock and job for one task run (all bound to its loop)"""
    store = build_session_store(settings)
    lock = build_user_lock(settings)
    job = AIParseJob(store, AIParseService(LLMClient()), MetaWhatsAppClient())
    return store, lock, job


async def _run_ai_parse_job(user: str) -> None:
    _, lock, job = _build_job()
    await lock.with_lock(user, lambda: job.run(user))


@celery_app.task(name="grievance_bot.workers.tasks.run_ai_parse_job")
def run_ai_parse_job(user: str):
    """Parse the buffered free-form text of ``user`` and resume the dialogue"""
    logger.info(
        "AI parse task started",
        extra_data={"user": user},
    )
    run_async(_run_ai_parse_job(user))
    return {"user": PhoneNumberValidator.mask(user)}


async def _recover_stuck_ai_sessions(now: float | None = None) -> int:
    if not use_redis_backend(settings):
        return 0

    now = now or time.time()
    store, lock, job = _build_job()
    backend = RedisSessionBackend(get_redis)
    rerun = 0
    async for user in backend.scan_users():
        session = await store.get(user)
        if session is None or session.state != ConversationState.AI_PROCESSING:
            continue
        if not session.ai_requested_at or now - session.ai_requested_at < settings.AI_JOB_STALE_SECONDS:
            continue
        logger.warning(
            "Re-running stuck AI parse job",
            extra_data={
                "user": user,
                "waiting_seconds": round(now - session.ai_requested_at, 1),
            },
        )
        await lock.with_lock(user, lambda: job.run(user))
        rerun += 1
    return rerun


@celery_app.task(name="grievance_bot.workers.tasks.recover_stuck_ai_sessions")
def recover_stuck_ai_sessions():
    """Re-run the AI job for sessions stuck in AI_PROCESSING"""
    rerun = run_async(_recover_stuck_ai_sessions())
    if rerun:
        logger.info("Stuck AI sessions recovered", extra_data={"count": rerun})
    return {"rerun": rerun}
