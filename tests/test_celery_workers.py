"""
Tests for Celery workers (grievance_bot/workers/tasks.py)

Covers:
- run_ai_parse_job: the worker side of the Celery AI queue
- recover_stuck_ai_sessions: re-running jobs for sessions stuck in AI_PROCESSING
- Event loop handling in Celery tasks
- Beat schedule and worker log masking
"""
import asyncio
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from grievance_bot.core.config import settings
from grievance_bot.core.session_store import InMemorySessionBackend, RedisSessionBackend, SessionStore
from grievance_bot.core.user_lock import MemoryUserLock
from grievance_bot.domain.services.ai_parse_job import AIParseJob
from grievance_bot.state_machine.session import Session
from grievance_bot.state_machine.states import ConversationState, FileMode, Intent

NOW = 1_800_000_000.0


@contextmanager
def _patch_run_async_for_test():
    """
    Celery tasks are sync and call run_async(), which creates a new event
    loop. The test already runs inside a loop, so the coroutine runs on a
    fresh loop in a separate thread instead.
    """
    import concurrent.futures

    def _test_run_async(coro):
        from grievance_bot.core.logging import set_correlation_id
        set_correlation_id()

        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_run_in_thread)
            return future.result(timeout=30)

    with patch("grievance_bot.workers.tasks.run_async", side_effect=_test_run_async):
        yield


def _session(user: str, state: ConversationState, ai_requested_at: float | None) -> Session:
    return Session(
        user=user,
        intent=Intent.FILE,
        file_mode=FileMode.AI,
        state=state,
        free_form_text_buffer="No water in Aliganj since Monday",
        ai_requested_at=ai_requested_at,
    )


@pytest.fixture
def redis_store(redis_factory) -> SessionStore:
    return SessionStore(
        InMemorySessionBackend(),
        RedisSessionBackend(redis_factory),
        configured_backend="redis",
    )


@pytest.fixture
def fake_job():
    job = MagicMock(spec=AIParseJob)
    job.run = AsyncMock()
    return job


# ============================================================================
# run_ai_parse_job
# ============================================================================


class TestRunAIParseJob:

    @pytest.mark.unit
    async def test_runs_job_under_user_lock(self, fake_job, session_store):
        from grievance_bot.workers.tasks import run_ai_parse_job

        lock = MemoryUserLock(max_wait=5)
        with _patch_run_async_for_test():
            with patch(
                "grievance_bot.workers.tasks._build_job",
                return_value=(session_store, lock, fake_job),
            ):
                result = run_ai_parse_job("919876543210")

        fake_job.run.assert_awaited_once_with("919876543210")
        assert result == {"user": "91987654****"}
        assert len(lock) == 0


# ============================================================================
# recover_stuck_ai_sessions
# ============================================================================


class TestRecoverStuckAISessions:

    @pytest.mark.unit
    async def test_noop_without_redis(self):
        from grievance_bot.workers.tasks import _recover_stuck_ai_sessions

        assert await _recover_stuck_ai_sessions(now=NOW) == 0

    @pytest.mark.unit
    async def test_reruns_only_stale_ai_sessions(self, redis_factory, redis_store, fake_job):
        from grievance_bot.workers.tasks import _recover_stuck_ai_sessions

        stale = NOW - settings.AI_JOB_STALE_SECONDS - 1
        await redis_store.set(_session("919000000001", ConversationState.AI_PROCESSING, stale))
        await redis_store.set(_session("919000000002", ConversationState.AI_PROCESSING, NOW - 1))
        await redis_store.set(_session("919000000003", ConversationState.COLLECT_FREE_FORM, stale))
        await redis_store.set(_session("919000000004", ConversationState.AI_PROCESSING, None))

        with patch("grievance_bot.workers.tasks.use_redis_backend", return_value=True), \
                patch("grievance_bot.workers.tasks.get_redis", redis_factory), \
                patch(
                    "grievance_bot.workers.tasks._build_job",
                    return_value=(redis_store, MemoryUserLock(max_wait=5), fake_job),
                ):
            rerun = await _recover_stuck_ai_sessions(now=NOW)

        assert rerun == 1
        fake_job.run.assert_awaited_once_with("919000000001")

    @pytest.mark.unit
    async def test_task_wraps_recovery(self):
        from grievance_bot.workers.tasks import recover_stuck_ai_sessions

        with _patch_run_async_for_test():
            with patch(
                "grievance_bot.workers.tasks._recover_stuck_ai_sessions",
                new=AsyncMock(return_value=2),
            ):
                assert recover_stuck_ai_sessions() == {"rerun": 2}


# ============================================================================
# Event loop handling
# ============================================================================


class TestEventLoop:

    @pytest.mark.unit
    def test_run_async_returns_result(self):
        from grievance_bot.workers.tasks import run_async

        async def _answer():
            await asyncio.sleep(0)
            return 42

        assert run_async(_answer()) == 42

    @pytest.mark.unit
    def test_loop_closed_after_task(self):
        from grievance_bot.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop.run_until_complete(asyncio.sleep(0, result="ok")) == "ok"
        assert loop.is_closed()


@pytest.mark.unit
def test_beat_schedule_runs_recovery():
    from grievance_bot.workers.celery_app import celery_app

    entries = [entry["task"] for entry in celery_app.conf.beat_schedule.values()]
    assert "grievance_bot.workers.tasks.recover_stuck_ai_sessions" in entries


@pytest.mark.unit
def test_worker_log_handlers_mask_phones():
    import logging
    from io import StringIO

    from grievance_bot.core.logging import PhoneMaskingFilter
    from grievance_bot.workers.celery_app import mask_worker_logs

    logger = logging.getLogger("tests.grievance_bot.worker")
    handler = logging.StreamHandler(StringIO())
    logger.addHandler(handler)
    try:
        mask_worker_logs(logger=logger)
        assert any(isinstance(f, PhoneMaskingFilter) for f in handler.filters)
    finally:
        logger.removeHandler(handler)
