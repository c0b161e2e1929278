"""
AI Parse Job - resumes the dialogue after free-form text is complete

The session manager moves the session to AI_PROCESSING and the webhook
enqueues ``AIParseJob.run(user)`` after saving. Each run holds the same
per-user lock as inbound messages, so it always sees the saved session and
never interleaves with a turn of the same citizen.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from grievance_bot.core.logging import get_logger, set_correlation_id
from grievance_bot.core.session_store import SessionStore
from grievance_bot.core.user_lock import UserLock
from grievance_bot.domain.services.ai_parse_service import AIParseService, missing_required_fields
from grievance_bot.domain.services.whatsapp.meta_client import MetaWhatsAppClient
from grievance_bot.state_machine import templates
from grievance_bot.state_machine.session import Session
from grievance_bot.state_machine.states import ConversationState

logger = get_logger(__name__)


class AIParseJob:
    def __init__(
        self,
        session_store: SessionStore,
        parse_service: AIParseService,
        meta_client: MetaWhatsAppClient,
    ):
        self.session_store = session_store
        self.parse_service = parse_service
        self.meta_client = meta_client

    async def run(self, user: str) -> None:
        """Parse the buffered text and move the session to CONFIRM or FILL_MISSING"""
        session = await self.session_store.get(user)
        if session is None or session.state != ConversationState.AI_PROCESSING:
            # Cancelled, reset or already handled
            logger.info(
                "AI parse job skipped",
                extra_data={
                    "user": user,
                    "state": session.state.value if session else None,
                },
            )
            return

        if session.correlation_id:
            set_correlation_id(session.correlation_id)

        pending = session.model_copy(deep=True)
        persisted = False
        try:
            result = await self.parse_service.parse(session.free_form_text_buffer)
            reply = self._apply(session, result.partial)
            await self.session_store.set(session)
            persisted = True
            await self.meta_client.send_text(user, reply)
        except Exception as e:
            logger.error(
                "AI parse job failed",
                extra_data={"user": user, "error": str(e), "after_persist": persisted},
                exc_info=True,
            )
            # Once saved, the stored state is past AI_PROCESSING: revert the pre-merge copy
            await self._revert(user, pending if persisted else None)
            return

        logger.info(
            "AI parse job completed",
            extra_data={
                "user": user,
                "state": session.state.value,
                "missing": session.pending_missing_fields,
            },
        )

    @staticmethod
    def _apply(session: Session, partial: dict) -> str:
        """Merge extracted values into empty slots and pick the next state"""
        for key, value in partial.items():
            if getattr(session.data, key) in (None, ""):
                setattr(session.data, key, value)

        session.free_form_text_buffer = ""
        session.ai_requested_at = None

        missing = missing_required_fields(session.data)
        if not missing:
            session.pending_missing_fields = []
            session.transition_to(ConversationState.CONFIRM)
            return templates.confirm(templates.summary(session.data))

        session.pending_missing_fields = missing
        session.transition_to(ConversationState.FILL_MISSING)
        return templates.fill_missing_intro(
            templates.have_summary(session.data),
            templates.need_list(missing),
            templates.prompt_for_field(missing[0]),
        )

    async def _revert(self, user: str, snapshot: Optional[Session] = None) -> None:
        """
        Back to COLLECT_FREE_FORM with the free-form text kept, so a plain
        DONE retries the parse.

        ``snapshot`` is the pre-merge session, passed when the merged session
        was already saved but its reply never went out. Without it the stored
        session is reverted, but only if nothing else moved it on.
        """
        session = snapshot or await self.session_store.get(user)
        if session is None or session.state != ConversationState.AI_PROCESSING:
            return
        session.transition_to(ConversationState.COLLECT_FREE_FORM)
        session.ai_requested_at = None
        await self.session_store.set(session)
        try:
            await self.meta_client.send_text(user, templates.AI_FAILED_FALLBACK)
        except Exception as e:
            logger.error(
                "Failed to notify user about AI parse failure",
                extra_data={"user": user, "error": str(e)},
            )


class AIParseQueue(ABC):
    """Enqueue an AI parse job for a user"""

    @abstractmethod
    async def enqueue(self, user: str) -> None:
        ...

    async def drain(self) -> None:
        """Wait for in-process work to finish (no-op for remote workers)"""


class InlineAIParseQueue(AIParseQueue):
    """
    Runs jobs on the web process event loop.

    One worker task per user; an enqueue while that worker is busy sets a
    pending flag and the worker runs once more.
    """

    def __init__(self, job: AIParseJob, user_lock: UserLock):
        self._job = job
        self._lock = user_lock
        self._workers: dict[str, asyncio.Task] = {}
        self._pending: set[str] = set()

    async def enqueue(self, user: str) -> None:
        if user in self._workers:
            self._pending.add(user)
            return
        self._workers[user] = asyncio.create_task(self._work(user))

    async def _work(self, user: str) -> None:
        try:
            while True:
                self._pending.discard(user)
                try:
                    await self._lock.with_lock(user, lambda: self._job.run(user))
                except Exception as e:
                    logger.error(
                        "Inline AI parse worker error",
                        extra_data={"user": user, "error": str(e)},
                        exc_info=True,
                    )
                if user not in self._pending:
                    break
        finally:
            self._workers.pop(user, None)

    async def drain(self) -> None:
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    @property
    def active_users(self) -> list[str]:
        return list(self._workers)


class CeleryAIParseQueue(AIParseQueue):
    """Hands the job to the Celery worker, which takes the Redis user lock"""

    async def enqueue(self, user: str) -> None:
        from grievance_bot.workers.tasks import run_ai_parse_job

        run_ai_parse_job.delay(user)
        logger.info(
            "AI parse job queued",
            extra_data={"user": user, "backend": "celery"},
        )


def build_ai_parse_queue(
    backend: str,
    job: AIParseJob,
    user_lock: UserLock,
) -> AIParseQueue:
    if backend == "celery":
        return CeleryAIParseQueue()
    return InlineAIParseQueue(job, user_lock)

