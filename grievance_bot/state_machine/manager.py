"""
Session Manager - single entry point for every chat turn

Order of checks (each one can end the turn):
rate limit -> session lookup -> staleness -> cancel -> intent capture ->
tracking -> file-mode choice -> media ingestion -> filing state machine.

The manager never writes the session itself; the caller persists
``result.session`` when ``save_session`` is set and clears it on
``end_session``.
"""
import time
from dataclasses import dataclass
from typing import Callable, Optional

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import (
    MediaTooLargeError,
    StorageNotConfiguredError,
    UnsupportedMediaTypeError,
)
from grievance_bot.core.logging import get_correlation_id, get_logger
from grievance_bot.core.rate_limit import RateLimiter
from grievance_bot.core.session_store import SessionStore
from grievance_bot.domain.services.grievance_service import GrievanceCreateResult
from grievance_bot.domain.services.storage_service import StorageService, normalize_mime_type
from grievance_bot.domain.services.whatsapp.meta_client import MetaWhatsAppClient
from grievance_bot.state_machine import templates
from grievance_bot.state_machine.handlers import ConversationStateMachine
from grievance_bot.state_machine.session import Attachment, InboundMessage, MessageType, Session
from grievance_bot.state_machine.states import (
    BASIC_FIELDS_ORDER,
    ConversationState,
    FileMode,
    Intent,
)
from grievance_bot.state_machine.track_handler import TrackHandler

logger = get_logger(__name__)

CANCEL_KEYWORDS = frozenset({"cancel", "cancelar", "quit", "stop", "back", "0"})

INTENT_KEYWORDS = {
    "1": Intent.FILE,
    "file": Intent.FILE,
    "complaint": Intent.FILE,
    "2": Intent.TRACK,
    "track": Intent.TRACK,
    "status": Intent.TRACK,
    "3": Intent.OTHER,
    "other": Intent.OTHER,
    "hi": Intent.OTHER,
    "hello": Intent.OTHER,
    "no": Intent.OTHER,
    "nothing": Intent.OTHER,
}

FILE_MODE_KEYWORDS = {
    "a": FileMode.AI,
    "ai": FileMode.AI,
    "1a": FileMode.AI,
    "b": FileMode.STEP,
    "step": FileMode.STEP,
    "1b": FileMode.STEP,
}

FREE_FORM_MIN_CHARS = 20

# States in which inbound media is not ingested
_MEDIA_FROZEN_STATES = (ConversationState.AI_PROCESSING, ConversationState.DONE)


@dataclass
class SessionManagerResult:
    replies: list[str]
    session: Session
    save_session: bool
    end_session: bool = False
    grievance_created: Optional[GrievanceCreateResult] = None
    # Free-form text is complete; the caller enqueues the AI parse job after saving
    schedule_ai_parse: bool = False
    previous_state: Optional[ConversationState] = None


class SessionManager:
    def __init__(
        self,
        session_store: SessionStore,
        state_machine: ConversationStateMachine,
        track_handler: TrackHandler,
        rate_limiter: RateLimiter,
        meta_client: MetaWhatsAppClient,
        storage: StorageService,
        *,
        stale_after_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session_store = session_store
        self.state_machine = state_machine
        self.track_handler = track_handler
        self.rate_limiter = rate_limiter
        self.meta_client = meta_client
        self.storage = storage
        self.stale_after_seconds = (
            stale_after_seconds if stale_after_seconds is not None else settings.STALE_SESSION_SECONDS
        )
        self._clock = clock

    async def handle_incoming_message(self, message: InboundMessage) -> SessionManagerResult:
        user = message.sender

        # 1. Rate limit
        if not self.rate_limiter.allow(user):
            logger.warning("User rate limited", extra_data={"from": user})
            return SessionManagerResult([templates.RATE_LIMIT], Session(user=user), save_session=False)

        # 2. Session lookup; a brand-new session only gets the menu
        session = await self.session_store.get(user)
        if session is None:
            session = self._new_session(user)
            logger.info("User session created", extra_data={"from": user})
            return SessionManagerResult([templates.WELCOME_INTENT], session, save_session=True)

        previous_state = session.state
        logger.info(
            "User session restored",
            extra_data={
                "from": user,
                "state": session.state.value,
                "intent": session.intent.value if session.intent else None,
            },
        )

        # 3. Staleness
        last = session.last_message_at
        if last and self._clock() - last > self.stale_after_seconds:
            logger.info("User session reset (stale)", extra_data={"from": user})
            return SessionManagerResult(
                [templates.WELCOME_BACK + templates.WELCOME_INTENT],
                self._new_session(user),
                save_session=True,
                previous_state=previous_state,
            )

        # 4. Cancel
        if message.normalized_text in CANCEL_KEYWORDS:
            logger.info("User session cleared (cancel)", extra_data={"from": user})
            return SessionManagerResult(
                [templates.CANCEL + templates.WELCOME_INTENT],
                self._new_session(user),
                save_session=False,
                end_session=True,
                previous_state=previous_state,
            )

        # 5. Intent capture
        if session.state == ConversationState.START:
            result = await self._capture_intent(message, session)
        # 6. Tracking
        elif session.intent == Intent.TRACK:
            result = await self._track(message, session)
        # 7. File-mode choice
        elif session.intent == Intent.FILE and session.state == ConversationState.COLLECT_FILE_MODE:
            result = self._choose_file_mode(message, session)
        # 8./9. Filing
        elif session.intent == Intent.FILE:
            if message.is_media and message.media_id and session.state not in _MEDIA_FROZEN_STATES:
                result = await self._ingest_media(message, session)
            else:
                result = await self._file(message, session)
        else:
            logger.warning(
                "Session without a usable intent, restarting",
                extra_data={"from": user, "state": session.state.value},
            )
            result = SessionManagerResult([templates.WELCOME_INTENT], self._new_session(user), save_session=True)

        result.previous_state = previous_state
        return result

    @staticmethod
    def _new_session(user: str) -> Session:
        return Session(user=user, correlation_id=get_correlation_id())

    # ── intent & mode ──

    async def _capture_intent(self, message: InboundMessage, session: Session) -> SessionManagerResult:
        intent = INTENT_KEYWORDS.get(message.normalized_text)
        if intent is None:
            return SessionManagerResult(
                [templates.INVALID_INTENT, templates.WELCOME_INTENT], session, save_session=False
            )

        session.intent = intent
        session.correlation_id = get_correlation_id()

        if intent == Intent.OTHER:
            logger.info(
                "User session terminated",
                extra_data={"from": session.user, "reason": "goodbye"},
            )
            return SessionManagerResult([templates.GOODBYE], session, save_session=True, end_session=True)

        if intent == Intent.FILE:
            session.transition_to(ConversationState.COLLECT_FILE_MODE)
            return SessionManagerResult([templates.ASK_FILE_MODE], session, save_session=True)

        session.transition_to(ConversationState.TRACK)
        return await self._track(message, session)

    async def _track(self, message: InboundMessage, session: Session) -> SessionManagerResult:
        try:
            track = await self.track_handler.get_tracking_replies(message.text)
        except Exception as e:
            logger.error(
                "Track handler error",
                extra_data={"from": session.user, "error": str(e)},
                exc_info=True,
            )
            return SessionManagerResult([templates.ERROR_GENERIC], session, save_session=False)

        if track.resolved:
            logger.info(
                "User session terminated",
                extra_data={"from": session.user, "reason": "track_resolved"},
            )
        return SessionManagerResult(
            track.replies, session, save_session=True, end_session=track.resolved
        )

    def _choose_file_mode(self, message: InboundMessage, session: Session) -> SessionManagerResult:
        mode = FILE_MODE_KEYWORDS.get(message.normalized_text)
        if mode is None:
            return SessionManagerResult(
                [templates.INVALID_FILE_MODE, templates.ASK_FILE_MODE], session, save_session=False
            )

        session.file_mode = mode
        if mode == FileMode.AI:
            session.free_form_text_buffer = ""
            session.transition_to(ConversationState.COLLECT_FREE_FORM)
            return SessionManagerResult([templates.ASK_FREE_FORM], session, save_session=True)

        session.transition_to(ConversationState.COLLECT_BASICS)
        return SessionManagerResult(
            [templates.prompt_for_field(BASIC_FIELDS_ORDER[0])], session, save_session=True
        )

    # ── filing ──

    async def _ingest_media(self, message: InboundMessage, session: Session) -> SessionManagerResult:
        """Download, store and attach one image/document"""
        is_image = message.type == MessageType.IMAGE
        if session.data.has_media(message.media_id):
            result = self.state_machine.add_attachment(session, Attachment(media_id=message.media_id), is_image)
            return SessionManagerResult(result.replies, result.session, save_session=True)

        try:
            if message.mime_type:
                # Reject unsupported types before downloading anything
                self.storage.check(message.mime_type, 0)
            media = await self.meta_client.download_media(message.media_id)
            stored = await self.storage.persist(media.content, media.file_name, media.mime_type)
        except UnsupportedMediaTypeError:
            reply = templates.MEDIA_UNSUPPORTED
        except MediaTooLargeError:
            reply = templates.MEDIA_TOO_LARGE
        except StorageNotConfiguredError:
            reply = templates.MEDIA_NOT_CONFIGURED
        except Exception as e:
            logger.error(
                "Media processing error",
                extra_data={
                    "from": session.user,
                    "message_id": message.message_id,
                    "media_id": message.media_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            reply = templates.MEDIA_FAILED
        else:
            attachment = Attachment(
                url=stored.url,
                file_name=message.file_name or stored.file_name,
                mime_type=normalize_mime_type(media.mime_type),
                media_id=message.media_id,
            )
            result = self.state_machine.add_attachment(session, attachment, is_image)
            logger.info(
                "Attachment stored",
                extra_data={
                    "from": session.user,
                    "media_id": message.media_id,
                    "attachments": result.session.data.attachment_count,
                },
            )
            return SessionManagerResult(result.replies, result.session, save_session=True)

        return SessionManagerResult([reply], session, save_session=False)

    async def _file(self, message: InboundMessage, session: Session) -> SessionManagerResult:
        try:
            result = await self.state_machine.process(message, session)
        except Exception as e:
            logger.error(
                "Complaint flow error",
                extra_data={
                    "from": session.user,
                    "state": session.state.value,
                    "error": str(e),
                },
                exc_info=True,
            )
            return SessionManagerResult([templates.ERROR_GENERIC], session, save_session=False)

        out = result.session
        out.correlation_id = get_correlation_id()

        if result.free_form_complete:
            has_content = (
                len(out.free_form_text_buffer.strip()) >= FREE_FORM_MIN_CHARS
                or out.data.attachment_count > 0
            )
            if not has_content:
                return SessionManagerResult([templates.FREE_FORM_DONE_MIN_CONTENT], out, save_session=True)

            out.transition_to(ConversationState.AI_PROCESSING)
            out.ai_requested_at = self._clock()
            return SessionManagerResult(
                [templates.AI_PROCESSING], out, save_session=True, schedule_ai_parse=True
            )

        replies = list(result.replies)
        if result.end_session:
            logger.info(
                "User session terminated",
                extra_data={
                    "from": session.user,
                    "reason": "complaint_submitted",
                    "grievance_id": result.grievance_created.grievance_id if result.grievance_created else None,
                },
            )
            replies.append(templates.GOODBYE)

        return SessionManagerResult(
            replies,
            out,
            save_session=True,
            end_session=result.end_session,
            grievance_created=result.grievance_created,
        )
