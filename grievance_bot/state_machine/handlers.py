"""
Conversation State Machine - grievance filing dialogue

``process(message, session)`` never mutates the session it is given: each
turn works on a deep copy, so the same input always yields the same output
and a failed turn leaves the stored session untouched.
"""
import difflib
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from grievance_bot.core.exceptions import AppException, StateMachineException
from grievance_bot.core.logging import get_logger
from grievance_bot.core.validation import CoordinateValidator, validate_field
from grievance_bot.domain.schemas import GrievanceCreate, submittable_payload, validation_issues
from grievance_bot.domain.services.grievance_service import GrievanceCreateResult, GrievanceService
from grievance_bot.state_machine import templates
from grievance_bot.state_machine.session import (
    Attachment,
    GrievanceData,
    InboundLocation,
    InboundMessage,
    MessageType,
    Session,
)
from grievance_bot.state_machine.states import (
    BASIC_FIELDS_ORDER,
    ConversationState,
    FileMode,
)

logger = get_logger(__name__)

DONE_KEYWORD = "done"
NEW_KEYWORD = "new"
SUBMIT_KEYWORDS = frozenset({"yes", "y", "submit", "confirm"})
USE_CURRENT_PHONE_KEYWORDS = frozenset({
    "yes", "y", "use current", "current", "same", "this number", "my number", "ok",
})

FREE_FORM_MAX_CHARS = 15000
DESCRIPTION_MIN_CHARS = 20
DESCRIPTION_MAX_CHARS = 5000

# "edit <keyword>" -> session field ("latitude" is the location slot)
EDIT_FIELD_KEYWORDS = {
    "name": "contact_name",
    "fullname": "contact_name",
    "contactname": "contact_name",
    "email": "contact_email",
    "mail": "contact_email",
    "emailid": "contact_email",
    "phone": "contact_phone",
    "mobile": "contact_phone",
    "number": "contact_phone",
    "phonenumber": "contact_phone",
    "mobilenumber": "contact_phone",
    "title": "title",
    "subject": "title",
    "category": "category",
    "type": "category",
    "district": "district_name",
    "subdistrict": "subdistrict_name",
    "tehsil": "subdistrict_name",
    "block": "subdistrict_name",
    "area": "area",
    "locality": "area",
    "location": "latitude",
    "coordinates": "latitude",
    "coords": "latitude",
    "latlong": "latitude",
    "pin": "latitude",
    "description": "description",
    "desc": "description",
    "details": "description",
    "issue": "description",
}

_EDIT_KEY_STRIP = re.compile(r"[\s\-_/]+")


def match_edit_field(raw: str) -> Optional[str]:
    """Map the text after "edit" to a field, tolerating small typos"""
    key = _EDIT_KEY_STRIP.sub("", raw.lower())
    if not key:
        return None
    if key in EDIT_FIELD_KEYWORDS:
        return EDIT_FIELD_KEYWORDS[key]
    close = difflib.get_close_matches(key, EDIT_FIELD_KEYWORDS.keys(), n=1, cutoff=0.8)
    return EDIT_FIELD_KEYWORDS[close[0]] if close else None


def next_basic_field(data: GrievanceData) -> Optional[str]:
    for key in BASIC_FIELDS_ORDER:
        if not data.has_field(key):
            return key
    return None


def _with_prompt(error: str, prompt: str) -> str:
    return f"{error}\n\n{prompt}"


@dataclass
class StateMachineResult:
    replies: list[str]
    session: Session
    grievance_created: Optional[GrievanceCreateResult] = None
    end_session: bool = False
    # Free-form "done": the session manager checks content and schedules the AI job
    free_form_complete: bool = False


class ConversationStateMachine:
    """Handles the file-intent states of the citizen conversation"""

    def __init__(self, grievance_service: GrievanceService):
        self.grievance_service = grievance_service

    async def process(self, message: InboundMessage, session: Session) -> StateMachineResult:
        s = session.model_copy(deep=True)

        if message.normalized_text == NEW_KEYWORD:
            return self._restart(s)

        if s.state == ConversationState.DONE:
            return StateMachineResult([templates.ALREADY_SUBMITTED], s)

        if s.state == ConversationState.AI_PROCESSING:
            return StateMachineResult([templates.AI_PLEASE_WAIT], s)

        if message.type == MessageType.LOCATION and message.location is not None:
            return self._handle_location_pin(message.location, s)

        handler = self._get_handler(s.state)
        return await handler(message, s)

    def _get_handler(self, state: ConversationState):
        """Get handler function for state"""
        handlers = {
            # Step mode
            ConversationState.COLLECT_BASICS: self._handle_collect_basics,
            ConversationState.COLLECT_DESCRIPTION: self._handle_collect_description,
            ConversationState.COLLECT_PHONE: self._handle_collect_phone,
            ConversationState.COLLECT_MEDIA: self._handle_collect_media,

            # AI mode
            ConversationState.COLLECT_FREE_FORM: self._handle_collect_free_form,
            ConversationState.FILL_MISSING: self._handle_fill_missing,

            # Review & submit
            ConversationState.CONFIRM: self._handle_confirm,
            ConversationState.EDIT_FIELD: self._handle_edit_field,
        }
        return handlers.get(state, self._handle_outside_flow)

    # ==================== Shared helpers ====================

    def current_prompt(self, s: Session) -> str:
        """The question the citizen is currently expected to answer"""
        if s.state == ConversationState.COLLECT_BASICS:
            key = next_basic_field(s.data)
            return templates.prompt_for_field(key) if key else templates.ASK_DESCRIPTION
        if s.state == ConversationState.FILL_MISSING and s.pending_missing_fields:
            return templates.prompt_for_field(s.pending_missing_fields[0])
        if s.state == ConversationState.EDIT_FIELD and s.pending_edit_field:
            return templates.prompt_for_field(s.pending_edit_field)
        return {
            ConversationState.COLLECT_DESCRIPTION: templates.ASK_DESCRIPTION,
            ConversationState.COLLECT_PHONE: templates.ASK_PHONE,
            ConversationState.COLLECT_MEDIA: templates.MEDIA_CONTINUE,
            ConversationState.COLLECT_FREE_FORM: templates.FREE_FORM_MORE,
            ConversationState.CONFIRM: templates.CONFIRM_REPROMPT,
        }.get(s.state, "")

    def _restart(self, s: Session) -> StateMachineResult:
        """Global "new": start over in step mode with empty data"""
        s.data = GrievanceData()
        s.file_mode = FileMode.STEP
        s.pending_description_buffer = ""
        s.free_form_text_buffer = ""
        s.pending_edit_field = None
        s.pending_missing_fields = []
        s.ai_requested_at = None
        s.force_state(ConversationState.COLLECT_BASICS)
        first = templates.prompt_for_field(BASIC_FIELDS_ORDER[0])
        return StateMachineResult([templates.new_complaint(first)], s)

    def _to_confirm(self, s: Session, prefix: str | None = None) -> StateMachineResult:
        s.transition_to(ConversationState.CONFIRM)
        reply = templates.confirm(templates.summary(s.data))
        return StateMachineResult([f"{prefix}\n\n{reply}" if prefix else reply], s)

    def _validate_answer(self, key: str, message: InboundMessage, sender: str):
        """Validate one answer for ``key``; phone also accepts "use current" keywords"""
        text = (message.text or "").strip()
        if key == "contact_phone" and message.normalized_text in USE_CURRENT_PHONE_KEYWORDS:
            text = sender
        if not text:
            return None, None
        return validate_field(key, text)

    def add_attachment(self, session: Session, attachment: Attachment, is_image: bool) -> StateMachineResult:
        """Append an image/document once per media id, then re-ask the current prompt"""
        s = session.model_copy(deep=True)
        ack = templates.IMAGE_RECEIVED if is_image else templates.DOCUMENT_RECEIVED
        if s.data.has_media(attachment.media_id):
            logger.debug(
                "Duplicate media ignored",
                extra_data={"media_id": attachment.media_id},
            )
        elif is_image:
            s.data.images.append(attachment)
        else:
            s.data.documents.append(attachment)
        return StateMachineResult(
            [templates.media_ack_with_prompt(ack, self.current_prompt(s))], s
        )

    # ==================== Location pin ====================

    def _handle_location_pin(self, location: InboundLocation, s: Session) -> StateMachineResult:
        """A shared pin fills the coordinates in any filing state"""
        for check, value in (
            (CoordinateValidator.validate_latitude, location.latitude),
            (CoordinateValidator.validate_longitude, location.longitude),
        ):
            is_valid, error = check(value)
            if not is_valid:
                return StateMachineResult([_with_prompt(error, self.current_prompt(s))], s)

        if s.state not in (
            ConversationState.COLLECT_BASICS,
            ConversationState.COLLECT_DESCRIPTION,
            ConversationState.COLLECT_PHONE,
            ConversationState.COLLECT_MEDIA,
            ConversationState.COLLECT_FREE_FORM,
            ConversationState.FILL_MISSING,
            ConversationState.CONFIRM,
            ConversationState.EDIT_FIELD,
        ):
            raise StateMachineException(
                f"Location pin outside the filing flow: {s.state.value}", user=s.user
            )

        s.data.latitude = location.latitude
        s.data.longitude = location.longitude
        s.data.location = location.address or location.name or s.data.location

        if s.state == ConversationState.COLLECT_BASICS:
            if next_basic_field(s.data) is None:
                s.transition_to(ConversationState.COLLECT_DESCRIPTION)
            return StateMachineResult(
                [templates.media_ack_with_prompt(templates.LOCATION_RECEIVED, self.current_prompt(s))], s
            )

        if s.state == ConversationState.FILL_MISSING:
            s.pending_missing_fields = [k for k in s.pending_missing_fields if k != "latitude"]
            if not s.pending_missing_fields:
                return self._to_confirm(s, templates.LOCATION_RECEIVED)

        if s.state == ConversationState.EDIT_FIELD and s.pending_edit_field == "latitude":
            s.pending_edit_field = None
            return self._to_confirm(s, templates.UPDATED)

        if s.state == ConversationState.CONFIRM:
            reply = templates.confirm(templates.summary(s.data))
            return StateMachineResult([f"{templates.LOCATION_RECEIVED}\n\n{reply}"], s)

        return StateMachineResult(
            [templates.media_ack_with_prompt(templates.LOCATION_RECEIVED, self.current_prompt(s))], s
        )

    # ==================== Step mode ====================

    async def _handle_collect_basics(self, message: InboundMessage, s: Session) -> StateMachineResult:
        key = next_basic_field(s.data)
        if key is None:
            s.transition_to(ConversationState.COLLECT_DESCRIPTION)
            return StateMachineResult([templates.ASK_DESCRIPTION], s)

        value, error = self._validate_answer(key, message, s.user)
        if error:
            return StateMachineResult([_with_prompt(error, templates.prompt_for_field(key))], s)
        if value is None:
            return StateMachineResult([templates.prompt_for_field(key)], s)

        s.data.set_field(key, value)
        following = next_basic_field(s.data)
        if following is not None:
            return StateMachineResult([templates.prompt_for_field(following)], s)

        s.transition_to(ConversationState.COLLECT_DESCRIPTION)
        return StateMachineResult([templates.ASK_DESCRIPTION], s)

    async def _handle_collect_description(self, message: InboundMessage, s: Session) -> StateMachineResult:
        text = (message.text or "").strip()
        if not text:
            return StateMachineResult([templates.ASK_DESCRIPTION], s)

        if message.normalized_text != DONE_KEYWORD:
            buffer = s.pending_description_buffer
            s.pending_description_buffer = f"{buffer}\n{text}" if buffer else text
            return StateMachineResult([templates.DESCRIPTION_CONTINUE], s)

        description = s.pending_description_buffer.strip()
        if not description:
            return StateMachineResult([templates.DESCRIPTION_EMPTY], s)
        if len(description) < DESCRIPTION_MIN_CHARS:
            return StateMachineResult([templates.DESCRIPTION_TOO_SHORT], s)
        if len(description) > DESCRIPTION_MAX_CHARS:
            s.pending_description_buffer = ""
            return StateMachineResult([templates.DESCRIPTION_TOO_LONG], s)

        s.data.description = description
        s.pending_description_buffer = ""
        s.transition_to(ConversationState.COLLECT_PHONE)
        return StateMachineResult([templates.ASK_PHONE], s)

    async def _handle_collect_phone(self, message: InboundMessage, s: Session) -> StateMachineResult:
        value, error = self._validate_answer("contact_phone", message, s.user)
        if error:
            return StateMachineResult([_with_prompt(error, templates.ASK_PHONE)], s)
        if value is None:
            return StateMachineResult([templates.ASK_PHONE], s)

        s.data.contact_phone = value
        s.transition_to(ConversationState.COLLECT_MEDIA)
        return StateMachineResult([templates.ASK_MEDIA], s)

    async def _handle_collect_media(self, message: InboundMessage, s: Session) -> StateMachineResult:
        if message.is_media and message.media_id:
            # Not stored yet; filtered out at submission unless a URL is filled in
            attachment = Attachment(
                media_id=message.media_id,
                mime_type=message.mime_type,
                file_name=message.file_name,
            )
            return self.add_attachment(s, attachment, message.type == MessageType.IMAGE)

        if message.normalized_text == DONE_KEYWORD:
            return self._to_confirm(s)

        return StateMachineResult([templates.MEDIA_CONTINUE], s)

    # ==================== AI mode ====================

    async def _handle_collect_free_form(self, message: InboundMessage, s: Session) -> StateMachineResult:
        if message.normalized_text == DONE_KEYWORD:
            return StateMachineResult([], s, free_form_complete=True)

        text = (message.text or "").strip()
        if not text:
            return StateMachineResult([templates.FREE_FORM_MORE], s)

        buffer = s.free_form_text_buffer
        combined = f"{buffer}\n{text}" if buffer else text
        if len(combined) > FREE_FORM_MAX_CHARS:
            return StateMachineResult([templates.FREE_FORM_LIMIT_REACHED], s)

        s.free_form_text_buffer = combined
        return StateMachineResult([templates.FREE_FORM_CONTINUE], s)

    async def _handle_fill_missing(self, message: InboundMessage, s: Session) -> StateMachineResult:
        if not s.pending_missing_fields:
            return self._to_confirm(s)

        key = s.pending_missing_fields[0]
        value, error = self._validate_answer(key, message, s.user)
        if error:
            return StateMachineResult([_with_prompt(error, templates.prompt_for_field(key))], s)
        if value is None:
            return StateMachineResult([templates.prompt_for_field(key)], s)

        s.data.set_field(key, value)
        s.pending_missing_fields = s.pending_missing_fields[1:]
        if s.pending_missing_fields:
            return StateMachineResult(
                [templates.prompt_for_field(s.pending_missing_fields[0])], s
            )
        return self._to_confirm(s)

    # ==================== Review & submit ====================

    async def _handle_confirm(self, message: InboundMessage, s: Session) -> StateMachineResult:
        text = message.normalized_text

        if text in SUBMIT_KEYWORDS:
            return await self._submit(s)

        if text == "edit" or text.startswith("edit "):
            requested = text[len("edit"):].strip()
            if not requested:
                return StateMachineResult([templates.EDIT_WHICH_FIELD], s)
            key = match_edit_field(requested)
            if key is None:
                return StateMachineResult([templates.edit_unknown(requested)], s)
            s.data.clear_field(key)
            s.pending_edit_field = key
            s.transition_to(ConversationState.EDIT_FIELD)
            return StateMachineResult([templates.prompt_for_field(key)], s)

        return StateMachineResult([templates.CONFIRM_REPROMPT], s)

    async def _submit(self, s: Session) -> StateMachineResult:
        try:
            grievance = GrievanceCreate.model_validate(submittable_payload(s.data))
        except ValidationError as e:
            issues = validation_issues(e)
            logger.info(
                "Submission blocked by validation",
                extra_data={"user": s.user, "issues": issues},
            )
            return StateMachineResult([templates.cannot_submit(issues)], s)

        try:
            created = await self.grievance_service.create(grievance)
        except AppException as e:
            logger.error(
                "Grievance creation failed",
                extra_data={"user": s.user, "error": e.message},
            )
            return StateMachineResult([templates.SUBMIT_FAILED], s)

        s.transition_to(ConversationState.DONE)
        return StateMachineResult(
            [templates.submitted(created.grievance_id)],
            s,
            grievance_created=created,
            end_session=True,
        )

    async def _handle_edit_field(self, message: InboundMessage, s: Session) -> StateMachineResult:
        key = s.pending_edit_field
        if key is None:
            return self._to_confirm(s)

        value, error = self._validate_answer(key, message, s.user)
        if error:
            return StateMachineResult([_with_prompt(error, templates.prompt_for_field(key))], s)
        if value is None:
            return StateMachineResult([templates.prompt_for_field(key)], s)

        s.data.set_field(key, value)
        s.pending_edit_field = None
        return self._to_confirm(s, templates.UPDATED)

    # ==================== Outside the filing flow ====================

    async def _handle_outside_flow(self, message: InboundMessage, s: Session) -> StateMachineResult:
        """START, file-mode choice and tracking belong to the session manager"""
        raise StateMachineException(
            f"State {s.state.value} is not handled by the filing dialogue",
            user=s.user,
        )
