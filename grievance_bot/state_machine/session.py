"""
Conversation data types

The session is serialized whole into the session store on every turn, so
everything here is a pydantic model with a JSON round trip.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from grievance_bot.core.exceptions import InvalidStateTransitionError
from grievance_bot.state_machine.states import (
    ConversationState,
    FileMode,
    Intent,
    is_valid_transition,
)


class Attachment(BaseModel):
    """Uploaded image or document. Empty ``url`` means not stored yet."""

    url: str = ""
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    media_id: Optional[str] = None

    @property
    def is_stored(self) -> bool:
        return self.url.startswith(("http://", "https://"))


class GrievanceData(BaseModel):
    """Partially filled grievance collected across turns"""

    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    district_name: Optional[str] = None
    subdistrict_name: Optional[str] = None
    area: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    images: list[Attachment] = Field(default_factory=list)
    documents: list[Attachment] = Field(default_factory=list)

    def has_field(self, key: str) -> bool:
        """``latitude`` counts as filled only together with longitude"""
        if key == "latitude":
            return self.latitude is not None and self.longitude is not None
        value = getattr(self, key)
        return value is not None and value != ""

    def set_field(self, key: str, value) -> None:
        if key == "latitude":
            self.latitude, self.longitude = value
            return
        setattr(self, key, value)

    def clear_field(self, key: str) -> None:
        if key == "latitude":
            self.latitude = None
            self.longitude = None
            self.location = None
            return
        setattr(self, key, None)

    def has_media(self, media_id: Optional[str]) -> bool:
        if not media_id:
            return False
        return any(a.media_id == media_id for a in self.images + self.documents)

    @property
    def attachment_count(self) -> int:
        return len(self.images) + len(self.documents)


class Session(BaseModel):
    """Per-citizen conversation state, keyed by phone number"""

    user: str
    intent: Optional[Intent] = None
    state: ConversationState = ConversationState.START
    data: GrievanceData = Field(default_factory=GrievanceData)
    file_mode: Optional[FileMode] = None
    pending_description_buffer: str = ""
    free_form_text_buffer: str = ""
    pending_edit_field: Optional[str] = None
    pending_missing_fields: list[str] = Field(default_factory=list)
    ai_requested_at: Optional[float] = None
    last_message_at: Optional[float] = None
    correlation_id: Optional[str] = None

    def transition_to(self, target: ConversationState) -> None:
        """Move to ``target`` if the transition table allows it"""
        if not is_valid_transition(self.state, target):
            raise InvalidStateTransitionError(self.state.value, target.value, user=self.user)
        self.state = target

    def force_state(self, target: ConversationState) -> None:
        """Change state without validation (global "new" reset)"""
        self.state = target


class MessageType(str, Enum):
    TEXT = "text"
    INTERACTIVE = "interactive"
    IMAGE = "image"
    DOCUMENT = "document"
    LOCATION = "location"
    UNKNOWN = "unknown"


class InboundLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float
    longitude: float
    name: Optional[str] = None
    address: Optional[str] = None


class InboundMessage(BaseModel):
    """Normalized inbound WhatsApp message. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    sender: str
    message_id: str
    type: MessageType = MessageType.UNKNOWN
    text: Optional[str] = None
    location: Optional[InboundLocation] = None
    media_id: Optional[str] = None
    mime_type: Optional[str] = None
    file_name: Optional[str] = None
    interactive_type: Optional[str] = None
    # response_json of an nfm_reply (flow submission)
    flow_payload_raw: Optional[str] = None

    @property
    def is_media(self) -> bool:
        return self.type in (MessageType.IMAGE, MessageType.DOCUMENT)

    @property
    def is_flow_submission(self) -> bool:
        return self.flow_payload_raw is not None

    @property
    def normalized_text(self) -> str:
        return (self.text or "").strip().lower()
