"""
State Definitions for the Grievance Intake Flow
"""
from enum import Enum


class ConversationState(str, Enum):
    """States for the citizen conversation"""

    # Intent selection
    START = "START"
    COLLECT_FILE_MODE = "COLLECT_FILE_MODE"

    # Step-by-step filing
    COLLECT_BASICS = "COLLECT_BASICS"
    COLLECT_DESCRIPTION = "COLLECT_DESCRIPTION"
    COLLECT_PHONE = "COLLECT_PHONE"
    COLLECT_MEDIA = "COLLECT_MEDIA"

    # AI-assisted filing
    COLLECT_FREE_FORM = "COLLECT_FREE_FORM"
    AI_PROCESSING = "AI_PROCESSING"
    FILL_MISSING = "FILL_MISSING"

    # Review & submit
    CONFIRM = "CONFIRM"
    EDIT_FIELD = "EDIT_FIELD"
    DONE = "DONE"

    # Status lookup
    TRACK = "TRACK"


class Intent(str, Enum):
    """Top-level goal picked once at START"""

    FILE = "file"
    TRACK = "track"
    OTHER = "other"


class FileMode(str, Enum):
    STEP = "step"
    AI = "ai"


# State transitions mapping
CONVERSATION_TRANSITIONS = {
    # Intent & mode selection
    ConversationState.START: [ConversationState.COLLECT_FILE_MODE, ConversationState.TRACK],
    ConversationState.COLLECT_FILE_MODE: [
        ConversationState.COLLECT_BASICS,
        ConversationState.COLLECT_FREE_FORM,
    ],

    # Step mode: basics -> description -> phone -> media -> confirm
    ConversationState.COLLECT_BASICS: [ConversationState.COLLECT_DESCRIPTION],
    ConversationState.COLLECT_DESCRIPTION: [ConversationState.COLLECT_PHONE],
    ConversationState.COLLECT_PHONE: [ConversationState.COLLECT_MEDIA],
    ConversationState.COLLECT_MEDIA: [ConversationState.CONFIRM],

    # AI mode: free form -> processing -> (fill missing) -> confirm
    ConversationState.COLLECT_FREE_FORM: [ConversationState.AI_PROCESSING],
    ConversationState.AI_PROCESSING: [
        ConversationState.CONFIRM,
        ConversationState.FILL_MISSING,
        ConversationState.COLLECT_FREE_FORM,  # job failed, let the user retry
    ],
    ConversationState.FILL_MISSING: [ConversationState.CONFIRM],

    # Confirmation
    ConversationState.CONFIRM: [ConversationState.DONE, ConversationState.EDIT_FIELD],
    ConversationState.EDIT_FIELD: [ConversationState.CONFIRM],

    # Terminal
    ConversationState.TRACK: [],
    ConversationState.DONE: [],
}

# Field collection order for step mode. "latitude" is the combined
# latitude/longitude slot (pin or "lat, long" text).
BASIC_FIELDS_ORDER = (
    "contact_name",
    "contact_email",
    "title",
    "category",
    "district_name",
    "subdistrict_name",
    "area",
    "latitude",
)

# Everything a grievance needs, in the order fill-missing asks for it
REQUIRED_FIELDS_ORDER = BASIC_FIELDS_ORDER + ("description", "contact_phone")


def is_valid_transition(current: ConversationState, target: ConversationState) -> bool:
    """Check if transition from current to target state is declared"""
    if current == target:
        return True
    return target in CONVERSATION_TRANSITIONS.get(current, [])
