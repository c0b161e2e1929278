"""
Reply texts for the WhatsApp grievance dialogue
"""
from grievance_bot.core.validation import CATEGORIES
from grievance_bot.state_machine.session import GrievanceData

WELCOME_INTENT = (
    "Welcome! How can we help you today?\n\n"
    "Reply with:\n"
    "*1* - File a complaint\n"
    "*2* - Track complaint status\n"
    "*3* - Other / Just saying hi"
)
WELCOME_BACK = "Welcome back! Your previous session has expired.\n\n"
FLOW_OFFER = (
    "Hi! You can file a complaint here. Tap the form below to submit quickly, "
    "or reply to continue in chat."
)
CANCEL = "Session cancelled. Reply *1* to file a complaint, *2* to track status, *3* for other.\n\n"
GOODBYE = "Thanks for contacting us. Feel free to reach out anytime."
ERROR_GENERIC = "Something went wrong. Please try again, or reply *CANCEL* to start over."
RATE_LIMIT = "Too many messages. Please wait a moment before sending again."
INVALID_INTENT = "Please reply with *1*, *2*, or *3* to choose an option."

ASK_FILE_MODE = (
    "How would you like to file your complaint?\n\n"
    "*A* - Describe it in your own words (photos/documents welcome) and we'll fill in the form\n"
    "*B* - Answer step-by-step questions"
)
INVALID_FILE_MODE = "Please reply *A* to describe your complaint freely or *B* for step-by-step."
ASK_FREE_FORM = (
    "Tell us about your complaint in your own words: what happened, where "
    "(district, sub-district, area), your name and email. You can send several "
    "messages, photos or documents.\n\nReply *DONE* when finished."
)
FREE_FORM_DONE_MIN_CONTENT = (
    "Please describe your complaint in a bit more detail (at least 20 characters) "
    "or send a photo/document, then reply *DONE*."
)
FREE_FORM_LIMIT_REACHED = (
    "That's all the text we can take in one go. Reply *DONE* to continue, "
    "or *NEW* to start over step-by-step."
)
FREE_FORM_MORE = "Send more details, photos or documents, or reply *DONE* when finished."
FREE_FORM_CONTINUE = f"Got it. {FREE_FORM_MORE}"
AI_PROCESSING = "Thanks! We're reading your complaint. This takes a few seconds..."
AI_PLEASE_WAIT = "We're still processing your complaint. Please wait a moment."
AI_FAILED_FALLBACK = (
    "Sorry, we couldn't process your description automatically. "
    "Your text is kept: reply *DONE* to try again, or *NEW* to answer step-by-step."
)

ASK_LOCATION = (
    "Please share your *current location*: tap the 📎 attachment icon → *Location* "
    "(or share live location).\n\n"
    "If you can't share location, send coordinates as: latitude, longitude "
    "(e.g. 28.6139, 77.2090)."
)
ASK_DESCRIPTION = (
    "Please describe the issue (20-5000 characters). You can send several "
    "messages. Reply *DONE* when finished."
)
DESCRIPTION_CONTINUE = "Added. Send more, or reply *DONE* when finished."
DESCRIPTION_TOO_SHORT = "Description must be at least 20 characters. Please add more details, then reply *DONE*."
DESCRIPTION_TOO_LONG = (
    "Description cannot exceed 5000 characters. It has been cleared, "
    "please send a shorter description."
)
DESCRIPTION_EMPTY = "Please describe the issue before replying *DONE*."
ASK_PHONE = (
    "Use your *current WhatsApp number* for this complaint? Reply *YES* to use it.\n\n"
    "Or send another *10-digit mobile number* (starting with 6, 7, 8, or 9) to attach. "
    "You can track complaint status from your mobile later."
)
ASK_MEDIA = "Send photos/documents now. Reply DONE when finished."
MEDIA_CONTINUE = "Send images/documents, or reply DONE to continue."
IMAGE_RECEIVED = "Image received."
DOCUMENT_RECEIVED = "Document received."
LOCATION_RECEIVED = "Location received."
CONFIRM_REPROMPT = "Please reply YES to submit or EDIT <field> to change."
EDIT_CHOICES = (
    "EDIT NAME, EDIT EMAIL, EDIT PHONE, EDIT TITLE, EDIT CATEGORY, EDIT DISTRICT, "
    "EDIT SUBDISTRICT, EDIT AREA, EDIT LOCATION, or EDIT DESCRIPTION."
)
EDIT_WHICH_FIELD = f"Which field do you want to change? Reply:\n{EDIT_CHOICES}"
UPDATED = "Updated."
ALREADY_SUBMITTED = "Your complaint is already submitted. Reply NEW to start again."
SUBMIT_FAILED = "We couldn't submit your complaint right now. Please reply YES to try again."

TRACK_ASK_ID = "Please send your complaint ID to track status (e.g. 31012026MLA002)."
TRACK_NOT_FOUND = "No complaint found for that ID. Please check and try again."

FLOW_FAILED = "We could not process the form submission. Please try again."

MEDIA_UNSUPPORTED = (
    "That file type isn't supported. Please send an image (JPG, PNG) or "
    "document (PDF, Word, Excel)."
)
MEDIA_TOO_LARGE = "File is too large. Images max 10MB, documents max 50MB."
MEDIA_NOT_CONFIGURED = "File upload is not configured. Please contact support."
MEDIA_FAILED = "We could not process that file. Please try again or send a smaller file."

FIELD_PROMPTS = {
    "contact_name": "What is your name?",
    "contact_email": "What is your email?",
    "title": "Complaint title (5-255 characters)?",
    "category": "Choose a category: " + ", ".join(CATEGORIES) + ".",
    "district_name": "District?",
    "subdistrict_name": "Sub-district?",
    "area": "Area/locality?",
    "latitude": ASK_LOCATION,
    "description": ASK_DESCRIPTION,
    "contact_phone": ASK_PHONE,
}

FIELD_LABELS = {
    "contact_name": "Name",
    "contact_email": "Email",
    "contact_phone": "Phone",
    "title": "Title",
    "description": "Description",
    "category": "Category",
    "district_name": "District",
    "subdistrict_name": "Sub-district",
    "area": "Area",
    "location": "Location (text)",
    "latitude": "Location (pin)",
}


def prompt_for_field(key: str) -> str:
    return FIELD_PROMPTS.get(key, f"Please provide {FIELD_LABELS.get(key, key)}.")


def new_complaint(first_prompt: str) -> str:
    return f"Starting a new complaint. {first_prompt}"


def confirm(summary_text: str) -> str:
    return (
        f"Here's what I captured:\n{summary_text}\n\n"
        "Reply YES to submit or EDIT <field> to change."
    )


def submitted(grievance_id: str) -> str:
    return f"Your complaint is submitted. ID: {grievance_id}. We'll keep you posted."


def cannot_submit(issues: list[str]) -> str:
    return f"Cannot submit yet. Issues: {', '.join(issues)}"


def flow_invalid(issues: list[str]) -> str:
    return f"Some answers are missing/invalid: {'; '.join(issues)}"


def edit_unknown(field: str) -> str:
    return f'I didn\'t recognise "{field}". Reply {EDIT_CHOICES}'


def media_ack_with_prompt(ack: str, prompt: str) -> str:
    return f"{ack} {prompt}"


def fill_missing_intro(have: str, need: str, first_prompt: str) -> str:
    return (
        f"Here's what we have so far:\n{have}\n\n"
        f"We still need: {need}.\n\n{first_prompt}"
    )


def track_status(
    grievance_id: str,
    status: str,
    district: str | None,
    subdistrict: str | None,
    priority: str,
    updated_at: str,
) -> str:
    return (
        f"Status for {grievance_id}: {status}. District: {district}. "
        f"Sub-district: {subdistrict}. Priority: {priority}. Last update: {updated_at}"
    )


def summary(data: GrievanceData) -> str:
    """Full summary shown at CONFIRM"""
    description = data.description or ""
    parts = [
        f"Name: {data.contact_name}",
        f"Email: {data.contact_email}",
    ]
    if data.contact_phone:
        parts.append(f"Phone: {data.contact_phone}")
    parts.append(f"Title: {data.title}")
    parts.append(f"Category: {data.category}")
    parts.append(
        f"District/Sub-district/Area: {data.district_name} / {data.subdistrict_name} / {data.area}"
    )
    parts.append(f"Coords: {data.latitude}, {data.longitude}")
    parts.append(f"Description: {description[:140]}{'...' if len(description) > 140 else ''}")
    if data.images:
        parts.append(f"Images: {len(data.images)}")
    if data.documents:
        parts.append(f"Documents: {len(data.documents)}")
    return "\n".join(parts)


def have_summary(data: GrievanceData) -> str:
    """Only the fields that are already filled"""
    parts = []
    for key in ("contact_name", "contact_email", "contact_phone", "title", "category",
                "district_name", "subdistrict_name", "area"):
        value = getattr(data, key)
        if value:
            parts.append(f"{FIELD_LABELS[key]}: {value}")
    if data.description:
        text = data.description
        parts.append(f"Description: {text[:100]}{'...' if len(text) > 100 else ''}")
    if data.latitude is not None and data.longitude is not None:
        parts.append(f"Location: {data.latitude}, {data.longitude}")
    if data.attachment_count:
        parts.append(f"Attachments: {data.attachment_count}")
    return "\n".join(parts) if parts else "Nothing yet."


def need_list(missing: list[str]) -> str:
    return ", ".join(FIELD_LABELS.get(key, key) for key in missing)
