"""
WhatsApp Cloud API Webhook

Meta expects a 200 within seconds and retries anything else, so the POST
handler only parses the body and acknowledges; every message is processed
in a background task after the response is sent:

normalize -> dedupe -> per-user lock -> (flow processor | session manager)
-> save/clear session -> optional flow offer -> replies -> AI parse enqueue

Per-message errors are logged and never reach Meta.
"""
import hashlib
import hmac
import json
import secrets
from typing import Any, Iterator, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from grievance_bot.api.dependencies.admin_auth import require_admin_api_key
from grievance_bot.core.config import settings
from grievance_bot.core.logging import get_logger, set_correlation_id
from grievance_bot.core.runtime import Runtime, get_runtime
from grievance_bot.state_machine import templates
from grievance_bot.state_machine.flow_processor import parse_flow_response
from grievance_bot.state_machine.manager import SessionManagerResult
from grievance_bot.state_machine.session import InboundLocation, InboundMessage, MessageType
from grievance_bot.state_machine.states import ConversationState, Intent

logger = get_logger(__name__)

router = APIRouter()


# ── verification & signature ──


@router.get(
    "/webhook",
    response_class=PlainTextResponse,
    summary="Webhook verification",
    description="Meta subscription handshake, echoes hub.challenge.",
)
async def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
) -> str:
    if (
        hub_mode == "subscribe"
        and settings.WHATSAPP_VERIFY_TOKEN
        and hub_verify_token
        and secrets.compare_digest(hub_verify_token, settings.WHATSAPP_VERIFY_TOKEN)
    ):
        logger.info("WhatsApp webhook verified")
        return hub_challenge or ""

    logger.warning("WhatsApp webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


def verify_signature(body: bytes, signature_header: str, app_secret: str) -> bool:
    """HMAC-SHA256 of the raw body, as sent by Meta in X-Hub-Signature-256"""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


# ── normalization ──


def iter_messages(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Raw messages across every entry/change; status callbacks are skipped"""
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            if value.get("statuses"):
                logger.debug(
                    "Status update ignored",
                    extra_data={"count": len(value["statuses"])},
                )
            for raw in value.get("messages") or []:
                if isinstance(raw, dict):
                    yield raw


def normalize_message(raw: dict[str, Any]) -> Optional[InboundMessage]:
    """Cloud API message -> InboundMessage. Unknown shapes get type ``unknown``."""
    sender = raw.get("from")
    message_id = raw.get("id")
    if not sender or not message_id:
        return None

    msg_type = raw.get("type")
    fields: dict[str, Any] = {"sender": sender, "message_id": message_id}

    if msg_type == "text":
        fields["type"] = MessageType.TEXT
        fields["text"] = (raw.get("text") or {}).get("body")
    elif msg_type == "interactive":
        interactive = raw.get("interactive") or {}
        fields["type"] = MessageType.INTERACTIVE
        fields["interactive_type"] = interactive.get("type")
        for reply_key in ("list_reply", "button_reply"):
            if interactive.get(reply_key):
                fields["text"] = interactive[reply_key].get("title")
        nfm_reply = interactive.get("nfm_reply") or {}
        if nfm_reply.get("response_json"):
            fields["flow_payload_raw"] = nfm_reply["response_json"]
    elif msg_type == "location":
        location = raw.get("location") or {}
        fields["type"] = MessageType.LOCATION
        try:
            fields["location"] = InboundLocation(
                latitude=float(location.get("latitude")),
                longitude=float(location.get("longitude")),
                name=location.get("name"),
                address=location.get("address"),
            )
        except (TypeError, ValueError):
            fields["type"] = MessageType.UNKNOWN
    elif msg_type in ("image", "document"):
        media = raw.get(msg_type) or {}
        fields["type"] = MessageType(msg_type)
        fields["media_id"] = media.get("id")
        fields["mime_type"] = media.get("mime_type")
        fields["file_name"] = media.get("filename")
    else:
        fields["type"] = MessageType.UNKNOWN

    return InboundMessage(**fields)


# ── processing ──


def _should_offer_flow(result: SessionManagerResult) -> bool:
    session = result.session
    return (
        result.save_session
        and not result.end_session
        and session.intent == Intent.FILE
        and session.state == ConversationState.COLLECT_BASICS
        and result.previous_state != ConversationState.COLLECT_BASICS
        and not session.data.contact_name
    )


async def _send(runtime: Runtime, to: str, body: str) -> None:
    try:
        await runtime.meta_client.send_text(to, body)
    except Exception as e:
        logger.error(
            "Failed to send reply",
            extra_data={"to": to, "error": str(e)},
        )


async def _process_flow_submission(message: InboundMessage, runtime: Runtime) -> None:
    try:
        raw = parse_flow_response(message.flow_payload_raw)
        result = await runtime.flow_processor.process(message.sender, raw)
    except Exception as e:
        logger.error(
            "Flow submission processing error",
            extra_data={
                "message_id": message.message_id,
                "from": message.sender,
                "error": str(e),
            },
            exc_info=True,
        )
        await _send(runtime, message.sender, templates.FLOW_FAILED)
        return

    await _send(runtime, message.sender, result.message)
    await _send(runtime, message.sender, templates.GOODBYE)


async def run_turn(message: InboundMessage, runtime: Runtime) -> SessionManagerResult:
    """One session-manager turn with persistence. The caller holds the user lock."""
    result = await runtime.session_manager.handle_incoming_message(message)
    if result.save_session:
        await runtime.session_store.set(result.session)
    if result.end_session:
        await runtime.session_store.delete(message.sender)
    return result


async def process_message(message: InboundMessage, runtime: Runtime) -> None:
    """Handle one inbound message end to end under the sender's lock"""
    async with runtime.user_lock.hold(message.sender):
        await runtime.meta_client.mark_read(message.message_id)

        if message.is_flow_submission:
            await _process_flow_submission(message, runtime)
            return

        result = await run_turn(message, runtime)

        if _should_offer_flow(result) and runtime.meta_client.flow_configured:
            try:
                await runtime.meta_client.send_flow(message.sender, body=templates.FLOW_OFFER)
            except Exception as e:
                # Chat replies already carry the first prompt
                logger.warning(
                    "Flow offer failed",
                    extra_data={"to": message.sender, "error": str(e)},
                )

        for reply in result.replies:
            await _send(runtime, message.sender, reply)

        if result.schedule_ai_parse:
            await runtime.ai_parse_queue.enqueue(message.sender)


async def process_webhook_payload(payload: dict[str, Any], runtime: Optional[Runtime] = None) -> None:
    """Background part of POST /webhook. Never raises."""
    runtime = runtime or get_runtime()
    if not runtime.meta_client.configured:
        logger.warning("WhatsApp webhook hit but credentials are missing, skipping")
        return

    try:
        messages = list(iter_messages(payload))
    except (AttributeError, TypeError) as e:
        logger.error("Malformed webhook payload", extra_data={"error": str(e)})
        return

    if messages:
        logger.info("Processing webhook messages", extra_data={"count": len(messages)})

    for raw in messages:
        set_correlation_id()
        try:
            message = normalize_message(raw)
        except Exception as e:
            logger.error("Failed to normalize message", extra_data={"error": str(e)})
            continue
        if message is None:
            continue

        if runtime.deduper.is_duplicate(message.message_id):
            logger.debug("Skipping duplicate message", extra_data={"message_id": message.message_id})
            continue

        try:
            await process_message(message, runtime)
        except Exception as e:
            logger.error(
                "Unexpected error processing message",
                extra_data={
                    "message_id": message.message_id,
                    "from": message.sender,
                    "type": message.type.value,
                    "error": str(e),
                },
                exc_info=True,
            )


@router.post(
    "/webhook",
    summary="WhatsApp Cloud API webhook",
    description="Acknowledges immediately; messages are processed after the response.",
    responses={
        200: {"description": "Delivery acknowledged"},
        400: {"description": "Body is not a JSON object"},
        403: {"description": "Invalid signature"},
    },
)
async def receive_webhook(request: Request, background_tasks: BackgroundTasks) -> dict:
    body = await request.body()

    if settings.WHATSAPP_APP_SECRET and not verify_signature(
        body, request.headers.get("X-Hub-Signature-256", ""), settings.WHATSAPP_APP_SECRET
    ):
        logger.warning("WhatsApp webhook: invalid signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON")

    background_tasks.add_task(process_webhook_payload, payload, get_runtime())
    return {"status": "ok"}


# ── sandbox ──


class SandboxChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from", min_length=1)
    message: str = Field(min_length=1)


class SandboxFlowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from", min_length=1)
    data: dict[str, Any]


@router.post("/test/chat", summary="Run one chat turn without WhatsApp")
async def sandbox_chat(
    body: SandboxChatRequest,
    _: None = Depends(require_admin_api_key),
) -> dict:
    runtime = get_runtime()
    message = InboundMessage(
        sender=body.sender,
        message_id="test",
        type=MessageType.TEXT,
        text=body.message,
    )
    async with runtime.user_lock.hold(body.sender):
        result = await run_turn(message, runtime)
        if result.schedule_ai_parse:
            await runtime.ai_parse_queue.enqueue(body.sender)

    created = result.grievance_created
    return {
        "replies": result.replies,
        "state": result.session.state.value,
        "intent": result.session.intent.value if result.session.intent else None,
        "data": result.session.data.model_dump(),
        "grievance_created": (
            {"id": created.id, "grievance_id": created.grievance_id} if created else None
        ),
        "save_session": result.save_session,
        "end_session": result.end_session,
    }


@router.post("/test/flow", summary="Run the flow processor on a form payload")
async def sandbox_flow(
    body: SandboxFlowRequest,
    _: None = Depends(require_admin_api_key),
) -> dict:
    try:
        result = await get_runtime().flow_processor.process(body.sender, body.data)
    except Exception as e:
        logger.error("Sandbox flow error", extra_data={"error": str(e)}, exc_info=True)
        raise HTTPException(status_code=500, detail="Flow processing failed")
    return {"ok": result.ok, "message": result.message, "grievance_id": result.grievance_id}


@router.get("/status", summary="Session store health")
async def whatsapp_status(_: None = Depends(require_admin_api_key)) -> dict:
    runtime = get_runtime()
    return {
        "whatsapp_configured": runtime.meta_client.configured,
        "flow_configured": runtime.meta_client.flow_configured,
        "ai_job_backend": runtime.settings.AI_JOB_BACKEND,
        "session_store": runtime.session_store.status(),
    }
