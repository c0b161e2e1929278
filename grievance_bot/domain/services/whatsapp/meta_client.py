"""
Meta Graph client: WhatsApp Cloud API over httpx.

Outbound text and flow messages, media download and read receipts. Calls
retry a bounded number of times on transient network errors (connect/read
timeouts, refused or reset connections, DNS failures) with linear backoff.
HTTP error statuses are not retried and surface as ``WhatsAppError``.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import MediaTooLargeError, WhatsAppError
from grievance_bot.core.logging import get_logger

logger = get_logger(__name__)

# Network failures worth another attempt
TRANSIENT_ERRORS = (
    httpx.TimeoutException,   # connect/read/write/pool timeouts
    httpx.ConnectError,       # refused, DNS resolution, unreachable
    httpx.ReadError,          # connection reset while reading
    httpx.WriteError,
    httpx.RemoteProtocolError,
)

MIME_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "text/plain": "txt",
}

FLOW_FIRST_SCREEN = "COMPLAINT_DETAILS"


@dataclass(frozen=True)
class MediaDownload:
    content: bytes
    file_name: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.content)


def extension_for(mime_type: str) -> str:
    if mime_type in MIME_TO_EXTENSION:
        return MIME_TO_EXTENSION[mime_type]
    subtype = mime_type.split("/")[1] if "/" in mime_type else ""
    return subtype.split("+")[0].split(";")[0] or "bin"


class MetaWhatsAppClient:
    """Thin async client for the WhatsApp Cloud API"""

    def __init__(
        self,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        *,
        base_url: str | None = None,
        flow_id: str | None = None,
        flow_token: str | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._access_token = access_token if access_token is not None else settings.WHATSAPP_ACCESS_TOKEN
        self._phone_number_id = (
            phone_number_id if phone_number_id is not None else settings.WHATSAPP_PHONE_NUMBER_ID
        )
        self._base_url = (base_url or settings.WHATSAPP_API_BASE_URL).rstrip("/")
        self._flow_id = flow_id if flow_id is not None else settings.WHATSAPP_FLOW_ID
        self._flow_token = flow_token if flow_token is not None else settings.WHATSAPP_FLOW_TOKEN
        self._max_retries = max_retries or settings.WHATSAPP_MAX_RETRIES
        self._retry_delay = settings.WHATSAPP_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self._timeout = timeout or settings.WHATSAPP_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._access_token and self._phone_number_id)

    @property
    def flow_configured(self) -> bool:
        return self.configured and bool(self._flow_id)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # ── retry helper ──

    async def _with_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[httpx.Response]],
        *,
        to: str = "",
    ) -> httpx.Response:
        """Run one Graph call with retries on transient network errors.

        Raises WhatsAppError on an HTTP error status or when the retry
        budget is exhausted.
        """
        for attempt in range(1, self._max_retries + 1):
            try:
                response = await call()
            except TRANSIENT_ERRORS as exc:
                if attempt < self._max_retries:
                    delay = self._retry_delay * attempt
                    logger.warning(
                        f"Meta API {operation}: transient error, retrying",
                        extra_data={
                            "to": to,
                            "error": type(exc).__name__,
                            "attempt": attempt,
                            "max_retries": self._max_retries,
                            "backoff_seconds": delay,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                raise WhatsAppError(
                    message=f"{operation} network error: {exc}",
                    details={"network_error": True, "attempts": self._max_retries},
                ) from exc
            except httpx.HTTPError as exc:
                raise WhatsAppError(
                    message=f"{operation} failed: {exc}",
                    details={"operation": operation},
                ) from exc

            if response.is_success:
                return response
            raise WhatsAppError.from_response(operation, response)

        raise WhatsAppError(message=f"{operation} exhausted retries")  # pragma: no cover

    async def _post_message(self, operation: str, to: str, payload: dict[str, Any]) -> None:
        url = f"{self._base_url}/{self._phone_number_id}/messages"
        body = {"messaging_product": "whatsapp", "to": to, **payload}
        async with self._client() as client:
            try:
                await self._with_retry(
                    operation,
                    lambda: client.post(url, json=body, headers=self._headers()),
                    to=to,
                )
            except WhatsAppError as exc:
                logger.error(
                    f"Meta API: failed to {operation}",
                    extra_data={"to": to, "error": exc.message},
                )
                raise

    # ── outbound messages ──

    async def send_text(self, to: str, body: str) -> None:
        if not self.configured:
            logger.warning("WhatsApp not configured; skipping send")
            return
        await self._post_message(
            "send_text",
            to,
            {"type": "text", "text": {"preview_url": False, "body": body}},
        )

    async def send_flow(
        self,
        to: str,
        body: Optional[str] = None,
        initial_data: Optional[dict[str, Any]] = None,
    ) -> None:
        """Send the complaint form (WhatsApp Flow) as an interactive message"""
        if not self.flow_configured:
            logger.warning("WhatsApp Flow not configured; skipping send")
            return
        parameters: dict[str, Any] = {
            "flow_message_version": "3",
            "flow_id": self._flow_id,
            "flow_cta": "File Complaint",
            "flow_action": "navigate",
            "mode": "draft",
            "flow_token": self._flow_token or "unused",
        }
        if initial_data:
            parameters["flow_action_payload"] = {
                "screen": FLOW_FIRST_SCREEN,
                "data": initial_data,
            }
        await self._post_message(
            "send_flow",
            to,
            {
                "type": "interactive",
                "interactive": {
                    "type": "flow",
                    "header": {"type": "text", "text": "File a Complaint"},
                    "body": {"text": body or "Tap the button below to open the complaint form."},
                    "footer": {"text": "All fields marked * are required."},
                    "action": {"name": "flow", "parameters": parameters},
                },
            },
        )

    async def mark_read(self, message_id: str) -> None:
        """Best-effort read receipt, failures are only logged"""
        if not self.configured:
            return
        url = f"{self._base_url}/{self._phone_number_id}/messages"
        body = {"messaging_product": "whatsapp", "status": "read", "message_id": message_id}
        try:
            async with self._client() as client:
                response = await client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                logger.warning(
                    "Meta API: failed to mark message read",
                    extra_data={"status_code": response.status_code},
                )
        except httpx.HTTPError as exc:
            logger.warning(
                "Meta API: failed to mark message read",
                extra_data={"error": str(exc)},
            )

    # ── media ──

    async def download_media(self, media_id: str) -> MediaDownload:
        """Resolve a media id to its URL, then fetch the bytes"""
        async with self._client() as client:
            meta = await self._with_retry(
                "get_media_url",
                lambda: client.get(f"{self._base_url}/{media_id}", headers=self._headers()),
            )
            info = meta.json()
            url = info.get("url")
            mime_type = info.get("mime_type") or "application/octet-stream"
            if not url:
                raise WhatsAppError(
                    message="Media URL not returned by API",
                    details={"media_id": media_id},
                )

            response = await self._with_retry(
                "download_media",
                lambda: client.get(url, headers=self._headers()),
            )

        content = response.content
        if len(content) > settings.WHATSAPP_MAX_MEDIA_BYTES:
            raise MediaTooLargeError(len(content), settings.WHATSAPP_MAX_MEDIA_BYTES)

        return MediaDownload(
            content=content,
            file_name=f"{media_id}.{extension_for(mime_type)}",
            mime_type=mime_type,
        )
