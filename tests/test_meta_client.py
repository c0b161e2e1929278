"""
Tests for the Meta Graph (WhatsApp Cloud API) client
"""
import json

import httpx
import pytest

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import MediaTooLargeError, WhatsAppError
from grievance_bot.domain.services.whatsapp.meta_client import MetaWhatsAppClient, extension_for

BASE = "https://graph.test/v19.0"
TO = "919876543210"


class Recorder:
    """MockTransport handler that records requests and replays responses"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)


def _client(recorder: Recorder, **kwargs) -> MetaWhatsAppClient:
    kwargs.setdefault("flow_id", "")
    return MetaWhatsAppClient(
        "token",
        "12345",
        base_url=BASE,
        retry_delay=0,
        transport=httpx.MockTransport(recorder),
        **kwargs,
    )


class TestSendText:

    @pytest.mark.unit
    async def test_payload(self):
        recorder = Recorder(httpx.Response(200, json={"messages": [{"id": "wamid.1"}]}))
        await _client(recorder).send_text(TO, "Hello")

        request = recorder.requests[0]
        assert str(request.url) == f"{BASE}/12345/messages"
        assert request.headers["Authorization"] == "Bearer token"
        assert recorder.body() == {
            "messaging_product": "whatsapp",
            "to": TO,
            "type": "text",
            "text": {"preview_url": False, "body": "Hello"},
        }

    @pytest.mark.unit
    async def test_retries_transient_errors(self):
        recorder = Recorder(
            httpx.ConnectError("refused"),
            httpx.ReadTimeout("slow"),
            httpx.Response(200, json={}),
        )
        await _client(recorder, max_retries=3).send_text(TO, "Hello")
        assert len(recorder.requests) == 3

    @pytest.mark.unit
    async def test_gives_up_after_max_retries(self):
        recorder = Recorder(httpx.ConnectError("refused"))
        with pytest.raises(WhatsAppError) as exc_info:
            await _client(recorder, max_retries=2).send_text(TO, "Hello")
        assert len(recorder.requests) == 2
        assert exc_info.value.details["network_error"] is True

    @pytest.mark.unit
    async def test_http_error_not_retried(self):
        recorder = Recorder(httpx.Response(400, text='{"error": "bad recipient"}'))
        with pytest.raises(WhatsAppError) as exc_info:
            await _client(recorder, max_retries=3).send_text(TO, "Hello")
        assert len(recorder.requests) == 1
        assert exc_info.value.details["status_code"] == 400
        assert "bad recipient" in exc_info.value.details["response_text"]

    @pytest.mark.unit
    async def test_not_configured_skips(self):
        recorder = Recorder(httpx.Response(200))
        client = MetaWhatsAppClient(
            "", "", base_url=BASE, transport=httpx.MockTransport(recorder)
        )
        assert client.configured is False
        await client.send_text(TO, "Hello")
        assert recorder.requests == []


class TestInteractive:

    @pytest.mark.unit
    async def test_send_flow_with_initial_data(self):
        recorder = Recorder(httpx.Response(200, json={}))
        client = _client(recorder, flow_id="flow-1", flow_token="tok")
        assert client.flow_configured is True

        await client.send_flow(TO, initial_data={"contact_phone": "9876543210"})

        parameters = recorder.body()["interactive"]["action"]["parameters"]
        assert parameters["flow_id"] == "flow-1"
        assert parameters["flow_token"] == "tok"
        assert parameters["flow_action_payload"] == {
            "screen": "COMPLAINT_DETAILS",
            "data": {"contact_phone": "9876543210"},
        }

    @pytest.mark.unit
    async def test_send_flow_skipped_without_flow_id(self):
        recorder = Recorder(httpx.Response(200, json={}))
        client = _client(recorder)
        assert client.flow_configured is False
        await client.send_flow(TO)
        assert recorder.requests == []


class TestMarkRead:

    @pytest.mark.unit
    async def test_payload(self):
        recorder = Recorder(httpx.Response(200, json={"success": True}))
        await _client(recorder).mark_read("wamid.1")
        assert recorder.body() == {
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": "wamid.1",
        }

    @pytest.mark.unit
    @pytest.mark.parametrize("outcome", [httpx.Response(500), httpx.ConnectError("refused")])
    async def test_failures_swallowed(self, outcome):
        await _client(Recorder(outcome)).mark_read("wamid.1")


class TestDownloadMedia:

    @pytest.mark.unit
    async def test_two_step_download(self):
        recorder = Recorder(
            httpx.Response(200, json={"url": "https://cdn.test/m1", "mime_type": "image/jpeg"}),
            httpx.Response(200, content=b"\xff\xd8\xff\xe0jpeg"),
        )
        media = await _client(recorder).download_media("m1")

        assert [str(r.url) for r in recorder.requests] == [f"{BASE}/m1", "https://cdn.test/m1"]
        assert media.content == b"\xff\xd8\xff\xe0jpeg"
        assert media.file_name == "m1.jpg"
        assert media.mime_type == "image/jpeg"
        assert media.size == 8

    @pytest.mark.unit
    async def test_missing_url(self):
        recorder = Recorder(httpx.Response(200, json={"mime_type": "image/jpeg"}))
        with pytest.raises(WhatsAppError):
            await _client(recorder).download_media("m1")

    @pytest.mark.unit
    async def test_too_large(self, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_MAX_MEDIA_BYTES", 4)
        recorder = Recorder(
            httpx.Response(200, json={"url": "https://cdn.test/m1", "mime_type": "application/pdf"}),
            httpx.Response(200, content=b"0123456789"),
        )
        with pytest.raises(MediaTooLargeError):
            await _client(recorder).download_media("m1")


@pytest.mark.unit
@pytest.mark.parametrize("mime,ext", [
    ("image/jpeg", "jpg"),
    ("application/pdf", "pdf"),
    ("image/svg+xml", "svg"),
    ("audio/ogg; codecs=opus", "ogg"),
    ("garbage", "bin"),
])
def test_extension_for(mime, ext):
    assert extension_for(mime) == ext
