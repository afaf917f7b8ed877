"""
UltraMsg client contract: URLs, form fields, retries and error mapping.
"""
from urllib.parse import parse_qs

import httpx
import pytest

from app.clients.ultramsg import MAX_TEXT_CHARS, UltraMsgClient
from app.core.errors import GatewayError

PHONE = "573001112233"


class Recorder:
    """MockTransport handler that replays scripted responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    def form(self, index: int = 0):
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


def make_client(recorder, max_retries=2):
    return UltraMsgClient(
        instance_id="instance42",
        token="tok-secret-123",
        max_retries=max_retries,
        backoff_s=0,
        transport=httpx.MockTransport(recorder),
    )


@pytest.mark.asyncio
async def test_send_text_posts_form():
    recorder = Recorder(httpx.Response(200, json={"sent": "true", "id": 7}))
    result = await make_client(recorder).send_text(PHONE, "  Hola parce  ")

    assert result == {"sent": "true", "id": 7}
    request = recorder.requests[0]
    assert str(request.url) == "https://api.ultramsg.com/instance42/messages/chat"
    assert recorder.form() == {"token": "tok-secret-123", "to": PHONE, "body": "Hola parce"}


@pytest.mark.asyncio
async def test_long_text_is_truncated():
    recorder = Recorder(httpx.Response(200, json={"sent": "true"}))
    await make_client(recorder).send_text(PHONE, "a" * (MAX_TEXT_CHARS + 10))

    assert len(recorder.form()["body"]) == MAX_TEXT_CHARS


@pytest.mark.asyncio
async def test_audio_and_image_endpoints():
    recorder = Recorder(httpx.Response(200, json={"sent": "true"}))
    client = make_client(recorder)

    await client.send_audio_url(PHONE, "https://storage.googleapis.com/b/a.mp3")
    await client.send_image(PHONE, "https://img.example/1.jpg", caption="📸 Toyota")

    assert recorder.requests[0].url.path == "/instance42/messages/audio"
    assert recorder.form(0)["audio"] == "https://storage.googleapis.com/b/a.mp3"
    assert recorder.requests[1].url.path == "/instance42/messages/image"
    assert recorder.form(1)["caption"] == "📸 Toyota"


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    recorder = Recorder(httpx.Response(401, json={"error": "Wrong token"}))

    with pytest.raises(GatewayError) as exc_info:
        await make_client(recorder).send_text(PHONE, "hola")

    assert exc_info.value.status_code == 401
    assert exc_info.value.reason == "http_401"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_server_error_is_retried_then_succeeds():
    recorder = Recorder(httpx.Response(502, text="bad gateway"), httpx.Response(200, json={"sent": "true"}))

    await make_client(recorder).send_text(PHONE, "hola")

    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_timeouts_exhaust_retries():
    recorder = Recorder(httpx.ReadTimeout("slow"))

    with pytest.raises(GatewayError) as exc_info:
        await make_client(recorder, max_retries=1).send_audio_url(PHONE, "https://a/b.mp3")

    assert exc_info.value.reason == "timeout"
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_provider_error_in_success_body():
    recorder = Recorder(httpx.Response(200, json={"error": "instance not authorized"}))

    with pytest.raises(GatewayError) as exc_info:
        await make_client(recorder).send_text(PHONE, "hola")
    assert exc_info.value.reason == "provider_error"


@pytest.mark.asyncio
async def test_missing_credentials_and_empty_text():
    client = UltraMsgClient(instance_id="", token="")
    with pytest.raises(GatewayError) as exc_info:
        await client.send_text(PHONE, "hola")
    assert exc_info.value.reason == "missing_credentials"

    with pytest.raises(GatewayError):
        await make_client(Recorder(httpx.Response(200, json={}))).send_text(PHONE, "   ")
