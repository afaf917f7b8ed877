"""
Asynchronous UltraMsg gateway client.
Sends text, audio and image messages to WhatsApp using httpx with retries,
per-kind timeouts and detailed logging.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from httpx import Timeout

from app.core.errors import GatewayError
from app.core.phone import mask_phone

log = logging.getLogger(__name__)

MAX_TEXT_CHARS = 4096


def _mask_token(token: str) -> str:
    """Mask API token for logging - shows first 4 and last 2 chars"""
    if not token or len(token) < 8:
        return "***masked***"
    return f"{token[:4]}...{token[-2:]}"


class UltraMsgClient:
    def __init__(
        self,
        instance_id: str,
        token: str,
        base_url: str = "https://api.ultramsg.com",
        text_timeout_s: float = 10.0,
        media_timeout_s: float = 60.0,
        max_retries: int = 2,
        backoff_s: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.instance_id = instance_id
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.text_timeout_s = text_timeout_s
        self.media_timeout_s = media_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self._transport = transport

    def _build_client(self, timeout_seconds: float) -> httpx.AsyncClient:
        timeout = Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0))
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, follow_redirects=True)

    def _url(self, kind: str) -> str:
        return f"{self.base_url}/{self.instance_id}/messages/{kind}"

    async def _post(self, kind: str, to: str, fields: Dict[str, Any], timeout_seconds: float) -> Dict[str, Any]:
        """
        POST one message with retries.

        Timeouts, connection errors and 5xx are retried with exponential
        backoff; 4xx fails immediately.

        Raises:
            GatewayError: Configuration missing or every attempt failed
        """
        if not self.instance_id or not self.token:
            log.error("GATEWAY|error|missing_credentials")
            raise GatewayError("UltraMsg instance or token not configured", reason="missing_credentials")

        url = self._url(kind)
        payload = {"token": self.token, "to": to, **fields}
        log.info(
            "GATEWAY|attempt|kind=%s|phone=%s|token=%s|timeout=%gs|retries=%d",
            kind, mask_phone(to), _mask_token(self.token), timeout_seconds, self.max_retries,
        )

        last_reason = "unknown"
        status_code = 0
        for attempt in range(self.max_retries + 1):
            try:
                async with self._build_client(timeout_seconds) as client:
                    response = await client.post(url, data=payload)
                status_code = response.status_code

                if 200 <= status_code < 300:
                    try:
                        body = response.json()
                    except ValueError:
                        body = {}
                    if isinstance(body, dict) and body.get("error"):
                        log.error("GATEWAY|provider_error|kind=%s|error=%s", kind, str(body.get("error"))[:200])
                        raise GatewayError("Gateway rejected message", reason="provider_error", status_code=status_code)
                    log.info("GATEWAY|success|kind=%s|status=%d|attempt=%d/%d",
                             kind, status_code, attempt + 1, self.max_retries + 1)
                    return body if isinstance(body, dict) else {"response": body}

                log.error("GATEWAY|http_error|kind=%s|status=%d|attempt=%d/%d|body=%s",
                          kind, status_code, attempt + 1, self.max_retries + 1, response.text[:500])
                last_reason = f"http_{status_code}"
                if status_code < 500:
                    raise GatewayError("Gateway rejected message", reason=last_reason, status_code=status_code)

            except httpx.TimeoutException as e:
                last_reason = "timeout"
                log.warning("GATEWAY|timeout|kind=%s|attempt=%d/%d|error=%s",
                            kind, attempt + 1, self.max_retries + 1, str(e))
            except httpx.TransportError as e:
                last_reason = "connection_failed"
                log.warning("GATEWAY|connection_error|kind=%s|attempt=%d/%d|error=%s",
                            kind, attempt + 1, self.max_retries + 1, str(e))

            if attempt < self.max_retries:
                await asyncio.sleep(self.backoff_s * (2 ** attempt))

        log.error("GATEWAY|all_retries_failed|kind=%s|reason=%s", kind, last_reason)
        raise GatewayError("Gateway send failed", reason=last_reason, status_code=status_code)

    async def send_text(self, to: str, body: str) -> Dict[str, Any]:
        text = (body or "").strip()
        if not text:
            raise GatewayError("Empty text message", reason="empty_text")
        if len(text) > MAX_TEXT_CHARS:
            text = text[:MAX_TEXT_CHARS]
        return await self._post("chat", to, {"body": text}, self.text_timeout_s)

    async def send_audio_url(self, to: str, audio_url: str) -> Dict[str, Any]:
        return await self._post("audio", to, {"audio": audio_url}, self.media_timeout_s)

    async def send_image(self, to: str, image_url: str, caption: str = "") -> Dict[str, Any]:
        return await self._post("image", to, {"image": image_url, "caption": caption}, self.media_timeout_s)
