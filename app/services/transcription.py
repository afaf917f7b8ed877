"""
Voice-note transcription with OpenAI Whisper.
"""
import logging
from typing import Optional

import httpx
import openai
from openai import AsyncOpenAI

from app.core.errors import TranscriptionError

logger = logging.getLogger(__name__)


class Transcriber:
    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        language: str = "es",
        timeout_s: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.language = language
        self.timeout_s = timeout_s
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_s)
        self._http_client = http_client

    async def _download(self, media_url: str) -> bytes:
        if self._http_client is not None:
            response = await self._http_client.get(media_url)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s), follow_redirects=True) as client:
                response = await client.get(media_url)
        response.raise_for_status()
        return response.content

    async def transcribe(self, media_url: str) -> str:
        """
        Download the voice note and return its transcript.

        Raises:
            TranscriptionError: Download, API failure, or an empty transcript
        """
        if not media_url:
            raise TranscriptionError("Missing media url", reason="missing_media")

        try:
            audio = await self._download(media_url)
        except httpx.HTTPError as e:
            logger.error(f"TRANSCRIBE|download_failed|error={type(e).__name__}")
            raise TranscriptionError("Audio download failed", reason=type(e).__name__) from e

        try:
            result = await self.client.audio.transcriptions.create(
                model=self.model,
                file=("audio.ogg", audio),
                language=self.language,
            )
        except openai.OpenAIError as e:
            logger.error(f"TRANSCRIBE|api_failed|error={type(e).__name__}")
            raise TranscriptionError("Whisper request failed", reason=type(e).__name__) from e

        text = (getattr(result, "text", "") or "").strip()
        if not text:
            raise TranscriptionError("Empty transcript", reason="empty_transcript")

        logger.info(f"TRANSCRIBE|ok|bytes={len(audio)}|chars={len(text)}")
        return text
