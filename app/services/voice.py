"""
Voice renderer: cleans text for speech, picks a tone preset, synthesizes
with ElevenLabs and publishes the mp3 through AudioStorage.
"""
import asyncio
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from elevenlabs import VoiceSettings
from elevenlabs.client import ElevenLabs
from elevenlabs.core.api_error import ApiError

from app.core.errors import AudioStorageError, SynthesisError
from app.services.audio_storage import AudioStorage

logger = logging.getLogger(__name__)

OUTPUT_FORMAT = "mp3_44100_128"
DEFAULT_TONE = "product_info"

BASE_VOICE_SETTINGS: Dict[str, Any] = {
    "stability": 0.65,
    "similarity_boost": 0.75,
    "style": 0.35,
    "use_speaker_boost": True,
}

# Overrides applied on top of the base settings
TONE_PRESETS: Dict[str, Dict[str, float]] = {
    "greeting": {"style": 0.45, "stability": 0.60, "similarity_boost": 0.70},
    "product_info": {"style": 0.30, "stability": 0.70, "similarity_boost": 0.75},
    "appointment": {"style": 0.40, "stability": 0.65, "similarity_boost": 0.70},
    "error": {"style": 0.25, "stability": 0.75, "similarity_boost": 0.80},
    "enthusiasm": {"style": 0.55, "stability": 0.55, "similarity_boost": 0.65},
    "consultation": {"style": 0.25, "stability": 0.75, "similarity_boost": 0.80},
}

# Checked in order, first match wins
TONE_CUES = (
    ("enthusiasm", ("¡", "genial", "perfecto", "excelente", "increíble")),
    ("greeting", ("hola", "buenas", "qué tal", "ey!")),
    ("appointment", ("cita", "agenda", "confirmo")),
    ("consultation", ("referencia", "kilómetros", "precio", "especificaciones")),
)

_EMOJI_RE = re.compile(
    "["
    "\U0001F600-\U0001F64F"
    "\U0001F300-\U0001F5FF"
    "\U0001F680-\U0001F6FF"
    "\U0001F1E0-\U0001F1FF"
    "\U0001F900-\U0001F9FF"
    "\u2600-\u26FF"
    "\u2700-\u27BF"
    "\uFE0F"
    "]+"
)
_BULLETS_RE = re.compile(r"[•▪▫◦‣⁃]")

_SPOKEN_REPLACEMENTS = (
    (re.compile(r"\bkm\b", re.IGNORECASE), "kilómetros"),
    (re.compile(r"m²"), "metros cuadrados"),
    (re.compile(r"\bRef:\s*", re.IGNORECASE), "referencia "),
    (re.compile(r"\bVEH(\d+)", re.IGNORECASE), r"vehículo \1"),
    (re.compile(r"\bAM\b", re.IGNORECASE), "de la mañana"),
    (re.compile(r"\bPM\b", re.IGNORECASE), "de la tarde"),
    (re.compile(r"\$\s?(\d(?:[\d.,]*\d)?)"), r"\1 pesos"),
)


def clean_text_for_speech(text: str) -> str:
    """Strip visual-only markup and expand abbreviations so TTS reads naturally"""
    clean = _EMOJI_RE.sub("", text or "")
    clean = _BULLETS_RE.sub("", clean)
    clean = re.sub(r"\*\*(.*?)\*\*", r"\1", clean)
    clean = re.sub(r"\*(.*?)\*", r"\1", clean)

    # Line breaks become pauses
    clean = re.sub(r"\n\s*\n+", ". ", clean)
    clean = clean.replace("\n", ", ")
    clean = re.sub(r"\.\s*\.", ".", clean)
    clean = re.sub(r",\s*,", ",", clean)
    clean = re.sub(r"\s+", " ", clean).strip()

    for pattern, replacement in _SPOKEN_REPLACEMENTS:
        clean = pattern.sub(replacement, clean)
    return clean


def classify_tone(text: str) -> str:
    lowered = (text or "").lower()
    for tone, cues in TONE_CUES:
        if any(cue in lowered for cue in cues):
            return tone
    return DEFAULT_TONE


def new_asset_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"audio_{int(time.time() * 1000)}_{suffix}.mp3"


@dataclass
class SynthesizedAudio:
    public_url: str
    asset_id: str


class VoiceRenderer:
    def __init__(
        self,
        api_key: str,
        voice_id: str,
        storage: AudioStorage,
        model_id: str = "eleven_multilingual_v2",
        client: Optional[ElevenLabs] = None,
    ):
        self.voice_id = voice_id
        self.model_id = model_id
        self.storage = storage
        self.base_settings: Dict[str, Any] = dict(BASE_VOICE_SETTINGS)
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> ElevenLabs:
        if self._client is None:
            self._client = ElevenLabs(api_key=self._api_key)
        return self._client

    def settings_for(self, tone: Optional[str]) -> Dict[str, Any]:
        preset = TONE_PRESETS.get(tone or DEFAULT_TONE, TONE_PRESETS[DEFAULT_TONE])
        return {**self.base_settings, **preset}

    def voice_settings(self) -> Dict[str, Any]:
        return {
            "voice_id": self.voice_id,
            "model_id": self.model_id,
            "base": dict(self.base_settings),
            "presets": {tone: self.settings_for(tone) for tone in TONE_PRESETS},
        }

    def update_voice_settings(self, **changes: Any) -> Dict[str, Any]:
        """Tune the base settings every preset builds on"""
        for key, value in changes.items():
            if key in BASE_VOICE_SETTINGS and value is not None:
                self.base_settings[key] = value
        logger.info(f"VOICE|settings_updated|keys={','.join(sorted(k for k, v in changes.items() if v is not None))}")
        return dict(self.base_settings)

    def set_voice(self, voice_id: str) -> None:
        self.voice_id = voice_id
        logger.info(f"VOICE|voice_changed|voice_id={voice_id}")

    def _convert_sync(self, text: str, settings: Dict[str, Any]) -> bytes:
        chunks = self._get_client().text_to_speech.convert(
            voice_id=self.voice_id,
            text=text,
            model_id=self.model_id,
            output_format=OUTPUT_FORMAT,
            voice_settings=VoiceSettings(**settings),
        )
        return b"".join(chunk for chunk in chunks if chunk)

    async def _discard(self, asset_id: str) -> None:
        """Best-effort removal of a partially written asset"""
        try:
            await self.storage.delete(asset_id)
        except Exception as e:
            logger.warning(f"VOICE|discard_failed|asset={asset_id}|error={type(e).__name__}")

    async def synthesize(self, text: str, tone: Optional[str] = None) -> SynthesizedAudio:
        """
        Raises:
            SynthesisError: Nothing speakable, TTS failure, or upload failure
        """
        clean = clean_text_for_speech(text)
        if not clean:
            raise SynthesisError("No speakable text after cleaning", reason="empty_text")
        if not self.voice_id:
            raise SynthesisError("Voice not configured", reason="missing_voice_id")

        tone = tone or classify_tone(text)
        try:
            audio = await asyncio.to_thread(self._convert_sync, clean, self.settings_for(tone))
        except (ApiError, httpx.HTTPError) as e:
            logger.error(f"VOICE|tts_failed|tone={tone}|error={type(e).__name__}")
            raise SynthesisError("Text-to-speech failed", reason=type(e).__name__) from e
        if not audio:
            raise SynthesisError("Text-to-speech returned no audio", reason="empty_audio")

        asset_id = new_asset_id()
        try:
            url = await self.storage.upload(asset_id, audio)
        except AudioStorageError as e:
            await self._discard(asset_id)
            raise SynthesisError("Audio upload failed", reason=e.reason) from e
        except Exception:
            await self._discard(asset_id)
            raise

        logger.info(f"VOICE|synthesized|tone={tone}|chars={len(clean)}|bytes={len(audio)}|asset={asset_id}")
        return SynthesizedAudio(public_url=url, asset_id=asset_id)
