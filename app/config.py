"""
Configuration settings for the dealership WhatsApp assistant.
Environment variables (and an optional .env file) override every default.
"""
from enum import Enum
from functools import lru_cache
from typing import List

from pydantic import PrivateAttr, field_validator, model_validator
from pydantic_settings import BaseSettings

from app.core.phone import canonicalize_phone


class BatchPolicy(str, Enum):
    """How a drained buffer of inbound messages becomes one turn input"""
    LATEST = "latest"
    JOIN = "join"


class Settings(BaseSettings):
    """Application settings"""

    PROJECT_NAME: str = "Autos WhatsApp Assistant"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # UltraMsg gateway
    ULTRAMSG_BASE_URL: str = "https://api.ultramsg.com"
    ULTRAMSG_INSTANCE_ID: str = ""
    ULTRAMSG_TOKEN: str = ""
    GATEWAY_TEXT_TIMEOUT_S: float = 10.0
    GATEWAY_MEDIA_TIMEOUT_S: float = 60.0
    GATEWAY_MAX_RETRIES: int = 2
    GATEWAY_RETRY_BACKOFF_S: float = 0.5

    # Authorization
    AUTHORIZED_NUMBERS: str = ""
    DEFAULT_COUNTRY_CODE: str = "57"
    _authorized_numbers: List[str] = PrivateAttr(default_factory=list)

    # Turn controller
    DEBOUNCE_MS: int = 2000
    BATCH_POLICY: BatchPolicy = BatchPolicy.LATEST
    BATCH_JOIN_SEPARATOR: str = " "
    IDLE_EVICTION_HOURS: float = 6.0
    EVICTION_SWEEP_INTERVAL_S: float = 600.0
    APPOINTMENT_FANOUT_DELAY_MS: int = 2000
    IMAGE_SEND_PAUSE_MS: int = 2000
    MAX_IMAGES_PER_VEHICLE: int = 3

    # Lead store
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_SOCKET_TIMEOUT_S: float = 5.0
    LEAD_TTL_SECONDS: int = 86400
    HISTORY_CAP: int = 10
    CONTEXT_HISTORY_ENTRIES: int = 5

    # Inventory (Google Sheets)
    INVENTORY_SPREADSHEET_ID: str = ""
    INVENTORY_RANGE: str = "A:O"
    INVENTORY_CACHE_TTL_S: float = 300.0
    INVENTORY_CONTEXT_SAMPLE: int = 20
    GOOGLE_CREDENTIALS_FILE: str = "creds.json"

    # LLM
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-3-5-sonnet-20241022"
    LLM_TIMEOUT_S: float = 30.0
    LLM_MAX_TOKENS: int = 1200
    LLM_TEMPERATURE: float = 0.8
    MAX_REPLY_CHARS: int = 500

    # Transcription
    OPENAI_API_KEY: str = ""
    TRANSCRIPTION_MODEL: str = "whisper-1"
    TRANSCRIPTION_LANGUAGE: str = "es"
    TRANSCRIPTION_TIMEOUT_S: float = 30.0

    # Voice
    ENABLE_AUDIO_MESSAGES: bool = False
    ELEVENLABS_API_KEY: str = ""
    ELEVENLABS_VOICE_ID: str = ""
    ELEVENLABS_MODEL_ID: str = "eleven_multilingual_v2"
    AUDIO_ASSET_TTL_S: float = 7200.0

    # Audio storage (GCS)
    GCS_BUCKET: str = ""
    GCS_FOLDER: str = "Autos-ST"
    GOOGLE_CLOUD_PROJECT_ID: str = ""

    # Notifications
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = ""
    EMAIL_TO: str = ""
    EMAIL_TIMEOUT_S: float = 10.0
    LEADS_SPREADSHEET_ID: str = ""
    LEADS_RANGE: str = "Leads!A:P"

    @field_validator("DEBOUNCE_MS", "HISTORY_CAP", "MAX_REPLY_CHARS")
    @classmethod
    def validate_positive(cls, v):
        """Reject zero or negative sizes"""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("BATCH_POLICY", mode="before")
    @classmethod
    def validate_batch_policy(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def validate_authorized_numbers(self):
        """Canonicalize the allow-list once; a malformed entry fails at load time"""
        numbers = []
        for raw in self.AUTHORIZED_NUMBERS.split(","):
            if raw.strip():
                numbers.append(canonicalize_phone(raw, self.DEFAULT_COUNTRY_CODE))
        self._authorized_numbers = numbers
        return self

    @property
    def authorized_numbers(self) -> List[str]:
        """Canonical allow-list; an empty list authorizes nobody"""
        return list(self._authorized_numbers)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
