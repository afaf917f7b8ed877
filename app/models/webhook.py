"""
UltraMsg webhook and request models
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from app.core.clock import utcnow

MESSAGE_RECEIVED = "message_received"
MESSAGE_ACK = "message_ack"
AUDIO_TYPES = {"ptt", "audio"}


class UltraMsgMessage(BaseModel):
    """data block of an UltraMsg webhook"""
    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    body: Optional[str] = None
    from_me: bool = Field(default=False, alias="fromMe")
    self_: bool = Field(default=False, alias="self")
    type: Optional[str] = None
    media: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


class UltraMsgWebhook(BaseModel):
    """Complete UltraMsg webhook payload"""
    event_type: Optional[str] = None
    instance_id: Optional[str] = Field(default=None, alias="instanceId")
    data: Optional[UltraMsgMessage] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


class InboundEvent(BaseModel):
    """Gateway-agnostic view of a webhook delivery"""
    sender_id: Optional[str] = None
    is_from_self: bool = False
    event_type: Optional[str] = None
    body: str = ""
    media_type: Optional[str] = None
    media_url: Optional[str] = None

    @classmethod
    def from_ultramsg(cls, payload: Dict[str, Any]) -> "InboundEvent":
        hook = UltraMsgWebhook.model_validate(payload or {})
        data = hook.data or UltraMsgMessage()
        return cls(
            sender_id=data.from_,
            is_from_self=data.from_me or data.self_,
            event_type=hook.event_type,
            body=(data.body or "").strip(),
            media_type=data.type,
            media_url=data.media,
        )

    @property
    def is_audio(self) -> bool:
        return (self.media_type or "").lower() in AUDIO_TYPES and bool(self.media_url)

    @property
    def ignore_reason(self) -> Optional[str]:
        """Why this event must not reach the turn controller, None if it should"""
        if not self.sender_id:
            return "no_sender"
        if self.is_from_self:
            return "from_me"
        if self.event_type == MESSAGE_ACK:
            return "ack"
        if self.event_type != MESSAGE_RECEIVED:
            return f"event_{self.event_type}"
        return None


class InboundMessage(BaseModel):
    """One buffered message awaiting a turn"""
    text: str = ""
    is_audio: bool = False
    media_ref: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_event(cls, event: InboundEvent) -> "InboundMessage":
        if event.is_audio:
            return cls(text=event.body, is_audio=True, media_ref=event.media_url)
        return cls(text=event.body)


class StartConversationRequest(BaseModel):
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")

    class Config:
        populate_by_name = True


class VoiceSettingsUpdate(BaseModel):
    stability: Optional[float] = Field(default=None, ge=0, le=1)
    similarity_boost: Optional[float] = Field(default=None, ge=0, le=1)
    style: Optional[float] = Field(default=None, ge=0, le=1)
    use_speaker_boost: Optional[bool] = None
    voice_id: Optional[str] = None


class ToneAnalysisRequest(BaseModel):
    text: str


class ImageCheckRequest(BaseModel):
    phone_number: str = Field(..., alias="phoneNumber")
    reference: str
    max_images: int = Field(default=1, alias="maxImages", ge=1, le=3)

    class Config:
        populate_by_name = True
