"""
Structured LLM reply contract and response-type classification
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

REPLY_SCHEMA_VERSION = 1

DEFAULT_REPLY_MESSAGE = (
    "¡Claro que sí! Cuéntame un poquito más, ¿qué tipo de carro tienes en mente?"
)
DEFAULT_ACTION = "continuar_consulta"
DEFAULT_WAITING_FOR = "consulta_general"

# Action tags accepted from the model, Spanish persona form first
CONFIRM_TAGS = {"confirmar_cita", "confirm_appointment", "appointment_confirmed"}
IMAGE_TAGS = {"enviar_imagenes", "enviar_fotos", "mostrar_fotos", "send_images"}
SCHEDULE_TAGS = {"agendar_cita", "schedule_appointment"}
LISTING_TAGS = {"mostrar_vehiculos", "show_vehicles"}

IMAGE_REQUEST_WORDS = ("foto", "imagen", "imágen", "photo", "picture")


class ResponseType(str, Enum):
    SEND_IMAGES = "send_images"
    SCHEDULE_APPOINTMENT = "schedule_appointment"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    SHOW_VEHICLES = "show_vehicles"
    CONSULTATION = "consultation"


class StructuredReply(BaseModel):
    """Closed reply schema the LLM must produce"""
    schema_version: int = REPLY_SCHEMA_VERSION
    message: str = ""
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    next_action: str = DEFAULT_ACTION
    waiting_for: Optional[str] = None
    mentioned_vehicle_refs: List[str] = Field(default_factory=list, alias="vehiculos_mostrados")
    appointment_date: Optional[str] = None
    vehicle_reference: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator("extracted_data", mode="before")
    @classmethod
    def coerce_extracted(cls, v):
        return v if isinstance(v, dict) else {}

    @field_validator("mentioned_vehicle_refs", mode="before")
    @classmethod
    def coerce_refs(cls, v):
        if v is None:
            return []
        if isinstance(v, (str, int)):
            return [str(v)]
        return [str(item) for item in v if item not in (None, "")]

    @field_validator("next_action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        if not v:
            return DEFAULT_ACTION
        return str(v).strip().lower()

    @field_validator("appointment_date", "waiting_for", "vehicle_reference", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @classmethod
    def default(cls) -> "StructuredReply":
        """Reply used when the model output cannot be parsed"""
        return cls(
            message=DEFAULT_REPLY_MESSAGE,
            next_action=DEFAULT_ACTION,
            waiting_for=DEFAULT_WAITING_FOR,
        )


def asks_for_images(user_text: Optional[str]) -> bool:
    lowered = (user_text or "").lower()
    return any(word in lowered for word in IMAGE_REQUEST_WORDS)


def classify_response(reply: StructuredReply, user_text: Optional[str] = None) -> ResponseType:
    """
    Map a reply onto exactly one response type.

    A confirmation only counts with a concrete appointment date; without one
    it falls through to consultation.
    """
    action = reply.next_action
    if action in CONFIRM_TAGS and reply.appointment_date:
        return ResponseType.APPOINTMENT_CONFIRMED
    if action in IMAGE_TAGS or asks_for_images(user_text):
        return ResponseType.SEND_IMAGES
    if action in SCHEDULE_TAGS:
        return ResponseType.SCHEDULE_APPOINTMENT
    if action in LISTING_TAGS:
        return ResponseType.SHOW_VEHICLES
    return ResponseType.CONSULTATION
