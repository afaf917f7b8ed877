"""
Lead models: one record per WhatsApp sender
"""
import random
import string
import time
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.clock import utcnow

DEFAULT_CLIENT_NAME = "Cliente Potencial"
INITIAL_STEP = "saludo_inicial"


class LeadStatus(str, Enum):
    ACTIVE = "active"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"
    COMPLETED = "completed"


def generate_lead_id() -> str:
    """LEAD_<epoch ms>_<9 random base36 chars>"""
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(random.choices(alphabet, k=9))
    return f"LEAD_{int(time.time() * 1000)}_{suffix}"


class HistoryEntry(BaseModel):
    """One completed turn"""
    timestamp: datetime = Field(default_factory=utcnow)
    user_message: str
    bot_message: str
    action: str = "consultation"
    was_audio: bool = False


class ClientInfo(BaseModel):
    phone: str = Field(..., description="Canonical phone")
    name: str = DEFAULT_CLIENT_NAME
    email: Optional[str] = None
    first_contact_at: datetime = Field(default_factory=utcnow)


class ProcessState(BaseModel):
    current_step: str = INITIAL_STEP
    status: LeadStatus = LeadStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    appointment_date: Optional[str] = None
    conversation_history: List[HistoryEntry] = Field(default_factory=list)


class Lead(BaseModel):
    """Persisted customer record plus two transient per-turn fields"""
    id: str = Field(default_factory=generate_lead_id)
    client: ClientInfo
    interest: Dict[str, Any] = Field(default_factory=dict)
    process: ProcessState = Field(default_factory=ProcessState)

    # Set by the turn pipeline, never persisted
    last_user_message: Optional[str] = Field(default=None, exclude=True)
    last_was_audio: bool = Field(default=False, exclude=True)

    @classmethod
    def new(cls, phone: str) -> "Lead":
        return cls(client=ClientInfo(phone=phone))

    @property
    def phone(self) -> str:
        return self.client.phone

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def append_history(history: List[HistoryEntry], entry: HistoryEntry, cap: int) -> List[HistoryEntry]:
    """Return a new history with entry appended, keeping only the newest cap entries"""
    updated = list(history) + [entry]
    if len(updated) > cap:
        updated = updated[-cap:]
    return updated


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def merge_interest(current: Dict[str, Any], extracted: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Additive slot merge.

    Existing non-empty values are kept; new keys and previously empty slots are
    filled; list values are unioned preserving first-seen order.
    """
    merged = dict(current or {})
    for key, value in (extracted or {}).items():
        if _is_empty(value):
            continue
        existing = merged.get(key)
        if _is_empty(existing):
            merged[key] = value
        elif isinstance(existing, list):
            additions = value if isinstance(value, list) else [value]
            union = list(existing)
            for item in additions:
                if item not in union:
                    union.append(item)
            merged[key] = union
    return merged
