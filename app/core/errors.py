"""
Typed error taxonomy.

External clients translate their library exceptions into these at their own
boundary; the turn controller decides what the customer sees.
"""
from typing import Optional


class AssistantError(Exception):
    """Base exception for the assistant"""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or message


class TransportError(AssistantError):
    """An external service call failed (network, timeout, non-2xx)"""


class GatewayError(TransportError):
    """Messaging gateway rejected or failed a send"""

    def __init__(self, message: str, reason: Optional[str] = None, status_code: int = 0):
        super().__init__(message, reason)
        self.status_code = status_code


class LLMError(TransportError):
    """Response synthesis failed"""


class LLMOverloadedError(LLMError):
    """The LLM provider reported it is overloaded"""


class TranscriptionError(TransportError):
    """Voice note could not be transcribed"""


class SynthesisError(TransportError):
    """Text-to-speech rendering failed"""


class AudioStorageError(TransportError):
    """Audio asset upload or delete failed"""


class NotificationError(TransportError):
    """Email or lead-sheet notification failed"""


class InventoryError(TransportError):
    """Inventory spreadsheet could not be read"""


class StoreError(AssistantError):
    """Lead store failure"""


class LeadNotFoundError(StoreError):
    """No lead record exists for the sender in any tier"""


class StoreUnavailableError(StoreError):
    """Neither the primary nor the fallback tier could serve the request"""
