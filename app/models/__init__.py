"""
Data models for the dealership WhatsApp assistant
"""
from .inventory import InventoryView, SearchCriteria, Vehicle
from .lead import ClientInfo, HistoryEntry, Lead, LeadStatus, ProcessState
from .reply import ResponseType, StructuredReply, classify_response
from .webhook import InboundEvent, InboundMessage, StartConversationRequest, UltraMsgWebhook
