"""
UltraMsg webhook handler and conversation starter.
Receives WhatsApp messages and hands authorized ones to the TurnController.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.core.dependencies import ServiceContainer, get_services
from app.core.errors import GatewayError
from app.core.phone import canonicalize_phone, is_authorized, mask_phone
from app.core.phrases import opening_message
from app.models.webhook import InboundEvent, InboundMessage, StartConversationRequest

logger = logging.getLogger(__name__)

router = APIRouter()

UNAUTHORIZED_MESSAGE = "Número no autorizado"


@router.post("/webhook")
async def webhook(request: Request, services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """
    Receive a webhook from UltraMsg.

    Always answers 200 for well-formed deliveries so the gateway does not
    retry; processing happens after the debounce window.
    """
    try:
        body = await request.json()
        event = InboundEvent.from_ultramsg(body if isinstance(body, dict) else {})
    except (ValueError, ValidationError) as e:
        logger.error(f"WEBHOOK|invalid_payload|error={type(e).__name__}")
        return JSONResponse(status_code=500, content={"error": "Error procesando webhook"})

    reason = event.ignore_reason
    if reason:
        logger.info(f"WEBHOOK|skip|reason={reason}")
        return {"success": True}

    settings = services.settings
    try:
        sender = canonicalize_phone(event.sender_id, settings.DEFAULT_COUNTRY_CODE)
    except ValueError:
        logger.warning("WEBHOOK|skip|reason=invalid_sender")
        return {"success": True}

    if not is_authorized(sender, services.authorized_numbers, settings.DEFAULT_COUNTRY_CODE):
        logger.info(f"WEBHOOK|unauthorized|phone={mask_phone(sender)}")
        return {"success": True, "message": UNAUTHORIZED_MESSAGE}

    logger.info(
        f"WEBHOOK|received|phone={mask_phone(sender)}|type={event.media_type}|chars={len(event.body)}"
    )
    services.controller.enqueue(sender, InboundMessage.from_event(event))
    return {"success": True}


@router.post("/start-conversation")
async def start_conversation(
    payload: StartConversationRequest, services: ServiceContainer = Depends(get_services)
):
    """Create (or reuse) the lead for a phone and send the opening message"""
    if not payload.phone_number:
        return JSONResponse(status_code=400, content={"error": "Número de teléfono requerido"})

    settings = services.settings
    try:
        phone = canonicalize_phone(payload.phone_number, settings.DEFAULT_COUNTRY_CODE)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Número de teléfono inválido"})

    if not is_authorized(phone, services.authorized_numbers, settings.DEFAULT_COUNTRY_CODE):
        logger.info(f"START|unauthorized|phone={mask_phone(phone)}")
        return JSONResponse(
            status_code=403,
            content={"error": UNAUTHORIZED_MESSAGE, "authorizedNumbers": services.authorized_numbers},
        )

    lead = await services.store.find_or_create(phone)
    inventory = await services.inventory.get()

    try:
        await services.dispatcher.deliver(
            phone,
            opening_message(inventory.total if inventory.available else None),
            as_audio=True,
            tone="greeting",
        )
    except GatewayError as e:
        logger.error(f"START|send_failed|phone={mask_phone(phone)}|reason={e.reason}")
        return JSONResponse(status_code=500, content={"error": "Error iniciando conversación"})

    logger.info(f"START|ok|phone={mask_phone(phone)}|lead={lead.id}")
    return {
        "success": True,
        "message": "Conversación iniciada exitosamente",
        "leadId": lead.id,
        "phoneNumber": phone,
        "authorized": True,
    }
