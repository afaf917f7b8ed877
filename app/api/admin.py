"""
Operational endpoints: leads, inventory, live conversations, health and
voice tuning.
"""
import logging
from collections import Counter
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.core.clock import utcnow
from app.core.dependencies import ServiceContainer, get_services
from app.core.phone import canonicalize_phone, mask_phone
from app.models.lead import Lead, LeadStatus
from app.models.webhook import ImageCheckRequest, ToneAnalysisRequest, VoiceSettingsUpdate
from app.services.voice import classify_tone

logger = logging.getLogger(__name__)

router = APIRouter()

NOT_SPECIFIED = "No especificado"


def _canonical(phone: str, services: ServiceContainer) -> str:
    return canonicalize_phone(phone, services.settings.DEFAULT_COUNTRY_CODE)


def _lead_summary(lead: Lead, authorized: bool) -> Dict[str, Any]:
    interest = lead.interest
    return {
        "id": lead.id,
        "cliente": lead.client.name,
        "telefono": lead.client.phone,
        "interes": {
            "marca": interest.get("marca_interes") or NOT_SPECIFIED,
            "tipo": interest.get("tipo_vehiculo") or NOT_SPECIFIED,
            "presupuesto": interest.get("presupuesto_max") or NOT_SPECIFIED,
        },
        "status": lead.process.status.value,
        "ultima_actividad": lead.process.last_activity_at.isoformat(),
        "fecha_inicio": lead.process.started_at.isoformat(),
        "fecha_cita": lead.process.appointment_date,
        "autorizado": authorized,
        "conversaciones": len(lead.process.conversation_history),
    }


@router.get("/leads")
async def list_leads(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    authorized = set(services.authorized_numbers)
    leads = [_lead_summary(lead, lead.phone in authorized) for lead in await services.store.list_all()]
    return {
        "leads": leads,
        "total": len(leads),
        "authorizedNumbers": services.authorized_numbers,
        "authorizedLeads": sum(1 for lead in leads if lead["autorizado"]),
        "activeLeads": sum(1 for lead in leads if lead["status"] == LeadStatus.ACTIVE.value),
        "appointmentScheduled": sum(
            1 for lead in leads if lead["status"] == LeadStatus.APPOINTMENT_SCHEDULED.value
        ),
    }


@router.get("/lead/{phone}")
async def get_lead(phone: str, services: ServiceContainer = Depends(get_services)):
    try:
        canonical = _canonical(phone, services)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Número de teléfono inválido"})

    lead = await services.store.find_by_sender(canonical)
    if lead is None:
        return JSONResponse(status_code=404, content={"error": "Lead no encontrado"})

    return {
        **lead.to_storage(),
        "authorized": canonical in services.authorized_numbers,
        "currentStep": lead.process.current_step,
        "vehiculosInteres": lead.interest.get("vehiculos_consultados") or [],
        "conversationHistory": [h.model_dump(mode="json") for h in lead.process.conversation_history],
    }


@router.delete("/admin/clear-data/{phone}")
async def clear_data(phone: str, services: ServiceContainer = Depends(get_services)):
    try:
        canonical = _canonical(phone, services)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Número de teléfono inválido"})

    deleted = await services.store.delete(canonical)
    services.controller.clear(canonical)
    logger.info(f"ADMIN|clear_data|phone={mask_phone(canonical)}|deleted={deleted}")
    return {
        "success": True,
        "message": "Datos limpiados exitosamente",
        "phoneNumber": canonical,
        "deleted": deleted,
    }


@router.get("/inventory")
async def get_inventory(services: ServiceContainer = Depends(get_services)):
    view = await services.inventory.get()
    if not view.available:
        return JSONResponse(status_code=500, content={"success": False, "error": view.error})
    return {
        "success": True,
        "vehicles": [v.model_dump() for v in view.vehicles],
        "total": view.total,
        "brands": view.brands,
        "models": view.models,
        "lastUpdate": view.last_update,
    }


@router.get("/inventory/stats")
async def inventory_stats(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.inventory.stats()


@router.delete("/inventory/cache")
async def clear_inventory_cache(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    services.inventory.invalidate()
    return {"success": True, "message": "Cache de inventario limpiado"}


@router.get("/admin/test-inventory")
async def test_inventory(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    result = await services.inventory.test_connection()
    return {
        "success": result["success"],
        "message": "Inventario cargado exitosamente" if result["success"] else "Error cargando inventario",
        "totalVehicles": result["total_vehicles"],
        "brands": result["brands"],
        "error": result["error"],
    }


@router.get("/admin/test-gcs")
async def test_gcs(services: ServiceContainer = Depends(get_services)):
    if services.audio_storage is None:
        return JSONResponse(status_code=503, content={"success": False, "error": "GCS no configurado"})
    return await services.audio_storage.test_connection()


@router.get("/conversations")
async def conversations(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    authorized = set(services.authorized_numbers)
    items = [
        {**item, "authorized": item["phone_number"] in authorized}
        for item in services.controller.snapshot()
    ]
    return {"conversations": items, "total": len(items), "authorizedNumbers": services.authorized_numbers}


@router.get("/stats")
async def stats(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    leads = await services.store.list_all()
    view = await services.inventory.get()
    statuses = Counter(lead.process.status for lead in leads)
    brands = Counter(
        str(lead.interest["marca_interes"]) for lead in leads if lead.interest.get("marca_interes")
    )
    return {
        "leads": {
            "total": len(leads),
            "activos": statuses[LeadStatus.ACTIVE],
            "conCita": statuses[LeadStatus.APPOINTMENT_SCHEDULED],
            "completados": statuses[LeadStatus.COMPLETED],
        },
        "inventory": {
            "totalVehicles": view.total,
            "brands": len(view.brands),
            "lastUpdate": view.last_update,
        },
        "marcasPopulares": dict(brands),
        "conversacionesActivas": services.controller.active_count,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/health")
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    store = await services.store.health_check()
    return {
        "status": "healthy" if store["primary_available"] else "degraded",
        "store": store,
        "activeConversations": services.controller.active_count,
        "pendingBackgroundTasks": len(services.tasks.pending()),
        "audioEnabled": services.dispatcher.audio_enabled,
        "timestamp": utcnow().isoformat(),
    }


@router.get("/admin/voice-settings")
async def get_voice_settings(services: ServiceContainer = Depends(get_services)):
    if services.voice is None:
        return JSONResponse(status_code=503, content={"error": "Voz no configurada"})
    return services.voice.voice_settings()


@router.post("/admin/voice-settings")
async def update_voice_settings(
    payload: VoiceSettingsUpdate, services: ServiceContainer = Depends(get_services)
):
    if services.voice is None:
        return JSONResponse(status_code=503, content={"error": "Voz no configurada"})
    if payload.voice_id:
        services.voice.set_voice(payload.voice_id)
    base = services.voice.update_voice_settings(
        stability=payload.stability,
        similarity_boost=payload.similarity_boost,
        style=payload.style,
        use_speaker_boost=payload.use_speaker_boost,
    )
    return {"success": True, "voiceId": services.voice.voice_id, "settings": base}


@router.post("/admin/analyze-tone")
async def analyze_tone(payload: ToneAnalysisRequest, services: ServiceContainer = Depends(get_services)):
    tone = classify_tone(payload.text)
    settings = services.voice.settings_for(tone) if services.voice is not None else None
    return {"text": payload.text, "tone": tone, "voiceSettings": settings}


@router.post("/admin/test-image")
async def send_test_image(payload: ImageCheckRequest, services: ServiceContainer = Depends(get_services)):
    try:
        phone = _canonical(payload.phone_number, services)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Número de teléfono inválido"})

    vehicle = await services.inventory.by_reference(payload.reference)
    if vehicle is None:
        return JSONResponse(status_code=404, content={"error": "Vehículo no encontrado"})
    if not vehicle.images:
        return JSONResponse(status_code=404, content={"error": "El vehículo no tiene imágenes"})

    sent = await services.dispatcher.send_vehicle_images(phone, vehicle, payload.max_images)
    return {"success": sent > 0, "sent": sent, "reference": vehicle.reference}
