import json

import httpx
import pytest

from app.core.errors import NotificationError
from app.models.lead import Lead, LeadStatus
from app.services.notifications import (
    LEAD_SHEET_HEADERS,
    RESEND_URL,
    AppointmentFanout,
    EmailNotifier,
    LeadSheetLogger,
    appointment_email_text,
    lead_sheet_row,
)
from tests.utils.fakes import FailingEmail, RecordingSheet


@pytest.fixture
def booked_lead():
    lead = Lead.new("573001112233")
    lead.interest = {
        "marca_interes": "Toyota",
        "presupuesto_max": 70000000,
        "vehiculos_consultados": ["VEH001", "VEH003"],
    }
    lead.process.status = LeadStatus.APPOINTMENT_SCHEDULED
    lead.process.appointment_date = "2026-10-24 10:00"
    return lead


def test_email_text_has_lead_details(booked_lead):
    text = appointment_email_text(booked_lead)

    assert f"ID Lead: {booked_lead.id}" in text
    assert "Marca de interés: Toyota" in text
    assert "Presupuesto máximo: $70000000" in text
    assert "Modelo de interés: No especificado" in text
    assert "Fecha: 2026-10-24 10:00" in text
    assert "VEH001\nVEH003" in text


def test_sheet_row_matches_headers(booked_lead):
    row = lead_sheet_row(booked_lead)

    assert len(row) == len(LEAD_SHEET_HEADERS) == 16
    assert row[0] == booked_lead.id
    assert row[10] == "appointment_scheduled"
    assert row[14] == "VEH001, VEH003"


@pytest.mark.asyncio
async def test_email_posts_to_resend(booked_lead):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "email-123"})

    notifier = EmailNotifier("re_key", "citas@autos.co", "ventas@autos.co", transport=httpx.MockTransport(handler))
    assert await notifier.send_appointment(booked_lead) == "email-123"

    request = seen[0]
    assert str(request.url) == RESEND_URL
    assert request.headers["Authorization"] == "Bearer re_key"
    body = json.loads(request.content)
    assert body["to"] == ["ventas@autos.co"]
    assert "Toyota" in body["text"]


@pytest.mark.asyncio
async def test_email_rejection_raises(booked_lead):
    transport = httpx.MockTransport(lambda request: httpx.Response(422, json={"message": "invalid from"}))
    notifier = EmailNotifier("re_key", "bad", "ventas@autos.co", transport=transport)

    with pytest.raises(NotificationError) as exc_info:
        await notifier.send_appointment(booked_lead)
    assert exc_info.value.reason == "http_422"


@pytest.mark.asyncio
async def test_unconfigured_email_raises(booked_lead):
    with pytest.raises(NotificationError):
        await EmailNotifier("", "", "").send_appointment(booked_lead)


@pytest.mark.asyncio
async def test_unconfigured_sheet_raises(booked_lead):
    with pytest.raises(NotificationError):
        await LeadSheetLogger("").append(booked_lead)


@pytest.mark.asyncio
async def test_fanout_continues_after_email_failure(booked_lead):
    sheet = RecordingSheet()
    outcome = await AppointmentFanout(FailingEmail(), sheet).notify(booked_lead)

    assert outcome == {"email": False, "sheet": True}
    assert sheet.rows == [booked_lead.id]
