"""
Appointment notifications: dealer email (Resend REST API) and a row in the
leads spreadsheet. Both run from a delayed background job and never raise
into the conversation.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.clients.google_auth import SHEETS_SCOPE, load_credentials
from app.core.errors import NotificationError
from app.core.phone import mask_phone
from app.models.lead import Lead

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"
NOT_SPECIFIED = "No especificado"

LEAD_SHEET_HEADERS = [
    "ID_Lead",
    "Fecha_Contacto",
    "Telefono",
    "Nombre_Cliente",
    "Email",
    "Marca_Interes",
    "Modelo_Interes",
    "Tipo_Vehiculo",
    "Presupuesto_Max",
    "Vehiculo_Favorito",
    "Status",
    "Fecha_Cita",
    "Hora_Cita",
    "Vehiculo_Cita",
    "Vehiculos_Consultados",
    "Notas_Asesor",
]


def _fmt_dt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "No registrada"


def _consulted(lead: Lead) -> List[str]:
    consulted = lead.interest.get("vehiculos_consultados") or []
    return [str(v) for v in consulted] if isinstance(consulted, list) else [str(consulted)]


def appointment_email_text(lead: Lead) -> str:
    interest = lead.interest
    process = lead.process
    budget = interest.get("presupuesto_max")
    consulted = _consulted(lead)
    lines = [
        "Nueva Cita Agendada - Concesionario",
        f"ID Lead: {lead.id}",
        "",
        "=== INFORMACIÓN DEL CLIENTE ===",
        f"Teléfono: {lead.client.phone}",
        f"Nombre: {lead.client.name or 'No proporcionado'}",
        f"Email: {lead.client.email or 'No proporcionado'}",
        "",
        "=== INTERÉS DEL CLIENTE ===",
        f"Marca de interés: {interest.get('marca_interes') or NOT_SPECIFIED}",
        f"Modelo de interés: {interest.get('modelo_interes') or NOT_SPECIFIED}",
        f"Tipo de vehículo: {interest.get('tipo_vehiculo') or NOT_SPECIFIED}",
        f"Presupuesto máximo: {f'${budget}' if budget else NOT_SPECIFIED}",
        f"Vehículo favorito: {interest.get('vehiculo_favorito') or NOT_SPECIFIED}",
        "",
        "=== INFORMACIÓN DE LA CITA ===",
        f"Fecha: {process.appointment_date or 'No especificada'}",
        f"Hora: {interest.get('hora_cita') or 'No especificada'}",
        f"Vehículo a ver: {interest.get('vehiculo_cita') or NOT_SPECIFIED}",
        f"Status: {process.status.value}",
        "",
        "=== VEHÍCULOS CONSULTADOS ===",
        "\n".join(consulted) if consulted else "Ninguno registrado",
        "",
        "=== INFORMACIÓN DEL PROCESO ===",
        f"Fecha de contacto inicial: {_fmt_dt(process.started_at)}",
        f"Última actividad: {_fmt_dt(process.last_activity_at)}",
    ]
    return "\n".join(lines)


def lead_sheet_row(lead: Lead) -> List[str]:
    interest = lead.interest
    return [
        lead.id,
        _fmt_dt(lead.client.first_contact_at),
        lead.client.phone,
        lead.client.name or "",
        lead.client.email or "",
        str(interest.get("marca_interes") or ""),
        str(interest.get("modelo_interes") or ""),
        str(interest.get("tipo_vehiculo") or ""),
        str(interest.get("presupuesto_max") or ""),
        str(interest.get("vehiculo_favorito") or ""),
        lead.process.status.value,
        lead.process.appointment_date or "",
        str(interest.get("hora_cita") or ""),
        str(interest.get("vehiculo_cita") or ""),
        ", ".join(_consulted(lead)),
        "",
    ]


class EmailNotifier:
    def __init__(self, api_key: str, sender: str, recipient: str, timeout_s: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.sender = sender
        self.recipient = recipient
        self.timeout_s = timeout_s
        self._transport = transport

    async def send_appointment(self, lead: Lead) -> str:
        """
        Returns:
            Provider message id

        Raises:
            NotificationError: Not configured or the API call failed
        """
        if not (self.api_key and self.sender and self.recipient):
            raise NotificationError("Email not configured", reason="missing_email_config")

        payload = {
            "from": self.sender,
            "to": [self.recipient],
            "subject": f"🚗 Nueva cita agendada - {lead.client.name or 'Cliente'}",
            "text": appointment_email_text(lead),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                response = await client.post(RESEND_URL, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError("Email API rejected request",
                                    reason=f"http_{e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise NotificationError("Email API unreachable", reason=type(e).__name__) from e

        message_id = str(response.json().get("id", ""))
        logger.info(f"NOTIFY|email_sent|lead={lead.id}|id={message_id}")
        return message_id


class LeadSheetLogger:
    def __init__(self, spreadsheet_id: str, cell_range: str = "Leads!A:P", credentials_file: Optional[str] = None):
        self.spreadsheet_id = spreadsheet_id
        self.cell_range = cell_range
        self.credentials_file = credentials_file
        self._service = None

    def _get_service(self):
        if self._service is None:
            credentials = load_credentials([SHEETS_SCOPE], self.credentials_file)
            self._service = build("sheets", "v4", credentials=credentials, cache_discovery=False)
        return self._service

    def _append_sync(self, row: List[str]) -> Dict[str, Any]:
        return (
            self._get_service()
            .spreadsheets()
            .values()
            .append(
                spreadsheetId=self.spreadsheet_id,
                range=self.cell_range,
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [row]},
            )
            .execute()
        )

    async def append(self, lead: Lead) -> None:
        if not self.spreadsheet_id:
            raise NotificationError("Leads sheet not configured", reason="missing_spreadsheet_id")
        try:
            await asyncio.to_thread(self._append_sync, lead_sheet_row(lead))
        except HttpError as e:
            raise NotificationError("Sheets append failed", reason=f"http_{e.status_code}") from e
        except (OSError, ValueError) as e:
            raise NotificationError("Sheets append failed", reason=type(e).__name__) from e
        logger.info(f"NOTIFY|sheet_row_added|lead={lead.id}")


class AppointmentFanout:
    """Email first, then the sheet row; each outcome is logged independently"""

    def __init__(self, email: EmailNotifier, sheet: LeadSheetLogger):
        self.email = email
        self.sheet = sheet

    async def notify(self, lead: Lead) -> Dict[str, bool]:
        outcome = {"email": False, "sheet": False}
        try:
            await self.email.send_appointment(lead)
            outcome["email"] = True
        except NotificationError as e:
            logger.error(f"NOTIFY|email_failed|lead={lead.id}|phone={mask_phone(lead.phone)}|reason={e.reason}")
        try:
            await self.sheet.append(lead)
            outcome["sheet"] = True
        except NotificationError as e:
            logger.error(f"NOTIFY|sheet_failed|lead={lead.id}|phone={mask_phone(lead.phone)}|reason={e.reason}")
        return outcome
