"""
Response synthesizer: prompts Claude as "Carlos" and parses the structured reply.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anthropic
from anthropic import AsyncAnthropic
from pydantic import ValidationError

from app.core.errors import LLMError, LLMOverloadedError
from app.core.phrases import GENERIC_FOLLOW_UP
from app.models.inventory import InventoryView
from app.models.lead import HistoryEntry, Lead
from app.models.reply import StructuredReply

logger = logging.getLogger(__name__)

OVERLOADED_STATUS = 529

SYSTEM_PROMPT = """Eres Carlos, un vendedor colombiano de carros usados con más de 15 años de experiencia. Eres natural, carismático y confiable; vendes de manera auténtica y honesta.

Tu personalidad:
- Hablas como un colombiano real, cálido y amigable pero profesional
- No suenas robótico ni demasiado formal
- Conoces muy bien los carros y das consejos útiles

INFORMACIÓN DEL CLIENTE:
- Teléfono: {phone}
- Nombre: {name}

INTERÉS ACTUAL DEL CLIENTE:
{interest}

INVENTARIO DISPONIBLE:
{inventory}

STEP ACTUAL: {current_step}

CONVERSACIÓN RECIENTE:
{history}

INSTRUCCIONES PARA RESPONDER:
1. Sé conversacional y breve, como un amigo recomendando carros
2. No uses listas con viñetas ni formatos robóticos
3. Si no sabes algo del inventario, sé honesto pero optimista
4. Haz una sola pregunta relevante para entender mejor qué necesita
5. Lleva la conversación hacia agendar una cita cuando haya interés real
6. Si el cliente pide fotos de un carro, usa next_action "enviar_imagenes" y pon su referencia en vehicle_reference

RESPONDE SOLO EN FORMATO JSON:
{{
  "message": "tu respuesta natural como Carlos",
  "extracted_data": {{}},
  "next_action": "mostrar_vehiculos|enviar_imagenes|agendar_cita|confirmar_cita|continuar_consulta",
  "waiting_for": "paso_siguiente",
  "vehiculos_mostrados": [],
  "vehicle_reference": null,
  "appointment_date": null
}}"""

USER_PROMPT = (
    'El cliente dice: "{text}"\n\n'
    "Responde como Carlos manteniendo la continuidad de la conversación. "
    "No repitas información que ya conoces."
)


@dataclass
class TurnContext:
    """Everything the prompt needs about the lead and the lot"""
    lead: Lead
    inventory: InventoryView
    history: List[HistoryEntry] = field(default_factory=list)
    inventory_sample: int = 20


def render_inventory(view: InventoryView, sample: int) -> str:
    if not view.available:
        return "Inventario no disponible temporalmente"
    lines = [
        f"Total vehículos en el lote: {view.total}",
        f"Marcas que tenemos: {', '.join(view.brands)}",
        "",
        "CARROS DISPONIBLES:",
    ]
    for v in view.vehicles[:sample]:
        lines.append(f"- {v.brand} {v.model} ({v.mileage or '?'} km) - Ref: {v.reference}")
    return "\n".join(lines)


def render_history(history: List[HistoryEntry]) -> str:
    if not history:
        return "(sin conversación previa)"
    return "\n".join(f"Cliente: {h.user_message}\nCarlos: {h.bot_message}" for h in history)


def build_system_prompt(context: TurnContext) -> str:
    lead = context.lead
    return SYSTEM_PROMPT.format(
        phone=lead.client.phone,
        name=lead.client.name,
        interest=json.dumps(lead.interest, ensure_ascii=False, indent=2),
        inventory=render_inventory(context.inventory, context.inventory_sample),
        current_step=lead.process.current_step,
        history=render_history(context.history),
    )


_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """First balanced {...} object in raw text (fenced or embedded in prose)"""
    candidates = [m.group(1) for m in _FENCE_RE.finditer(raw)] + [raw]
    for text in candidates:
        start = text.find("{")
        while start != -1:
            depth = 0
            in_string = False
            escaped = False
            for index in range(start, len(text)):
                char = text[index]
                if in_string:
                    if escaped:
                        escaped = False
                    elif char == "\\":
                        escaped = True
                    elif char == '"':
                        in_string = False
                elif char == '"':
                    in_string = True
                elif char == "{":
                    depth += 1
                elif char == "}":
                    depth -= 1
                    if depth == 0:
                        try:
                            parsed = json.loads(text[start:index + 1])
                        except json.JSONDecodeError:
                            break
                        if isinstance(parsed, dict):
                            return parsed
                        break
            start = text.find("{", start + 1)
    return None


def parse_reply(raw: str) -> StructuredReply:
    """
    Turn raw model output into a valid StructuredReply.

    JSON is extracted from fences or surrounding prose; plain prose becomes
    the message; anything else yields StructuredReply.default().
    """
    raw = (raw or "").strip()
    if not raw:
        logger.warning("RESPONDER|parse|empty_output|using_default")
        return StructuredReply.default()

    payload = extract_json_object(raw)
    if payload is not None:
        try:
            reply = StructuredReply.model_validate(payload)
            if reply.message.strip():
                return reply
            logger.warning("RESPONDER|parse|empty_message|using_default")
        except ValidationError as e:
            logger.warning(f"RESPONDER|parse|schema_error|errors={len(e.errors())}|using_default")
        return StructuredReply.default()

    if "{" not in raw:
        logger.warning("RESPONDER|parse|prose_only|repaired")
        default = StructuredReply.default()
        return default.model_copy(update={"message": raw})

    logger.warning("RESPONDER|parse|malformed_json|using_default")
    return StructuredReply.default()


_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")
_QUESTION_RE = re.compile(r"¿[^¿?]*\?")


def _cut_at_word(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars < 4:
        return text[:max_chars]
    cut = text[:max_chars - 3].rsplit(" ", 1)[0].rstrip(",;: ")
    return f"{cut}..."


def shorten_reply(text: str, max_chars: int) -> str:
    """
    Keep the first sentence plus the shortest question when text is too long.

    Falls back to a generic follow-up question when the text asks nothing.
    """
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text

    sentences = [s.strip() for s in _SENTENCE_RE.split(text) if s.strip()]
    first = sentences[0] if sentences else text
    questions = _QUESTION_RE.findall(text) or [s for s in sentences if s.endswith("?")]
    questions = [q.strip() for q in questions if q.strip() and q.strip() not in first]
    question = min(questions, key=len) if questions else GENERIC_FOLLOW_UP

    if first.endswith("?"):
        return _cut_at_word(first, max_chars)

    budget = max_chars - len(question) - 1
    if budget < 4:
        return _cut_at_word(question, max_chars)
    return f"{_cut_at_word(first, budget)} {question}"


def _is_overloaded(error: anthropic.APIStatusError) -> bool:
    if error.status_code == OVERLOADED_STATUS:
        return True
    body = error.body if isinstance(error.body, dict) else {}
    detail = body.get("error", {}) if isinstance(body.get("error"), dict) else {}
    return detail.get("type") == "overloaded_error" or "overloaded" in str(error).lower()


class ResponseSynthesizer:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 1200,
        temperature: float = 0.8,
        timeout_s: float = 30.0,
        max_reply_chars: int = 500,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_reply_chars = max_reply_chars
        self.client = client or AsyncAnthropic(api_key=api_key, timeout=timeout_s, max_retries=1)

    async def generate(self, user_text: str, context: TurnContext) -> StructuredReply:
        """
        Raises:
            LLMOverloadedError: Provider reported overload (HTTP 529)
            LLMError: Any other provider or transport failure
        """
        system = build_system_prompt(context)
        logger.info(
            f"LLM|req|model={self.model}|temp={self.temperature}|max={self.max_tokens}|"
            f"prompt_chars={len(system)}"
        )
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system,
                messages=[{"role": "user", "content": USER_PROMPT.format(text=user_text)}],
            )
        except anthropic.APIStatusError as e:
            if _is_overloaded(e):
                logger.warning(f"LLM|overloaded|status={e.status_code}")
                raise LLMOverloadedError("LLM provider overloaded", reason="overloaded") from e
            logger.error(f"LLM|http_error|status={e.status_code}")
            raise LLMError(f"LLM request failed with status {e.status_code}", reason=f"http_{e.status_code}") from e
        except anthropic.APIError as e:
            logger.error(f"LLM|transport_error|error={type(e).__name__}")
            raise LLMError("LLM request failed", reason=type(e).__name__) from e

        raw = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", "") == "text"
        )
        reply = parse_reply(raw)
        if len(reply.message) > self.max_reply_chars:
            shortened = shorten_reply(reply.message, self.max_reply_chars)
            logger.info(f"LLM|shortened|from={len(reply.message)}|to={len(shortened)}")
            reply = reply.model_copy(update={"message": shortened})

        logger.info(
            f"LLM|ok|action={reply.next_action}|chars={len(reply.message)}|"
            f"refs={len(reply.mentioned_vehicle_refs)}"
        )
        return reply
