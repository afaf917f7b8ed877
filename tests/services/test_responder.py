"""
Reply parsing, shortening, classification and LLM error mapping.
"""
import anthropic
import httpx
import pytest

from app.core.errors import LLMError, LLMOverloadedError
from app.core.phrases import GENERIC_FOLLOW_UP
from app.models.inventory import InventoryView
from app.models.lead import HistoryEntry, Lead
from app.models.reply import DEFAULT_REPLY_MESSAGE, ResponseType, StructuredReply, classify_response
from app.services.inventory import parse_vehicles
from app.services.responder import (
    ResponseSynthesizer,
    TurnContext,
    build_system_prompt,
    parse_reply,
    shorten_reply,
)
from tests.utils.fakes import FakeAnthropicClient
from tests.utils.payloads import make_inventory_rows

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


def make_context():
    vehicles = parse_vehicles(make_inventory_rows())
    view = InventoryView(available=True, vehicles=vehicles, brands=["Chevrolet", "Mazda", "Toyota"])
    history = [HistoryEntry(user_message="hola", bot_message="¡Ey! ¿Qué buscas?")]
    return TurnContext(lead=Lead.new("573001112233"), inventory=view, history=history)


def status_error(status: int, body: dict) -> anthropic.APIStatusError:
    request = httpx.Request("POST", ANTHROPIC_URL)
    response = httpx.Response(status, request=request, json=body)
    return anthropic.APIStatusError("request failed", response=response, body=body)


class TestParseReply:
    def test_plain_json(self):
        reply = parse_reply('{"message": "Hola, ¿qué buscas?", "next_action": "MOSTRAR_VEHICULOS"}')
        assert reply.message == "Hola, ¿qué buscas?"
        assert reply.next_action == "mostrar_vehiculos"

    def test_fenced_json_with_prose(self):
        raw = 'Claro:\n```json\n{"message": "Mira el Corolla", "vehiculos_mostrados": ["VEH001"]}\n```'
        reply = parse_reply(raw)
        assert reply.message == "Mira el Corolla"
        assert reply.mentioned_vehicle_refs == ["VEH001"]

    def test_json_embedded_in_prose(self):
        raw = 'Aquí va: {"message": "Tengo {dos} opciones", "extracted_data": {"marca_interes": "Mazda"}} listo'
        reply = parse_reply(raw)
        assert reply.message == "Tengo {dos} opciones"
        assert reply.extracted_data == {"marca_interes": "Mazda"}

    def test_prose_only_becomes_message(self):
        reply = parse_reply("¡Claro! Tenemos varias camionetas.")
        assert reply.message == "¡Claro! Tenemos varias camionetas."
        assert reply.next_action == "continuar_consulta"

    @pytest.mark.parametrize("raw", ["", "   ", "{not json at all", '{"message": ""}'])
    def test_unusable_output_yields_default(self, raw):
        assert parse_reply(raw).message == DEFAULT_REPLY_MESSAGE

    def test_wrong_field_types_are_coerced(self):
        reply = parse_reply('{"message": "ok", "extracted_data": "x", "vehiculos_mostrados": "VEH002"}')
        assert reply.extracted_data == {}
        assert reply.mentioned_vehicle_refs == ["VEH002"]


class TestShortenReply:
    def test_short_text_untouched(self):
        assert shorten_reply("Hola parce", 50) == "Hola parce"

    def test_keeps_first_sentence_and_shortest_question(self):
        text = (
            "Tengo un Corolla 2020 muy bonito. Está en Bogotá y tiene 45.000 km. "
            "¿Quieres verlo este fin de semana en el lote? ¿Te gusta?"
        )
        assert shorten_reply(text, 60) == "Tengo un Corolla 2020 muy bonito. ¿Te gusta?"

    def test_adds_generic_question_when_none(self):
        text = "Tengo un Corolla 2020 muy bonito. Está en Bogotá y tiene pocos kilómetros encima."
        result = shorten_reply(text, 60)
        assert result.endswith(GENERIC_FOLLOW_UP)
        assert len(result) <= 60

    def test_long_first_sentence_is_cut_at_word(self):
        text = "Este carro es " + "muy " * 40 + "bonito. ¿Lo ves?"
        result = shorten_reply(text, 40)
        assert len(result) <= 40
        assert "..." in result

    @pytest.mark.parametrize("max_chars", [12, 13, 14, 15, 16])
    def test_tight_limit_never_overflows(self, max_chars):
        text = "Tengo un Corolla 2020 muy bonito y económico. ¿Lo ves?"
        result = shorten_reply(text, max_chars)
        assert len(result) <= max_chars
        assert result.endswith("¿Lo ves?")

    def test_tiny_limit_is_a_hard_cut(self):
        assert len(shorten_reply("Tengo un Corolla. ¿Lo quieres ver?", 3)) <= 3


class TestClassifyResponse:
    def test_confirmation_needs_a_date(self):
        reply = StructuredReply(message="ok", next_action="confirmar_cita")
        assert classify_response(reply) == ResponseType.CONSULTATION

        dated = reply.model_copy(update={"appointment_date": "2026-10-24 10:00"})
        assert classify_response(dated) == ResponseType.APPOINTMENT_CONFIRMED

    def test_confirmation_beats_image_request(self):
        reply = StructuredReply(message="ok", next_action="confirmar_cita", appointment_date="mañana 3pm")
        assert classify_response(reply, "y mándame fotos") == ResponseType.APPOINTMENT_CONFIRMED

    def test_image_words_in_user_text(self):
        reply = StructuredReply(message="ok")
        assert classify_response(reply, "tienes fotos?") == ResponseType.SEND_IMAGES

    @pytest.mark.parametrize(
        "action, expected",
        [
            ("enviar_imagenes", ResponseType.SEND_IMAGES),
            ("agendar_cita", ResponseType.SCHEDULE_APPOINTMENT),
            ("mostrar_vehiculos", ResponseType.SHOW_VEHICLES),
            ("continuar_consulta", ResponseType.CONSULTATION),
            ("algo_raro", ResponseType.CONSULTATION),
        ],
    )
    def test_action_tags(self, action, expected):
        assert classify_response(StructuredReply(message="ok", next_action=action), "hola") == expected


class TestResponseSynthesizer:
    def make(self, client, max_reply_chars=500):
        return ResponseSynthesizer(
            api_key="test", model="claude-test", max_reply_chars=max_reply_chars, client=client
        )

    def test_system_prompt_includes_inventory_and_history(self):
        prompt = build_system_prompt(make_context())
        assert "Ref: VEH001" in prompt
        assert "Cliente: hola" in prompt
        assert "573001112233" in prompt

    @pytest.mark.asyncio
    async def test_generate_parses_model_output(self):
        client = FakeAnthropicClient('{"message": "¡Claro! ¿Para cuándo?", "next_action": "agendar_cita"}')
        reply = await self.make(client).generate("quiero ver el Mazda", make_context())

        assert reply.next_action == "agendar_cita"
        request = client.requests[0]
        assert request["model"] == "claude-test"
        assert "quiero ver el Mazda" in request["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_long_reply_is_shortened(self):
        long_message = "Te cuento que el Corolla está divino. " * 10 + "¿Lo quieres ver?"
        client = FakeAnthropicClient(f'{{"message": "{long_message}"}}')
        reply = await self.make(client, max_reply_chars=80).generate("hola", make_context())

        assert len(reply.message) <= 80
        assert reply.message.endswith("¿Lo quieres ver?")

    @pytest.mark.asyncio
    async def test_529_maps_to_overloaded(self):
        error = status_error(529, {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        with pytest.raises(LLMOverloadedError):
            await self.make(FakeAnthropicClient(error=error)).generate("hola", make_context())

    @pytest.mark.asyncio
    async def test_other_status_maps_to_llm_error(self):
        error = status_error(500, {"type": "error", "error": {"type": "api_error", "message": "Internal"}})
        with pytest.raises(LLMError) as exc_info:
            await self.make(FakeAnthropicClient(error=error)).generate("hola", make_context())
        assert not isinstance(exc_info.value, LLMOverloadedError)
        assert exc_info.value.reason == "http_500"

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_llm_error(self):
        error = anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL))
        with pytest.raises(LLMError) as exc_info:
            await self.make(FakeAnthropicClient(error=error)).generate("hola", make_context())
        assert exc_info.value.reason == "APIConnectionError"
