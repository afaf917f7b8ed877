import pytest
from google.auth.exceptions import RefreshError

from app.core.errors import SynthesisError
from app.services.voice import (
    BASE_VOICE_SETTINGS,
    TONE_PRESETS,
    VoiceRenderer,
    classify_tone,
    clean_text_for_speech,
)
from tests.utils.fakes import FakeAudioStorage, FakeElevenLabs


class TestSpeechCleaning:
    def test_strips_emoji_and_markdown(self):
        assert clean_text_for_speech("¡Hola! 👋 Tengo un **Corolla** 🚗") == "¡Hola! Tengo un Corolla"

    def test_line_breaks_become_pauses(self):
        assert clean_text_for_speech("Mira esto\n\nEs un Mazda\nmuy bonito") == "Mira esto. Es un Mazda, muy bonito"

    def test_expands_abbreviations(self):
        spoken = clean_text_for_speech("Ref: VEH001 con 45000 km por $65.000.000, te espero a las 10 AM")
        assert spoken == "referencia vehículo 001 con 45000 kilómetros por 65.000.000 pesos, te espero a las 10 de la mañana"

    def test_keeps_snake_case_words(self):
        assert "marca_interes" in clean_text_for_speech("campo marca_interes")


class TestToneClassification:
    @pytest.mark.parametrize(
        "text, tone",
        [
            ("¡Perfecto, quedó listo!", "enthusiasm"),
            ("Hola, ¿cómo vas?", "greeting"),
            ("Te agendo la cita para el sábado", "appointment"),
            ("El precio de ese carro es negociable", "consultation"),
            ("Tengo un Corolla 2020", "product_info"),
        ],
    )
    def test_first_matching_cue_wins(self, text, tone):
        assert classify_tone(text) == tone


class TestVoiceRenderer:
    @pytest.fixture
    def storage(self):
        return FakeAudioStorage()

    @pytest.fixture
    def tts(self):
        return FakeElevenLabs(audio=b"ID3-mp3-bytes")

    @pytest.fixture
    def renderer(self, storage, tts):
        return VoiceRenderer(api_key="key", voice_id="voice-1", storage=storage, client=tts)

    def test_presets_override_base(self, renderer):
        greeting = renderer.settings_for("greeting")
        assert greeting["style"] == TONE_PRESETS["greeting"]["style"]
        assert greeting["use_speaker_boost"] is True
        assert renderer.settings_for("unknown") == renderer.settings_for("product_info")

    def test_update_voice_settings_ignores_unknown_and_none(self, renderer):
        base = renderer.update_voice_settings(stability=0.9, style=None, bogus=1)
        assert base["stability"] == 0.9
        assert base["style"] == BASE_VOICE_SETTINGS["style"]
        assert "bogus" not in base

    def test_voice_settings_lists_presets(self, renderer):
        renderer.set_voice("voice-2")
        info = renderer.voice_settings()
        assert info["voice_id"] == "voice-2"
        assert set(info["presets"]) == set(TONE_PRESETS)

    @pytest.mark.asyncio
    async def test_synthesize_uploads_clean_audio(self, renderer, storage, tts):
        audio = await renderer.synthesize("¡Hola! 👋 Te espero", tone="greeting")

        assert audio.asset_id.startswith("audio_") and audio.asset_id.endswith(".mp3")
        assert audio.public_url.endswith(audio.asset_id)
        assert storage.uploaded[audio.asset_id] == b"ID3-mp3-bytes"

        call = tts.calls[0]
        assert call["text"] == "¡Hola! Te espero"
        assert call["voice_id"] == "voice-1"
        assert call["voice_settings"].style == TONE_PRESETS["greeting"]["style"]

    @pytest.mark.asyncio
    async def test_emoji_only_text_is_not_speakable(self, renderer, tts):
        with pytest.raises(SynthesisError) as exc_info:
            await renderer.synthesize("👍🚗")
        assert exc_info.value.reason == "empty_text"
        assert tts.calls == []

    @pytest.mark.asyncio
    async def test_missing_voice_id(self, storage, tts):
        renderer = VoiceRenderer(api_key="key", voice_id="", storage=storage, client=tts)
        with pytest.raises(SynthesisError):
            await renderer.synthesize("hola")

    @pytest.mark.asyncio
    async def test_tts_api_error(self, renderer, tts, storage):
        tts.fail = True
        with pytest.raises(SynthesisError) as exc_info:
            await renderer.synthesize("hola")
        assert exc_info.value.reason == "ApiError"
        assert storage.uploaded == {}

    @pytest.mark.asyncio
    async def test_upload_failure(self, renderer, storage):
        storage.fail_upload = True
        with pytest.raises(SynthesisError) as exc_info:
            await renderer.synthesize("hola")
        assert exc_info.value.reason == "Forbidden"

    @pytest.mark.asyncio
    async def test_upload_failure_discards_asset(self, renderer, storage):
        storage.fail_upload = True
        with pytest.raises(SynthesisError):
            await renderer.synthesize("hola")
        assert len(storage.deleted) == 1

    @pytest.mark.asyncio
    async def test_unexpected_upload_error_discards_asset(self, renderer, storage):
        storage.upload_error = RefreshError("token refresh failed")
        with pytest.raises(RefreshError):
            await renderer.synthesize("hola")
        assert len(storage.deleted) == 1
