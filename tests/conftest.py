"""
Pytest configuration and fixtures for the turn pipeline and API tests.

Every external collaborator is a fake; time only moves through FakeClock.
"""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.config import Settings
from app.core.clock import FakeClock
from app.core.dependencies import ServiceContainer
from app.core.dispatcher import Dispatcher
from app.core.phrases import PhraseChooser
from app.core.tasks import BackgroundTasks
from app.core.turn_controller import TurnConfig, TurnController
from app.services.inventory import InventorySnapshot
from app.services.voice import VoiceRenderer
from app.storage.lead_store import PersistentLeadStore
from tests.utils.fakes import (
    FakeAudioStorage,
    FakeElevenLabs,
    FakeGateway,
    FakeInventorySource,
    FakeRedis,
    FakeTranscriber,
    RecordingNotifier,
    ScriptedSynthesizer,
)
from tests.utils.payloads import make_inventory_rows

SENDER = "573001112233"


@pytest.fixture
def test_settings():
    return Settings(
        AUTHORIZED_NUMBERS="3001112233, 573004445566",
        DEFAULT_COUNTRY_CODE="57",
        ENABLE_AUDIO_MESSAGES=False,
        IMAGE_SEND_PAUSE_MS=0,
        LOG_JSON=False,
    )


@pytest.fixture
def clock():
    return FakeClock(start_ms=1_000_000)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return PersistentLeadStore(fake_redis, ttl_seconds=3600)


@pytest.fixture
def inventory_source():
    return FakeInventorySource(make_inventory_rows())


@pytest.fixture
def inventory(inventory_source, clock):
    return InventorySnapshot(inventory_source, ttl_s=300, clock=clock)


@pytest.fixture
def tasks(clock):
    return BackgroundTasks(clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def audio_storage():
    return FakeAudioStorage()


@pytest.fixture
def tts_client():
    return FakeElevenLabs()


@pytest.fixture
def voice(audio_storage, tts_client):
    return VoiceRenderer(api_key="test", voice_id="voice-1", storage=audio_storage, client=tts_client)


@pytest.fixture
def dispatcher(gateway, tasks, voice, clock):
    return Dispatcher(gateway, tasks, voice=voice, audio_enabled=False, image_pause_ms=0, clock=clock)


@pytest.fixture
def synthesizer():
    return ScriptedSynthesizer()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def turn_config():
    return TurnConfig(debounce_ms=2000, fanout_delay_ms=2000)


@pytest.fixture
def controller(store, inventory, synthesizer, transcriber, dispatcher, notifier, tasks, turn_config, clock):
    return TurnController(
        store=store,
        inventory=inventory,
        synthesizer=synthesizer,
        transcriber=transcriber,
        dispatcher=dispatcher,
        notifier=notifier,
        tasks=tasks,
        config=turn_config,
        clock=clock,
        chooser=PhraseChooser(seed=7),
    )


@pytest.fixture
def services(test_settings, store, inventory, dispatcher, controller, tasks, voice, audio_storage):
    return ServiceContainer(
        settings=test_settings,
        store=store,
        inventory=inventory,
        dispatcher=dispatcher,
        controller=controller,
        tasks=tasks,
        voice=voice,
        audio_storage=audio_storage,
    )


@pytest.fixture
def app(services):
    """FastAPI application with the fake service container attached."""
    from main import app

    app.state.services = services
    yield app
    del app.state.services


@pytest_asyncio.fixture
async def async_client(app):
    """Create async HTTP client for testing (lifespan is not run)."""
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def settle(controller, tasks):
    """Cancel leftover timers and jobs so no task outlives its test."""
    yield
    await controller.stop()
    await tasks.cancel_all()
