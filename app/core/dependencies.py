# app/core/dependencies.py

"""
Centralized dependency management for the application.

Services are built once at startup (main.py lifespan), stored on
app.state.services and shared by every request.
"""

from dataclasses import dataclass
from typing import List, Optional

import redis.asyncio as redis
from fastapi import Request

from app.clients.ultramsg import UltraMsgClient
from app.config import Settings
from app.core.clock import Clock, RealClock
from app.core.dispatcher import Dispatcher
from app.core.tasks import BackgroundTasks
from app.core.turn_controller import TurnConfig, TurnController
from app.services.audio_storage import AudioStorage
from app.services.inventory import InventorySnapshot, SheetsInventorySource
from app.services.notifications import AppointmentFanout, EmailNotifier, LeadSheetLogger
from app.services.responder import ResponseSynthesizer
from app.services.transcription import Transcriber
from app.services.voice import VoiceRenderer
from app.storage.lead_store import PersistentLeadStore


@dataclass
class ServiceContainer:
    settings: Settings
    store: PersistentLeadStore
    inventory: InventorySnapshot
    dispatcher: Dispatcher
    controller: TurnController
    tasks: BackgroundTasks
    voice: Optional[VoiceRenderer] = None
    audio_storage: Optional[AudioStorage] = None

    @property
    def authorized_numbers(self) -> List[str]:
        return self.settings.authorized_numbers

    async def start(self) -> None:
        self.controller.start()

    async def shutdown(self) -> None:
        await self.controller.stop()
        await self.tasks.cancel_all()
        await self.store.close()


def build_services(settings: Settings, clock: Optional[Clock] = None) -> ServiceContainer:
    """Wire the production object graph from settings"""
    clock = clock or RealClock()
    tasks = BackgroundTasks(clock)

    redis_client = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
        socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT_S,
    )
    store = PersistentLeadStore(redis_client, ttl_seconds=settings.LEAD_TTL_SECONDS)

    inventory = InventorySnapshot(
        SheetsInventorySource(
            settings.INVENTORY_SPREADSHEET_ID,
            settings.INVENTORY_RANGE,
            settings.GOOGLE_CREDENTIALS_FILE,
        ),
        ttl_s=settings.INVENTORY_CACHE_TTL_S,
        clock=clock,
    )

    gateway = UltraMsgClient(
        instance_id=settings.ULTRAMSG_INSTANCE_ID,
        token=settings.ULTRAMSG_TOKEN,
        base_url=settings.ULTRAMSG_BASE_URL,
        text_timeout_s=settings.GATEWAY_TEXT_TIMEOUT_S,
        media_timeout_s=settings.GATEWAY_MEDIA_TIMEOUT_S,
        max_retries=settings.GATEWAY_MAX_RETRIES,
        backoff_s=settings.GATEWAY_RETRY_BACKOFF_S,
    )

    audio_storage = AudioStorage(
        settings.GCS_BUCKET,
        folder=settings.GCS_FOLDER,
        project_id=settings.GOOGLE_CLOUD_PROJECT_ID,
        credentials_file=settings.GOOGLE_CREDENTIALS_FILE,
    )
    voice = VoiceRenderer(
        api_key=settings.ELEVENLABS_API_KEY,
        voice_id=settings.ELEVENLABS_VOICE_ID,
        storage=audio_storage,
        model_id=settings.ELEVENLABS_MODEL_ID,
    )
    dispatcher = Dispatcher(
        gateway,
        tasks,
        voice=voice,
        audio_enabled=settings.ENABLE_AUDIO_MESSAGES,
        asset_ttl_s=settings.AUDIO_ASSET_TTL_S,
        image_pause_ms=settings.IMAGE_SEND_PAUSE_MS,
        clock=clock,
    )

    synthesizer = ResponseSynthesizer(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.ANTHROPIC_MODEL,
        max_tokens=settings.LLM_MAX_TOKENS,
        temperature=settings.LLM_TEMPERATURE,
        timeout_s=settings.LLM_TIMEOUT_S,
        max_reply_chars=settings.MAX_REPLY_CHARS,
    )
    transcriber = Transcriber(
        api_key=settings.OPENAI_API_KEY,
        model=settings.TRANSCRIPTION_MODEL,
        language=settings.TRANSCRIPTION_LANGUAGE,
        timeout_s=settings.TRANSCRIPTION_TIMEOUT_S,
    )
    notifier = AppointmentFanout(
        EmailNotifier(
            settings.RESEND_API_KEY,
            settings.EMAIL_FROM,
            settings.EMAIL_TO,
            timeout_s=settings.EMAIL_TIMEOUT_S,
        ),
        LeadSheetLogger(
            settings.LEADS_SPREADSHEET_ID,
            settings.LEADS_RANGE,
            settings.GOOGLE_CREDENTIALS_FILE,
        ),
    )

    controller = TurnController(
        store=store,
        inventory=inventory,
        synthesizer=synthesizer,
        transcriber=transcriber,
        dispatcher=dispatcher,
        notifier=notifier,
        tasks=tasks,
        config=TurnConfig.from_settings(settings),
        clock=clock,
    )

    return ServiceContainer(
        settings=settings,
        store=store,
        inventory=inventory,
        dispatcher=dispatcher,
        controller=controller,
        tasks=tasks,
        voice=voice,
        audio_storage=audio_storage,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
