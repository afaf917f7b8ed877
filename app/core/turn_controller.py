"""
TurnController - per-sender debounce + strictly sequential turns

Responsibilities:
- Buffers inbound messages per sender during a debounce window armed by the
  first buffered message (not reset by later ones)
- Guarantees at most one turn in flight per sender; messages arriving while a
  turn runs start the next buffer
- Runs the turn pipeline: transcription, lead lookup, LLM reply, persistence,
  appointment fan-out, dispatch and images
- Converts any turn failure into a short apology and always releases the sender

The buffer swap and the in-flight flag are set with no await between them,
so on a single event loop no two turns for one sender can overlap.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from app.config import BatchPolicy, Settings
from app.core.clock import Clock, RealClock, utcnow
from app.core.dispatcher import Dispatcher
from app.core.errors import LLMOverloadedError, TranscriptionError
from app.core.phone import mask_phone
from app.core.phrases import (
    ASK_VEHICLE_REFERENCE,
    AUDIO_NOT_UNDERSTOOD,
    EMPTY_MESSAGE_REPLY,
    GENERAL_APOLOGIES,
    NO_IMAGES_AVAILABLE,
    OVERLOAD_APOLOGIES,
    PhraseChooser,
)
from app.core.tasks import BackgroundTasks
from app.models.lead import HistoryEntry, LeadStatus, append_history, merge_interest
from app.models.reply import ResponseType, StructuredReply, classify_response
from app.models.webhook import InboundMessage
from app.services.inventory import InventorySnapshot
from app.services.notifications import AppointmentFanout
from app.services.responder import ResponseSynthesizer, TurnContext
from app.services.transcription import Transcriber
from app.services.voice import classify_tone
from app.storage.lead_store import PersistentLeadStore

logger = logging.getLogger(__name__)


@dataclass
class TurnConfig:
    debounce_ms: int = 2000
    batch_policy: BatchPolicy = BatchPolicy.LATEST
    join_separator: str = " "
    history_cap: int = 10
    context_history: int = 5
    inventory_sample: int = 20
    fanout_delay_ms: int = 2000
    max_images: int = 3
    idle_eviction_ms: int = 6 * 3600 * 1000
    sweep_interval_ms: int = 600 * 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "TurnConfig":
        return cls(
            debounce_ms=settings.DEBOUNCE_MS,
            batch_policy=settings.BATCH_POLICY,
            join_separator=settings.BATCH_JOIN_SEPARATOR,
            history_cap=settings.HISTORY_CAP,
            context_history=settings.CONTEXT_HISTORY_ENTRIES,
            inventory_sample=settings.INVENTORY_CONTEXT_SAMPLE,
            fanout_delay_ms=settings.APPOINTMENT_FANOUT_DELAY_MS,
            max_images=settings.MAX_IMAGES_PER_VEHICLE,
            idle_eviction_ms=int(settings.IDLE_EVICTION_HOURS * 3600 * 1000),
            sweep_interval_ms=int(settings.EVICTION_SWEEP_INTERVAL_S * 1000),
        )


@dataclass
class ConversationBuffer:
    pending: List[InboundMessage] = field(default_factory=list)
    in_flight: bool = False
    timer: Optional[asyncio.Task] = None
    last_activity_ms: int = 0
    last_activity_at: datetime = field(default_factory=utcnow)


@dataclass
class TurnInput:
    text: str
    is_audio: bool
    media_ref: Optional[str]
    message_count: int


def reduce_batch(batch: List[InboundMessage], policy: BatchPolicy, separator: str = " ") -> TurnInput:
    """
    Collapse a drained buffer into one turn input.

    LATEST keeps only the newest message; JOIN concatenates every non-empty
    text. The audio flag and media reference always come from the newest message.
    """
    latest = batch[-1]
    if policy == BatchPolicy.JOIN:
        text = separator.join(m.text.strip() for m in batch if m.text and m.text.strip())
    else:
        text = (latest.text or "").strip()
    return TurnInput(
        text=text,
        is_audio=latest.is_audio,
        media_ref=latest.media_ref,
        message_count=len(batch),
    )


def make_turn_id(phone: str, first_received_at: datetime) -> str:
    """Deterministic 16-char turn id from the sender and its first buffered message"""
    raw = f"{phone}:{int(first_received_at.timestamp() * 1000)}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


class TurnController:
    def __init__(
        self,
        store: PersistentLeadStore,
        inventory: InventorySnapshot,
        synthesizer: ResponseSynthesizer,
        transcriber: Transcriber,
        dispatcher: Dispatcher,
        notifier: AppointmentFanout,
        tasks: BackgroundTasks,
        config: Optional[TurnConfig] = None,
        clock: Optional[Clock] = None,
        chooser: Optional[PhraseChooser] = None,
    ):
        self.store = store
        self.inventory = inventory
        self.synthesizer = synthesizer
        self.transcriber = transcriber
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.tasks = tasks
        self.config = config or TurnConfig()
        self.clock = clock or RealClock()
        self.chooser = chooser or PhraseChooser()

        self._buffers: Dict[str, ConversationBuffer] = {}
        self._running: Set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ #
    # Buffering
    # ------------------------------------------------------------------ #

    def enqueue(self, sender: str, message: InboundMessage) -> None:
        """Buffer a message for an authorized, canonical sender"""
        buffer = self._buffers.get(sender)
        if buffer is None:
            buffer = ConversationBuffer()
            self._buffers[sender] = buffer

        buffer.pending.append(message)
        self._touch(buffer)

        armed = False
        if not buffer.in_flight and buffer.timer is None:
            self._arm(sender, buffer)
            armed = True

        logger.info(
            f"TURN_BUFFER|appended|phone={mask_phone(sender)}|pending={len(buffer.pending)}|"
            f"in_flight={buffer.in_flight}|timer_armed={armed}|audio={message.is_audio}"
        )

    def _touch(self, buffer: ConversationBuffer) -> None:
        buffer.last_activity_ms = self.clock.now_ms()
        buffer.last_activity_at = utcnow()

    def _arm(self, sender: str, buffer: ConversationBuffer) -> None:
        buffer.timer = asyncio.create_task(self._fire(sender, buffer), name=f"turn:{sender}")

    async def _fire(self, sender: str, buffer: ConversationBuffer) -> None:
        await self.clock.sleep_ms(self.config.debounce_ms)
        buffer.timer = None
        if buffer.in_flight or not buffer.pending:
            return

        # Swap and flag with no suspension point in between
        batch, buffer.pending = buffer.pending, []
        buffer.in_flight = True

        task = asyncio.current_task()
        self._running.add(task)
        try:
            await self._run_turn(sender, batch)
        finally:
            buffer.in_flight = False
            self._touch(buffer)
            self._running.discard(task)
            if buffer.pending:
                self._arm(sender, buffer)
                logger.info(f"TURN|rearmed|phone={mask_phone(sender)}|pending={len(buffer.pending)}")

    # ------------------------------------------------------------------ #
    # Turn pipeline
    # ------------------------------------------------------------------ #

    async def _run_turn(self, sender: str, batch: List[InboundMessage]) -> None:
        turn_id = make_turn_id(sender, batch[0].received_at)
        started_ms = self.clock.now_ms()
        try:
            await self._process(sender, batch, turn_id)
            logger.info(
                f"TURN|done|phone={mask_phone(sender)}|turn_id={turn_id}|"
                f"elapsed_ms={self.clock.now_ms() - started_ms}"
            )
        except Exception as e:
            await self._apologize(sender, turn_id, e)

    async def _apologize(self, sender: str, turn_id: str, error: Exception) -> None:
        overloaded = isinstance(error, LLMOverloadedError)
        logger.error(
            f"TURN|failed|phone={mask_phone(sender)}|turn_id={turn_id}|overloaded={overloaded}|"
            f"error={type(error).__name__}: {error}"
        )
        phrase = self.chooser.choose(OVERLOAD_APOLOGIES if overloaded else GENERAL_APOLOGIES)
        try:
            await self.dispatcher.deliver(sender, phrase, as_audio=False)
        except Exception as send_error:
            logger.error(
                f"TURN|apology_failed|phone={mask_phone(sender)}|turn_id={turn_id}|"
                f"error={type(send_error).__name__}"
            )

    async def _process(self, sender: str, batch: List[InboundMessage], turn_id: str) -> None:
        turn = reduce_batch(batch, self.config.batch_policy, self.config.join_separator)
        logger.info(
            f"TURN|start|phone={mask_phone(sender)}|turn_id={turn_id}|msgs={turn.message_count}|"
            f"audio={turn.is_audio}|policy={self.config.batch_policy.value}"
        )

        text = turn.text
        if turn.is_audio:
            try:
                text = await self.transcriber.transcribe(turn.media_ref)
            except TranscriptionError as e:
                logger.warning(f"TURN|transcription_failed|phone={mask_phone(sender)}|reason={e.reason}")
                await self.dispatcher.deliver(sender, AUDIO_NOT_UNDERSTOOD, as_audio=False)
                return

        if not text.strip():
            logger.info(f"TURN|empty_input|phone={mask_phone(sender)}|turn_id={turn_id}")
            await self.dispatcher.deliver(sender, EMPTY_MESSAGE_REPLY, as_audio=False)
            return

        lead = await self.store.find_or_create(sender)
        lead.last_user_message = text
        lead.last_was_audio = turn.is_audio

        context = TurnContext(
            lead=lead,
            inventory=await self.inventory.get(),
            history=lead.process.conversation_history[-self.config.context_history:],
            inventory_sample=self.config.inventory_sample,
        )
        reply = await self.synthesizer.generate(text, context)
        response_type = classify_response(reply, text)

        entry = HistoryEntry(
            user_message=text,
            bot_message=reply.message,
            action=response_type.value,
            was_audio=turn.is_audio,
        )
        history = append_history(lead.process.conversation_history, entry, self.config.history_cap)

        interest = merge_interest(lead.interest, reply.extracted_data)
        if reply.mentioned_vehicle_refs:
            interest = merge_interest(interest, {"vehiculos_consultados": reply.mentioned_vehicle_refs})

        process: Dict[str, Any] = {
            "current_step": reply.waiting_for or lead.process.current_step,
            "conversation_history": [h.model_dump(mode="json") for h in history],
        }
        confirmed = response_type == ResponseType.APPOINTMENT_CONFIRMED
        if confirmed:
            process["status"] = LeadStatus.APPOINTMENT_SCHEDULED.value
            process["appointment_date"] = reply.appointment_date

        await self.store.update(sender, {"interest": interest, "process": process})

        if confirmed:
            logger.info(f"TURN|appointment_confirmed|phone={mask_phone(sender)}|date={reply.appointment_date}")
            self.tasks.schedule(
                f"appointment_fanout:{sender}",
                lambda: self._notify_appointment(sender),
                delay_ms=self.config.fanout_delay_ms,
            )

        tone = "appointment" if confirmed else classify_tone(reply.message)
        ack = await self.dispatcher.deliver(sender, reply.message, as_audio=True, tone=tone)
        logger.info(
            f"TURN|replied|phone={mask_phone(sender)}|turn_id={turn_id}|type={response_type.value}|"
            f"channel={ack.channel}"
        )

        if response_type == ResponseType.SEND_IMAGES:
            await self._send_images(sender, reply, interest)

    async def _notify_appointment(self, sender: str) -> None:
        lead = await self.store.find_by_sender(sender)
        if lead is None:
            logger.warning(f"TURN|fanout_skipped|phone={mask_phone(sender)}|reason=lead_missing")
            return
        await self.notifier.notify(lead)

    async def _send_images(self, sender: str, reply: StructuredReply, interest: Dict[str, Any]) -> None:
        candidates = [reply.vehicle_reference] + list(reply.mentioned_vehicle_refs)
        consulted = interest.get("vehiculos_consultados")
        if isinstance(consulted, list) and consulted:
            candidates.append(str(consulted[-1]))

        vehicle = None
        for reference in candidates:
            if reference:
                vehicle = await self.inventory.by_reference(reference)
                if vehicle is not None:
                    break

        if vehicle is None:
            await self.dispatcher.deliver(sender, ASK_VEHICLE_REFERENCE, as_audio=False)
            return
        if not vehicle.images:
            await self.dispatcher.deliver(sender, NO_IMAGES_AVAILABLE, as_audio=False)
            return
        await self.dispatcher.send_vehicle_images(sender, vehicle, self.config.max_images)

    # ------------------------------------------------------------------ #
    # Registry maintenance
    # ------------------------------------------------------------------ #

    def evict_idle(self) -> int:
        """Drop buffers with nothing pending, no turn in flight and no recent activity"""
        now = self.clock.now_ms()
        evicted = 0
        for sender, buffer in list(self._buffers.items()):
            if buffer.in_flight or buffer.pending or buffer.timer is not None:
                continue
            if now - buffer.last_activity_ms >= self.config.idle_eviction_ms:
                del self._buffers[sender]
                evicted += 1
        if evicted:
            logger.info(f"TURN_REGISTRY|evicted|count={evicted}|remaining={len(self._buffers)}")
        return evicted

    def clear(self, sender: str) -> bool:
        """Forget a sender's buffered messages; an in-flight turn still completes"""
        buffer = self._buffers.get(sender)
        if buffer is None:
            return False
        if buffer.timer is not None:
            buffer.timer.cancel()
            buffer.timer = None
        buffer.pending = []
        if not buffer.in_flight:
            del self._buffers[sender]
        logger.info(f"TURN_REGISTRY|cleared|phone={mask_phone(sender)}|in_flight={buffer.in_flight}")
        return True

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "phone_number": sender,
                "messages_in_queue": len(buffer.pending),
                "is_processing": buffer.in_flight,
                "last_activity": buffer.last_activity_at.isoformat(),
            }
            for sender, buffer in self._buffers.items()
        ]

    def is_in_flight(self, sender: str) -> bool:
        buffer = self._buffers.get(sender)
        return bool(buffer and buffer.in_flight)

    @property
    def active_count(self) -> int:
        return len(self._buffers)

    async def join(self) -> None:
        """Wait for every turn currently in flight (timers still sleeping are not awaited)"""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def _sweep_loop(self) -> None:
        while True:
            await self.clock.sleep_ms(self.config.sweep_interval_ms)
            self.evict_idle()

    def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="turn_registry_sweeper")

    async def stop(self) -> None:
        tasks = [b.timer for b in self._buffers.values() if b.timer is not None]
        if self._sweeper is not None:
            tasks.append(self._sweeper)
            self._sweeper = None
        tasks.extend(self._running)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"TURN_REGISTRY|stopped|cancelled={len(tasks)}")
