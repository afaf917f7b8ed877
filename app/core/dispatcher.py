"""
Dispatcher: delivers one reply as a voice note when possible, as text otherwise.

Audio assets are public URLs, so every asset gets a deletion: delayed after a
successful send, immediate when the audio path fails.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from app.clients.ultramsg import UltraMsgClient
from app.core.clock import Clock, RealClock
from app.core.errors import AudioStorageError, GatewayError, SynthesisError
from app.core.phone import mask_phone
from app.core.phrases import IMAGE_LABELS
from app.core.tasks import BackgroundTasks
from app.models.inventory import Vehicle
from app.services.voice import VoiceRenderer

logger = logging.getLogger(__name__)

CHANNEL_AUDIO = "audio"
CHANNEL_TEXT = "text"


@dataclass
class DeliveryAck:
    channel: str
    asset_id: Optional[str] = None


def image_caption(vehicle: Vehicle, number: int, total: int) -> str:
    """Caption for the number-th of total images of a vehicle"""
    caption = f"📸 {vehicle.brand} {vehicle.model}"
    if vehicle.year:
        caption += f" {vehicle.year}"

    label = IMAGE_LABELS[number - 1] if number <= len(IMAGE_LABELS) else None
    if label == "Exterior":
        caption += " - Vista exterior"
        if vehicle.color:
            caption += f" (Color {vehicle.color})"
    elif label == "Interior":
        caption += " - Interior"
        if vehicle.transmission:
            caption += f" ({vehicle.transmission})"
    elif label == "Motor":
        caption += " - Motor"
        if vehicle.engine:
            caption += f" ({vehicle.engine})"

    caption += f"\n🏷️ Ref: {vehicle.reference}"
    if vehicle.price:
        caption += f"\n💰 {vehicle.price if vehicle.price.startswith('$') else '$' + vehicle.price}"
    if vehicle.location:
        caption += f"\n📍 {vehicle.location}"
    caption += f"\n\n({number}/{total})"
    return caption


class Dispatcher:
    def __init__(
        self,
        gateway: UltraMsgClient,
        tasks: BackgroundTasks,
        voice: Optional[VoiceRenderer] = None,
        audio_enabled: bool = False,
        asset_ttl_s: float = 7200.0,
        image_pause_ms: int = 2000,
        clock: Optional[Clock] = None,
    ):
        self.gateway = gateway
        self.tasks = tasks
        self.voice = voice
        self.audio_enabled = audio_enabled
        self.asset_ttl_ms = int(asset_ttl_s * 1000)
        self.image_pause_ms = image_pause_ms
        self.clock = clock or RealClock()

    async def _delete_asset(self, asset_id: str) -> None:
        try:
            await self.voice.storage.delete(asset_id)
        except AudioStorageError as e:
            logger.warning(f"DISPATCH|asset_delete_failed|asset={asset_id}|reason={e.reason}")
        except Exception as e:
            logger.warning(f"DISPATCH|asset_delete_failed|asset={asset_id}|reason={type(e).__name__}")

    async def deliver(self, sender: str, text: str, as_audio: bool = True, tone: Optional[str] = None) -> DeliveryAck:
        """
        Send text to sender, preferring a voice note.

        Raises:
            GatewayError: The text path failed
        """
        if as_audio and self.audio_enabled and self.voice is not None:
            asset_id = None
            try:
                audio = await self.voice.synthesize(text, tone)
                asset_id = audio.asset_id
                await self.gateway.send_audio_url(sender, audio.public_url)
                self.tasks.schedule(
                    f"audio_cleanup:{asset_id}",
                    lambda: self._delete_asset(asset_id),
                    delay_ms=self.asset_ttl_ms,
                )
                logger.info(f"DISPATCH|sent|channel=audio|phone={mask_phone(sender)}|asset={asset_id}")
                return DeliveryAck(channel=CHANNEL_AUDIO, asset_id=asset_id)
            except Exception as e:
                reason = e.reason if isinstance(e, (SynthesisError, GatewayError)) else type(e).__name__
                logger.warning(
                    f"DISPATCH|audio_failed|phone={mask_phone(sender)}|reason={reason}|falling_back=text"
                )
                if asset_id is not None:
                    await self._delete_asset(asset_id)

        await self.gateway.send_text(sender, text)
        logger.info(f"DISPATCH|sent|channel=text|phone={mask_phone(sender)}|chars={len(text)}")
        return DeliveryAck(channel=CHANNEL_TEXT)

    async def send_vehicle_images(self, sender: str, vehicle: Vehicle, max_images: int = 3) -> int:
        """Send up to max_images captioned photos, pausing between them. Returns how many went out."""
        images: List[str] = vehicle.images[:max_images]
        sent = 0
        for index, url in enumerate(images, start=1):
            try:
                await self.gateway.send_image(sender, url, image_caption(vehicle, index, len(images)))
                sent += 1
            except GatewayError as e:
                logger.warning(
                    f"DISPATCH|image_failed|phone={mask_phone(sender)}|ref={vehicle.reference}|"
                    f"n={index}|reason={e.reason}"
                )
            if index < len(images):
                await self.clock.sleep_ms(self.image_pause_ms)
        logger.info(f"DISPATCH|images_sent|phone={mask_phone(sender)}|ref={vehicle.reference}|sent={sent}/{len(images)}")
        return sent
