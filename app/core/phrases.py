"""
Canned customer-facing phrases (Colombian Spanish, "Carlos" persona).
"""
import random
from typing import Optional, Sequence

GENERAL_APOLOGIES = (
    "Oye, se me complicó algo acá en el sistema. ¿Podrías decirme de nuevo qué necesitas?",
    "Perdón, parece que hubo un problemita técnico. ¿Me repites por favor?",
    "Ay, se me fue todo por un momento. ¿Qué me estabas preguntando?",
    "Disculpa, tuve una falla acá. ¿Me cuentas otra vez qué andas buscando?",
)

OVERLOAD_APOLOGIES = (
    "Uy parcero, se me colgó el sistema un momentito 😅 ¿Me puedes repetir lo que me dijiste?",
    "Ay no, se me fue la conexión por un segundo. ¿Qué me estabas comentando?",
    "Perdón, el internet está medio loco hoy. ¿Me vuelves a decir qué necesitas?",
    "Disculpa la demora, se me trabó todo acá. ¿Cuál era tu pregunta?",
)

AUDIO_NOT_UNDERSTOOD = "No pude entender el audio, ¿puedes escribirme qué necesitas?"

EMPTY_MESSAGE_REPLY = "Uy, no te alcancé a entender. ¿Me repites qué necesitas?"

ASK_VEHICLE_REFERENCE = "¡Claro! ¿De cuál carro quieres ver las fotos? Pásame la referencia y te las mando."

NO_IMAGES_AVAILABLE = (
    "Uy, de ese carro todavía no tengo fotos a la mano 😅 "
    "¿Te gustaría venir a verlo en persona? Te agendo una cita sin problema."
)

GENERIC_FOLLOW_UP = "¿Qué te parece?"

IMAGE_LABELS = ("Exterior", "Interior", "Motor")


def opening_message(vehicle_count: Optional[int]) -> str:
    """First message sent when a conversation is started from the admin side"""
    count = vehicle_count if vehicle_count else 50
    return (
        "¡Ey! ¿Qué tal? Soy Carlos del concesionario 👋\n\n"
        "Me da mucho gusto saludarte. Veo que andas buscando carro, ¿cierto? "
        "Pues llegaste al lugar indicado porque tenemos unas opciones que te van a encantar.\n\n"
        f"Te cuento que tenemos más de {count} vehículos en el lote, de todas las marcas.\n\n"
        "¿Qué te parece si me cuentas qué tipo de carro andas buscando? "
        "¿Es para la familia, para el trabajo, o qué tienes en mente?"
    )


class PhraseChooser:
    """Random phrase picker; pass a seed for reproducible choices"""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)

    def choose(self, options: Sequence[str]) -> str:
        if not options:
            raise ValueError("options cannot be empty")
        return self._random.choice(list(options))
