"""
Phone number utilities for WhatsApp sender ids.

Every key the assistant uses (lead store, turn registry, allow-list) is the
canonical form produced by canonicalize_phone.
"""
import re
from typing import Iterable


def canonicalize_phone(raw: str, default_country_code: str = "57") -> str:
    """
    Normalize a raw sender id to digits with the country code prefix.

    Args:
        raw: Raw id, e.g. "573001234567@c.us", "+57 300 123 4567" or "3001234567"
        default_country_code: Prefix added when the number lacks it (Colombia = 57)

    Returns:
        Canonical digits-only phone, e.g. "573001234567"

    Raises:
        ValueError: If no digits remain after cleaning
    """
    if not raw:
        raise ValueError("Phone number cannot be empty")

    # Drop the WhatsApp suffix ("@c.us", "@s.whatsapp.net")
    local = str(raw).split("@", 1)[0]
    digits = re.sub(r"\D", "", local)

    if not digits:
        raise ValueError(f"Invalid phone number format: {raw}")

    if digits.startswith(default_country_code):
        return digits
    return f"{default_country_code}{digits}"


def mask_phone(phone: str) -> str:
    """Mask a phone for logging - shows only the last 4 digits"""
    if not phone or len(phone) < 4:
        return "****"
    return f"****{phone[-4:]}"


def is_authorized(phone: str, allow_list: Iterable[str], default_country_code: str = "57") -> bool:
    """
    Check a sender against the allow-list, comparing canonical forms.

    Returns:
        True if the canonical phone is in the allow-list, False otherwise
        (including unparseable input)
    """
    try:
        canonical = canonicalize_phone(phone, default_country_code)
    except ValueError:
        return False
    return canonical in set(allow_list)
