"""
Phone number normalization - E.164 format using the phonenumbers library.
Numbers without a country code are parsed as Swiss (CH) by default.
"""
import logging
import re
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)

_DIGITS_ONLY = re.compile(r"\D")

WHATSAPP_PREFIX = "whatsapp:"


def strip_channel_prefix(address: str) -> str:
    """'whatsapp:+41791234567' -> '+41791234567'."""
    if address and address.startswith(WHATSAPP_PREFIX):
        return address[len(WHATSAPP_PREFIX):]
    return address or ""


def normalize_phone_e164(phone: str, default_region: str = "CH") -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - 079 123 45 67      → +41791234567
    - 0041 79 123 45 67  → +41791234567
    - +41 (0)79 123 45 67 → +41791234567
    - whatsapp:+41791234567 → +41791234567

    Returns None if the number cannot be parsed or is not a possible number.
    """
    if not phone or not phone.strip():
        return None

    cleaned = strip_channel_prefix(phone.strip())
    try:
        parsed = phonenumbers.parse(cleaned, default_region)
    except phonenumbers.NumberParseException:
        return None

    if not phonenumbers.is_valid_number(parsed) and not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_or_raw(phone: str, default_region: str = "CH") -> str:
    """Best-effort normalization: falls back to the stripped input."""
    return normalize_phone_e164(phone, default_region) or strip_channel_prefix(phone or "").strip()


def phone_digits(phone: str) -> str:
    """Digits only, e.g. '+41 22 123 45 67' -> '41221234567'."""
    return _DIGITS_ONLY.sub("", phone or "")


def mask_phone(phone: Optional[str]) -> str:
    """Mask phone number for logging - show first 6 characters only."""
    if not phone:
        return ""
    if len(phone) > 6:
        return phone[:6] + "***"
    return phone
