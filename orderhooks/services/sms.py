"""
Outbound SMS / WhatsApp via the injected Twilio REST client.
Every send returns a result dict and never raises: a failed confirmation
must not undo the order it confirms.

Carrier error handling:
- 30006 (landline): permanent
- 30007 (filtered/blocked): transient
- 21610 (unsubscribed via carrier): opt-out
- 21211 (invalid number): invalid
"""
import asyncio
import logging
import math
from typing import Optional

from orderhooks.utils.phone import mask_phone

logger = logging.getLogger(__name__)

# SMS segment limits
GSM_SINGLE_SEGMENT = 160
GSM_MULTI_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_MULTI_SEGMENT = 67

# Maximum segments allowed (hard cap at 3)
MAX_SEGMENTS = 3
MAX_GSM_CHARS = GSM_MULTI_SEGMENT * MAX_SEGMENTS  # 459
MAX_UCS2_CHARS = UCS2_MULTI_SEGMENT * MAX_SEGMENTS  # 201

PERMANENT_ERRORS = {
    "21211",  # Invalid "To" phone number
    "21610",  # Unsubscribed recipient (carrier-level opt-out)
    "30006",  # Landline or unreachable
    "21612",  # Invalid "To" phone number for SMS
}

TRANSIENT_ERRORS = {
    "30007",  # Message filtered by carrier
    "30008",  # Unknown error
    "30009",  # Missing segment
    "30010",  # Message price exceeds max price
}

LANDLINE_ERRORS = {"30006"}
OPT_OUT_ERRORS = {"21610"}
INVALID_NUMBER_ERRORS = {"21211", "21612"}


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


# GSM-7 basic character set (for encoding detection)
_GSM7_BASIC = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ ÆæßÉ"
    " !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ÄÖÑÜabcdefghijklmnopqrstuvwxyz"
    "äöñüà§"
)

_GSM7_EXTENDED = set("^{}\\[~]|€")


def is_gsm7(message: str) -> bool:
    """Check if message can be encoded as GSM-7."""
    return all(c in _GSM7_BASIC or c in _GSM7_EXTENDED for c in message)


def count_segments(message: str) -> int:
    """Count SMS segments accounting for GSM-7 vs UCS-2 encoding."""
    if is_gsm7(message):
        length = sum(2 if c in _GSM7_EXTENDED else 1 for c in message)
        if length <= GSM_SINGLE_SEGMENT:
            return 1
        return math.ceil(length / GSM_MULTI_SEGMENT)
    if len(message) <= UCS2_SINGLE_SEGMENT:
        return 1
    return math.ceil(len(message) / UCS2_MULTI_SEGMENT)


def enforce_message_length(message: str) -> tuple[str, int, str]:
    """
    Enforce message length limits (max 3 segments).
    Returns: (message, segment_count, encoding)
    """
    encoding = "gsm7" if is_gsm7(message) else "ucs2"
    segments = count_segments(message)

    if segments <= MAX_SEGMENTS:
        return message, segments, encoding

    max_len = (MAX_GSM_CHARS if encoding == "gsm7" else MAX_UCS2_CHARS) - 3
    truncated = message[:max_len] + "..."

    new_segments = count_segments(truncated)
    logger.warning(
        "Message truncated from %d to %d segments (%s encoding)",
        segments, new_segments, encoding,
    )
    return truncated, new_segments, encoding


def classify_error(error_code: Optional[str]) -> str:
    """
    Classify a Twilio error code.
    Returns: "opt_out", "landline", "invalid", "permanent", "transient" or "unknown"
    """
    if not error_code:
        return "unknown"
    if error_code in OPT_OUT_ERRORS:
        return "opt_out"
    if error_code in LANDLINE_ERRORS:
        return "landline"
    if error_code in INVALID_NUMBER_ERRORS:
        return "invalid"
    if error_code in PERMANENT_ERRORS:
        return "permanent"
    if error_code in TRANSIENT_ERRORS:
        return "transient"
    return "unknown"


def _extract_error_code(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    if code is None:
        return None
    return str(code)


def _failed(error: str, error_code: Optional[str] = None, segments: int = 0) -> dict:
    return {
        "sid": None,
        "status": "failed",
        "segments": segments,
        "error": error,
        "error_code": error_code,
        "error_class": classify_error(error_code),
    }


async def _create_message(twilio_client, masked: str, segments: int, **params) -> dict:
    try:
        message = await _run_sync(twilio_client.messages.create, **params)
    except Exception as e:
        error_code = _extract_error_code(e)
        logger.warning(
            "Twilio send failed for %s: code=%s class=%s error=%s",
            masked, error_code, classify_error(error_code), str(e),
        )
        return _failed(str(e), error_code, segments)

    logger.info("Message sent via Twilio to %s (%d segments): %s", masked, segments, message.sid)
    return {
        "sid": message.sid,
        "status": getattr(message, "status", None) or "sent",
        "segments": segments,
        "error": None,
        "error_code": None,
        "error_class": None,
    }


async def send_sms(
    twilio_client,
    to: str,
    body: str,
    from_phone: Optional[str] = None,
) -> dict:
    """
    Send an SMS through the Twilio REST client.

    Returns: {"sid", "status", "segments", "error", "error_code", "error_class"}
    """
    masked = mask_phone(to)
    if twilio_client is None:
        logger.warning("Twilio client not configured - SMS to %s not sent", masked)
        return _failed("Twilio not configured")
    if not from_phone:
        logger.warning("No sender number configured - SMS to %s not sent", masked)
        return _failed("Sender number not configured")

    body, segments, _ = enforce_message_length(body)
    return await _create_message(
        twilio_client, masked, segments,
        to=to, from_=from_phone, body=body,
    )


async def send_whatsapp(
    twilio_client,
    to: str,
    body: str,
    from_number: Optional[str],
    persistent_action: Optional[list] = None,
) -> dict:
    """
    Send a WhatsApp message with optional quick-reply actions.
    Both numbers may be given with or without the whatsapp: prefix.
    """
    masked = mask_phone(to)
    if twilio_client is None:
        logger.warning("Twilio client not configured - WhatsApp to %s not sent", masked)
        return _failed("Twilio not configured")
    if not from_number:
        logger.warning("No WhatsApp sender configured - message to %s not sent", masked)
        return _failed("WhatsApp sender not configured")

    params = {
        "to": to if to.startswith("whatsapp:") else f"whatsapp:{to}",
        "from_": from_number if from_number.startswith("whatsapp:") else f"whatsapp:{from_number}",
        "body": body,
    }
    if persistent_action:
        params["persistent_action"] = persistent_action
    return await _create_message(twilio_client, masked, 1, **params)
