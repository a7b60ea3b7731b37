"""
Operational alerts for webhook failures.

Alert channels:
1. Structured log (always) - at ERROR level
2. Webhook (optional) - Discord/Slack URL via ALERT_WEBHOOK_URL

Per-type cooldowns keep a burst of identical failures (e.g. Stripe retrying
a broken event) from flooding the channel. Cooldowns live in process memory.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,
}

_local_cooldowns: dict[str, float] = {}  # alert_type -> monotonic expiry


class AlertType:
    STRIPE_HANDLER_FAILED = "stripe_handler_failed"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    TRANSCRIPTION_FAILED = "transcription_failed"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


def _acquire_cooldown(alert_type: str) -> bool:
    """True if the alert may fire now; records the new cooldown window."""
    now = time.monotonic()
    if now < _local_cooldowns.get(alert_type, 0):
        return False
    _local_cooldowns[alert_type] = now + _get_cooldown_seconds(alert_type)
    return True


def reset_cooldowns() -> None:
    _local_cooldowns.clear()


async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> bool:
    """
    Log the alert and forward it to the configured webhook.
    Never raises. Returns False when suppressed by the cooldown.
    """
    if not _acquire_cooldown(alert_type):
        return False

    from orderhooks.utils.logging import get_correlation_id
    cid = get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"
    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Discord/Slack compatible {"content": ...} POST."""
    try:
        from orderhooks.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        content = f"[{severity.upper()}] **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json={"content": content})
            response.raise_for_status()
    except Exception as e:
        logger.warning("Failed to send webhook alert: %s", str(e))
