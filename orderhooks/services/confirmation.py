"""
Confirmation dispatcher - channel-specific order acknowledgements.

- SMS: inline TwiML <Message> reply
- Voice transcription: outbound SMS (the call is already over)
- WhatsApp: outbound message with quick-reply actions

Outbound sends run after the order is committed. Failures are logged and
swallowed; the order stands either way.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.twiml.messaging_response import MessagingResponse

from orderhooks.models.message_log import MessageLog
from orderhooks.models.tenant import Tenant
from orderhooks.services.providers import Providers
from orderhooks.services.sms import send_sms, send_whatsapp
from orderhooks.utils.phone import mask_phone
from orderhooks.utils.templates import (
    WHATSAPP_MENU_ACTIONS,
    WHATSAPP_ORDER_ACTIONS,
    render_template,
)

logger = logging.getLogger(__name__)


def message_reply(text: Optional[str]) -> str:
    """TwiML for an SMS reply; no text gives an empty <Response/>."""
    response = MessagingResponse()
    if text:
        response.message(text)
    return str(response)


async def _log_outbound(
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    channel: str,
    from_phone: Optional[str],
    to_phone: str,
    body: str,
    result: dict,
) -> None:
    """Outbound row so status callbacks can update delivery state."""
    try:
        db.add(MessageLog(
            tenant_id=tenant_id,
            direction="outbound",
            channel=channel,
            from_phone=from_phone,
            to_phone=to_phone,
            body=body,
            message_sid=result.get("sid"),
            delivery_status=result.get("status"),
            error_code=result.get("error_code"),
        ))
        await db.commit()
    except SQLAlchemyError as e:
        logger.error("Failed to log outbound %s to %s: %s", channel, mask_phone(to_phone), str(e))
        await db.rollback()


async def send_sms_confirmation(
    providers: Providers,
    db: AsyncSession,
    tenant: Tenant,
    to: str,
    order_number: str,
    language: str,
) -> dict:
    body = render_template("order_confirmation", language, category="message", order_number=order_number)
    from_phone = tenant.twilio_phone or providers.settings.twilio_phone_number
    try:
        result = await send_sms(providers.twilio, to, body, from_phone=from_phone)
    except Exception as e:
        logger.error("Failed to send order confirmation SMS to %s: %s", mask_phone(to), str(e))
        return {"sid": None, "status": "failed", "error": str(e)}

    if result.get("error"):
        logger.error("Order confirmation SMS to %s failed: %s", mask_phone(to), result["error"])
    await _log_outbound(db, tenant.id, "sms", from_phone, to, body, result)
    return result


async def send_whatsapp_confirmation(
    providers: Providers,
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    to: str,
    order_number: str,
    language: str,
) -> dict:
    body = render_template(
        "whatsapp_order_confirmation", language, category="message", order_number=order_number,
    )
    return await _send_whatsapp_logged(providers, db, tenant_id, to, body, WHATSAPP_ORDER_ACTIONS)


async def send_whatsapp_menu(
    providers: Providers,
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    to: str,
    language: str,
    business_name: Optional[str] = None,
) -> dict:
    """Interactive welcome for non-order WhatsApp messages."""
    kwargs = {"business_name": business_name} if business_name else {}
    body = render_template("whatsapp_menu", language, category="message", **kwargs)
    return await _send_whatsapp_logged(providers, db, tenant_id, to, body, WHATSAPP_MENU_ACTIONS)


async def _send_whatsapp_logged(
    providers: Providers,
    db: AsyncSession,
    tenant_id: Optional[uuid.UUID],
    to: str,
    body: str,
    actions: list,
) -> dict:
    from_number = providers.settings.twilio_whatsapp_number
    try:
        result = await send_whatsapp(
            providers.twilio, to, body,
            from_number=from_number,
            persistent_action=actions,
        )
    except Exception as e:
        logger.error("Failed to send WhatsApp message to %s: %s", mask_phone(to), str(e))
        return {"sid": None, "status": "failed", "error": str(e)}

    if result.get("error"):
        logger.error("WhatsApp message to %s failed: %s", mask_phone(to), result["error"])
    await _log_outbound(db, tenant_id, "whatsapp", from_number, to, body, result)
    return result
