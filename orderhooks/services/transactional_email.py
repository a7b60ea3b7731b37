"""
Transactional email service - SendGrid-based billing notifications.

Payment receipts go to the ordering guest; subscription and invoice notices
go to the restaurant owner. Sends never raise: failures come back in the
result dict and are logged by the caller.
"""
import asyncio
import html
import logging
from typing import Optional

from orderhooks.services.providers import Providers

logger = logging.getLogger(__name__)


def _mask_email(email: str) -> str:
    return email[:20] + "***"


async def _send_transactional(
    providers: Providers,
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Send a transactional email via SendGrid.

    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    if providers.sendgrid is None:
        logger.error("No SendGrid client configured for transactional email")
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}

    if not to_email:
        return {"message_id": None, "status": "skipped", "error": "No recipient"}

    settings = providers.settings
    try:
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(settings.sendgrid_from_email, settings.sendgrid_from_name),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = providers.sendgrid
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
        message_id = response.headers.get("X-Message-Id", "")

        logger.info(
            "Transactional email sent: to=%s subject=%s",
            _mask_email(to_email), subject[:40],
        )
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error(
            "Transactional email failed: to=%s error=%s",
            _mask_email(to_email), str(e),
        )
        return {"message_id": None, "status": "error", "error": str(e)}


def _wrap_html(title: str, body: str) -> str:
    """Plain-text title and body, escaped into the branded HTML layout."""
    title, body = html.escape(title), html.escape(body)
    return f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 480px; margin: 0 auto; padding: 40px 20px;">
      <h2 style="margin: 0 0 24px; color: #111; font-size: 20px;">{title}</h2>
      <p style="color: #555; font-size: 15px; line-height: 1.6;">{body}</p>
      <hr style="border: none; border-top: 1px solid #eee; margin: 32px 0;" />
      <p style="color: #bbb; font-size: 11px; text-align: center;">EATECH</p>
    </div>
    """


def _format_amount(amount: Optional[float], currency: Optional[str]) -> str:
    return f"{(currency or 'chf').upper()} {amount or 0:.2f}"


async def send_payment_confirmation(
    providers: Providers,
    email: str,
    order_number: str,
    amount: Optional[float],
    currency: Optional[str],
) -> dict:
    """Receipt for a successful order payment."""
    total = _format_amount(amount, currency)
    body = (
        f"Vielen Dank! Wir haben Ihre Zahlung von {total} "
        f"für Bestellung {order_number} erhalten."
    )
    return await _send_transactional(
        providers, email,
        f"Zahlungsbestätigung - Bestellung {order_number}",
        _wrap_html("Zahlung erhalten", body),
        body + "\n\n-- EATECH",
    )


async def send_payment_failed(
    providers: Providers,
    email: str,
    order_number: str,
    error_message: Optional[str] = None,
) -> dict:
    """Notify the guest that an order payment was declined."""
    reason = f" Grund: {error_message}" if error_message else ""
    body = (
        f"Die Zahlung für Bestellung {order_number} ist leider fehlgeschlagen.{reason} "
        "Bitte versuchen Sie es mit einer anderen Zahlungsmethode erneut."
    )
    return await _send_transactional(
        providers, email,
        f"Zahlung fehlgeschlagen - Bestellung {order_number}",
        _wrap_html("Zahlung fehlgeschlagen", body),
        body + "\n\n-- EATECH",
    )


async def send_subscription_canceled(providers: Providers, email: str, business_name: str) -> dict:
    body = (
        f"Das EATECH-Abonnement für {business_name} wurde beendet. "
        "Telefon- und SMS-Bestellungen werden nicht mehr angenommen."
    )
    return await _send_transactional(
        providers, email,
        "Ihr EATECH-Abonnement wurde beendet",
        _wrap_html("Abonnement beendet", body),
        body + "\n\n-- EATECH",
    )


async def send_trial_ending(
    providers: Providers,
    email: str,
    business_name: str,
    trial_end: Optional[str] = None,
) -> dict:
    when = f" am {trial_end}" if trial_end else " in Kürze"
    body = (
        f"Die Testphase von {business_name} endet{when}. "
        "Hinterlegen Sie eine Zahlungsmethode, damit Ihr Service ohne Unterbruch weiterläuft."
    )
    return await _send_transactional(
        providers, email,
        "Ihre EATECH-Testphase endet bald",
        _wrap_html("Testphase endet bald", body),
        body + "\n\n-- EATECH",
    )


async def send_invoice_payment_failed(
    providers: Providers,
    email: str,
    business_name: str,
    amount: Optional[float],
    currency: Optional[str],
) -> dict:
    total = _format_amount(amount, currency)
    body = (
        f"Die Rechnung über {total} für {business_name} konnte nicht belastet werden. "
        "Bitte aktualisieren Sie Ihre Zahlungsmethode."
    )
    return await _send_transactional(
        providers, email,
        "Zahlung Ihrer EATECH-Rechnung fehlgeschlagen",
        _wrap_html("Rechnung nicht bezahlt", body),
        body + "\n\n-- EATECH",
    )
