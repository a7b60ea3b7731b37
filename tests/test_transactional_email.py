"""
Transactional email tests - payment receipts and billing notices.
All SendGrid calls go through the mocked client on Providers.
"""
import pytest
from unittest.mock import MagicMock

from orderhooks.services.providers import Providers
from orderhooks.services.transactional_email import (
    _send_transactional,
    send_invoice_payment_failed,
    send_payment_confirmation,
    send_payment_failed,
    send_subscription_canceled,
    send_trial_ending,
)


def _sent_message(sendgrid_client):
    return sendgrid_client.send.call_args.args[0].get()


class TestSendTransactional:
    @pytest.mark.asyncio
    async def test_no_client_returns_error(self, settings):
        result = await _send_transactional(
            Providers(settings=settings), "user@example.com", "Subject", "<p>HTML</p>", "Text",
        )
        assert result["status"] == "error"
        assert result["message_id"] is None

    @pytest.mark.asyncio
    async def test_no_recipient_skipped(self, providers, sendgrid_client):
        result = await _send_transactional(providers, "", "Subject", "<p>HTML</p>", "Text")
        assert result["status"] == "skipped"
        sendgrid_client.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_send(self, providers, sendgrid_client):
        result = await _send_transactional(providers, "user@example.com", "Subject", "<p>HTML</p>", "Text")

        assert result == {"message_id": "sg_msg_123", "status": "sent", "error": None}
        sent = _sent_message(sendgrid_client)
        assert sent["from"]["email"] == "noreply@eatech.ch"
        assert sent["personalizations"][0]["to"][0]["email"] == "user@example.com"
        assert [c["type"] for c in sent["content"]] == ["text/plain", "text/html"]

    @pytest.mark.asyncio
    async def test_exception_returns_error(self, settings):
        sendgrid_client = MagicMock()
        sendgrid_client.send.side_effect = Exception("401 Unauthorized")
        providers = Providers(settings=settings, sendgrid=sendgrid_client)

        result = await _send_transactional(providers, "user@example.com", "Subject", "<p>HTML</p>", "Text")

        assert result["status"] == "error"
        assert "401" in result["error"]


class TestBillingEmails:
    @pytest.mark.asyncio
    async def test_payment_confirmation(self, providers, sendgrid_client):
        await send_payment_confirmation(providers, "gast@example.ch", "482913", 18.5, "chf")

        sent = _sent_message(sendgrid_client)
        assert sent["subject"] == "Zahlungsbestätigung - Bestellung 482913"
        assert "CHF 18.50" in sent["content"][0]["value"]

    @pytest.mark.asyncio
    async def test_payment_failed_with_reason(self, providers, sendgrid_client):
        await send_payment_failed(providers, "gast@example.ch", "482913", "Your card was declined.")
        assert "Grund: Your card was declined." in _sent_message(sendgrid_client)["content"][0]["value"]

    @pytest.mark.asyncio
    async def test_owner_notices(self, providers, sendgrid_client):
        await send_subscription_canceled(providers, "owner@pizzeria-roma.ch", "Pizzeria Roma")
        assert "Pizzeria Roma" in _sent_message(sendgrid_client)["content"][0]["value"]

        await send_trial_ending(providers, "owner@pizzeria-roma.ch", "Pizzeria Roma")
        assert "endet in Kürze" in _sent_message(sendgrid_client)["content"][0]["value"]

        await send_invoice_payment_failed(providers, "owner@pizzeria-roma.ch", "Pizzeria Roma", None, None)
        assert "CHF 0.00" in _sent_message(sendgrid_client)["content"][0]["value"]

    @pytest.mark.asyncio
    async def test_html_body_escapes_markup(self, providers, sendgrid_client):
        await send_payment_failed(providers, "gast@example.ch", "482913", "<script>alert(1)</script>")

        text, html_part = _sent_message(sendgrid_client)["content"]
        assert "<script>" not in html_part["value"]
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html_part["value"]
        assert "Grund: <script>alert(1)</script>" in text["value"]

    @pytest.mark.asyncio
    async def test_business_name_escaped_in_html(self, providers, sendgrid_client):
        await send_subscription_canceled(providers, "owner@example.ch", "Pasta & <b>Co</b>")

        html_part = _sent_message(sendgrid_client)["content"][1]["value"]
        assert "Pasta &amp; &lt;b&gt;Co&lt;/b&gt;" in html_part
