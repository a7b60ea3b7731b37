"""
Tests for orderhooks/services/confirmation.py - channel-specific order
acknowledgements and their outbound message log rows.
"""
import pytest
from sqlalchemy import select

from orderhooks.models.message_log import MessageLog
from orderhooks.services.confirmation import (
    message_reply,
    send_sms_confirmation,
    send_whatsapp_confirmation,
    send_whatsapp_menu,
)


class TestMessageReply:
    def test_with_text(self):
        xml = message_reply("Danke!")
        assert "<Message>Danke!</Message>" in xml

    def test_empty(self):
        assert "<Message" not in message_reply(None)
        assert "<Message" not in message_reply("")


class TestSmsConfirmation:
    @pytest.mark.asyncio
    async def test_sends_from_tenant_number_and_logs(self, db, providers, twilio_client, tenant):
        result = await send_sms_confirmation(providers, db, tenant, "+41791234567", "123456", "en")

        assert result["sid"] == "SM_out_123"
        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["from_"] == tenant.twilio_phone
        assert "Order number: 123456" in kwargs["body"]

        log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.direction == "outbound"
        assert log.channel == "sms"
        assert log.message_sid == "SM_out_123"
        assert log.delivery_status == "queued"

    @pytest.mark.asyncio
    async def test_failed_send_still_logged(self, db, providers, twilio_client, tenant):
        twilio_client.messages.create.side_effect = RuntimeError("Twilio down")

        result = await send_sms_confirmation(providers, db, tenant, "+41791234567", "123456", "de")

        assert result["status"] == "failed"
        log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.delivery_status == "failed"
        assert log.message_sid is None


class TestWhatsApp:
    @pytest.mark.asyncio
    async def test_order_confirmation_actions(self, db, providers, twilio_client, tenant):
        await send_whatsapp_confirmation(providers, db, tenant.id, "whatsapp:+41791234567", "123456", "fr")

        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["persistent_action"] == ["track_order", "contact_restaurant"]
        assert "Commande confirmée" in kwargs["body"]
        log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.channel == "whatsapp"

    @pytest.mark.asyncio
    async def test_menu_uses_business_name(self, db, providers, twilio_client, tenant):
        await send_whatsapp_menu(providers, db, tenant.id, "+41791234567", "it", business_name="Pizzeria Roma")

        kwargs = twilio_client.messages.create.call_args.kwargs
        assert "Benvenuti a Pizzeria Roma" in kwargs["body"]
        assert kwargs["persistent_action"] == ["view_menu", "place_order", "track_order", "contact_us"]
