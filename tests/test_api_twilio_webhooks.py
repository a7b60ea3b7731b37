"""
Tests for orderhooks/api/twilio_webhooks.py - SMS / WhatsApp intake,
IVR turns, transcriptions, status callbacks and signature enforcement.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from twilio.request_validator import RequestValidator

from orderhooks.models.customer import Customer
from orderhooks.models.message_log import MessageLog
from orderhooks.models.order import Order
from orderhooks.models.webhook_event import WebhookEvent

TENANT_PHONE = "+41445550000"
WHATSAPP_SENDER = "+41445550001"
TWILIO_TEST_TOKEN = "twilio_test_token"
CALLER_MOBILE = "+41791234567"
CALLER_GENEVA = "+41221234567"


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


def _sms(body: str, sid: str = "SM_in_1", sender: str = CALLER_MOBILE) -> dict:
    return {"MessageSid": sid, "From": sender, "To": TENANT_PHONE, "Body": body, "NumMedia": "0"}


def _call(call_sid: str = "CA_test_1", caller: str = CALLER_MOBILE, **extra) -> dict:
    form = {"CallSid": call_sid, "From": caller, "To": TENANT_PHONE, "CallStatus": "ringing"}
    form.update(extra)
    return form


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------


class TestSms:
    @pytest.mark.asyncio
    async def test_german_pickup_order(self, client, db, tenant, menu):
        resp = await client.post(
            "/webhooks/twilio/sms",
            data=_sms("Ich möchte eine Pizza Margherita und ein Tiramisu zum Abholen"),
        )

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/xml")
        assert "<Message>" in resp.text
        assert "Bestellnummer" in resp.text

        order = (await db.execute(select(Order))).scalar_one()
        assert order.source == "sms"
        assert order.fulfillment_type == "pickup"
        assert order.status == "pending"
        assert order.customer_phone == CALLER_MOBILE
        assert order.message_sid == "SM_in_1"
        assert {item["name"] for item in order.items} == {"Pizza Margherita", "Tiramisu"}
        assert order.order_number in resp.text

        log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.direction == "inbound"
        assert log.classification == "order"

    @pytest.mark.asyncio
    async def test_inquiry_gets_opening_hours(self, client, db, tenant):
        resp = await client.post("/webhooks/twilio/sms", data=_sms("Was sind eure Öffnungszeiten?"))

        assert resp.status_code == 200
        assert "Mo-So 11:00-23:00" in resp.text
        assert await _count(db, Order) == 0

    @pytest.mark.asyncio
    async def test_duplicate_message_sid_gets_empty_reply(self, client, db, tenant, menu):
        form = _sms("Ich möchte eine Pizza Margherita bestellen")
        await client.post("/webhooks/twilio/sms", data=form)
        second = await client.post("/webhooks/twilio/sms", data=form)

        assert second.status_code == 200
        assert "<Message>" not in second.text
        assert await _count(db, Order) == 1
        assert await _count(db, WebhookEvent) == 1

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, client):
        resp = await client.post("/webhooks/twilio/sms", data={"Body": "hallo"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_handler_error_returns_apology(self, client, db, tenant):
        with patch(
            "orderhooks.services.intake.IntakeService.handle_message",
            new_callable=AsyncMock,
            side_effect=RuntimeError("db gone"),
        ):
            resp = await client.post("/webhooks/twilio/sms", data=_sms("Je voudrais commander"))

        assert resp.status_code == 200
        assert "une erreur est survenue" in resp.text
        assert await _count(db, WebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_inconclusive_text_uses_tenant_language(self, client, db, tenant, menu):
        tenant.default_language = "fr"
        await db.commit()

        resp = await client.post("/webhooks/twilio/sms", data=_sms("Pizza Margherita order"))

        assert resp.status_code == 200
        assert "Merci pour votre commande" in resp.text
        assert await _count(db, Order) == 1


# ---------------------------------------------------------------------------
# WhatsApp
# ---------------------------------------------------------------------------


class TestWhatsApp:
    @pytest.mark.asyncio
    async def test_order_creates_customer_and_confirms(self, client, db, tenant, menu, twilio_client):
        form = {
            "MessageSid": "SM_wa_1",
            "From": f"whatsapp:{CALLER_MOBILE}",
            "To": f"whatsapp:{TENANT_PHONE}",
            "Body": "Je voudrais commander une pizza margherita avec livraison",
            "ProfileName": "Marie",
        }
        resp = await client.post("/webhooks/twilio/whatsapp", data=form)

        assert resp.status_code == 200
        assert "<Message>" not in resp.text

        order = (await db.execute(select(Order))).scalar_one()
        assert order.source == "whatsapp"
        assert order.fulfillment_type == "delivery"
        assert order.customer_name == "Marie"

        customer = (await db.execute(select(Customer))).scalar_one()
        assert customer.name == "Marie"
        assert customer.language == "fr"
        assert customer.phone == CALLER_MOBILE

        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["to"] == f"whatsapp:{CALLER_MOBILE}"
        assert kwargs["from_"] == f"whatsapp:{WHATSAPP_SENDER}"
        assert "Commande confirmée" in kwargs["body"]
        assert kwargs["persistent_action"] == ["track_order", "contact_restaurant"]

    @pytest.mark.asyncio
    async def test_non_order_sends_menu(self, client, db, tenant, twilio_client):
        form = {
            "MessageSid": "SM_wa_2",
            "From": f"whatsapp:{CALLER_MOBILE}",
            "To": f"whatsapp:{TENANT_PHONE}",
            "Body": "Hallo",
        }
        resp = await client.post("/webhooks/twilio/whatsapp", data=form)

        assert resp.status_code == 200
        assert await _count(db, Order) == 0
        kwargs = twilio_client.messages.create.call_args.kwargs
        assert "Pizzeria Roma" in kwargs["body"]
        assert "view_menu" in kwargs["persistent_action"]

    @pytest.mark.asyncio
    async def test_menu_in_tenant_language(self, client, db, tenant, twilio_client):
        tenant.default_language = "it"
        await db.commit()
        form = {
            "MessageSid": "SM_wa_3",
            "From": f"whatsapp:{CALLER_MOBILE}",
            "To": f"whatsapp:{TENANT_PHONE}",
            "Body": "Hallo",
        }
        resp = await client.post("/webhooks/twilio/whatsapp", data=form)

        assert resp.status_code == 200
        assert "Benvenuti a Pizzeria Roma" in twilio_client.messages.create.call_args.kwargs["body"]


# ---------------------------------------------------------------------------
# Voice IVR
# ---------------------------------------------------------------------------


class TestVoice:
    @pytest.mark.asyncio
    async def test_greeting_in_german_by_default(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice", data=_call())

        assert resp.status_code == 200
        assert "Willkommen bei Pizzeria Roma" in resp.text
        assert 'language="de-DE"' in resp.text
        assert "<Gather" in resp.text
        assert 'numDigits="1"' in resp.text
        assert 'action="/webhooks/twilio/voice/menu"' in resp.text

    @pytest.mark.asyncio
    async def test_geneva_caller_greeted_in_french(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice", data=_call(caller=CALLER_GENEVA))

        assert resp.status_code == 200
        assert "Bienvenue chez Pizzeria Roma" in resp.text
        assert 'language="fr-FR"' in resp.text

    @pytest.mark.asyncio
    async def test_customer_preference_beats_area_code(self, client, db, tenant):
        db.add(Customer(tenant_id=tenant.id, phone=CALLER_GENEVA, language="it"))
        await db.commit()

        resp = await client.post("/webhooks/twilio/voice", data=_call(caller=CALLER_GENEVA))

        assert "Benvenuti a Pizzeria Roma" in resp.text

    @pytest.mark.asyncio
    async def test_completed_call_gets_empty_document(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice", data=_call(CallStatus="completed"))

        assert resp.status_code == 200
        assert "<Say" not in resp.text

    @pytest.mark.asyncio
    async def test_digit_one_starts_transcribed_recording(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice/menu", data=_call(Digits="1"))

        assert resp.status_code == 200
        assert "<Record" in resp.text
        assert 'transcribe="true"' in resp.text
        assert 'transcribeCallback="/webhooks/twilio/voice/transcription"' in resp.text
        assert 'maxLength="120"' in resp.text

    @pytest.mark.asyncio
    async def test_invalid_digit_redirects_to_greeting(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice/menu", data=_call(Digits="5"))

        assert resp.status_code == 200
        assert "Ungültige Auswahl" in resp.text
        assert "<Redirect" in resp.text
        assert "/webhooks/twilio/voice</Redirect>" in resp.text

    @pytest.mark.asyncio
    async def test_digit_nine_dials_restaurant(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice/menu", data=_call(Digits="9"))
        assert "<Dial>+41445550099</Dial>" in resp.text

    @pytest.mark.asyncio
    async def test_order_status_lookup(self, client, tenant, order):
        resp = await client.post(
            "/webhooks/twilio/voice/order-status",
            data=_call(Digits="482913#"),
        )

        assert resp.status_code == 200
        assert "4 8 2 9 1 3" in resp.text
        assert "bestätigt" in resp.text

    @pytest.mark.asyncio
    async def test_unknown_order_number(self, client, tenant):
        resp = await client.post("/webhooks/twilio/voice/order-status", data=_call(Digits="999999"))
        assert "keine Bestellung" in resp.text

    @pytest.mark.asyncio
    async def test_recording_complete_hangs_up(self, client, tenant):
        resp = await client.post(
            "/webhooks/twilio/voice/order",
            data=_call(RecordingSid="RE_1", RecordingUrl="https://api.twilio.com/rec/RE_1"),
        )
        assert "Vielen Dank" in resp.text
        assert "<Hangup" in resp.text

    @pytest.mark.asyncio
    async def test_error_answers_with_spoken_apology(self, client, tenant):
        with patch("orderhooks.services.ivr.select_menu", side_effect=RuntimeError("boom")):
            resp = await client.post("/webhooks/twilio/voice/menu", data=_call(caller=CALLER_GENEVA, Digits="1"))

        assert resp.status_code == 200
        assert "Une erreur est survenue" in resp.text
        assert "<Redirect" in resp.text


# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------


def _transcription(text: str, **extra) -> dict:
    form = {
        "CallSid": "CA_test_1",
        "From": CALLER_MOBILE,
        "To": TENANT_PHONE,
        "TranscriptionSid": "TR_test_1",
        "TranscriptionText": text,
        "TranscriptionStatus": "completed",
        "RecordingSid": "RE_test_1",
        "RecordingUrl": "https://api.twilio.com/rec/RE_test_1",
    }
    form.update(extra)
    return form


class TestTranscription:
    @pytest.mark.asyncio
    async def test_creates_voice_order_and_sends_sms(self, client, db, tenant, menu, twilio_client):
        resp = await client.post(
            "/webhooks/twilio/voice/transcription",
            data=_transcription("Ich hätte gerne zwei Pizza Margherita bitte"),
        )

        assert resp.status_code == 200
        assert resp.text == "OK"

        order = (await db.execute(select(Order))).scalar_one()
        assert order.source == "voice"
        assert order.call_sid == "CA_test_1"
        assert order.recording_sid == "RE_test_1"
        assert order.transcription.startswith("Ich hätte gerne")
        assert order.items[0]["name"] == "Pizza Margherita"
        assert order.items[0]["quantity"] == 1

        kwargs = twilio_client.messages.create.call_args.kwargs
        assert kwargs["to"] == CALLER_MOBILE
        assert kwargs["from_"] == TENANT_PHONE
        assert order.order_number in kwargs["body"]

    @pytest.mark.asyncio
    async def test_sms_failure_keeps_order(self, client, db, tenant, menu, twilio_client):
        """A failing confirmation send never undoes the order."""
        twilio_client.messages.create.side_effect = Exception("Twilio unavailable")

        resp = await client.post(
            "/webhooks/twilio/voice/transcription",
            data=_transcription("Eine Pizza Margherita bitte"),
        )

        assert resp.status_code == 200
        assert await _count(db, Order) == 1
        assert await _count(db, WebhookEvent) == 1
        outbound = (await db.execute(select(MessageLog).where(MessageLog.direction == "outbound"))).scalar_one()
        assert outbound.delivery_status == "failed"

    @pytest.mark.asyncio
    async def test_empty_transcription_creates_nothing(self, client, db, tenant):
        resp = await client.post("/webhooks/twilio/voice/transcription", data=_transcription(""))

        assert resp.status_code == 200
        assert await _count(db, Order) == 0
        assert await _count(db, WebhookEvent) == 1

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, client, db, tenant, menu):
        form = _transcription("Eine Pizza Margherita bitte")
        await client.post("/webhooks/twilio/voice/transcription", data=form)
        await client.post("/webhooks/twilio/voice/transcription", data=form)

        assert await _count(db, Order) == 1

    @pytest.mark.asyncio
    async def test_failure_returns_500(self, client, db, tenant):
        with patch(
            "orderhooks.services.intake.IntakeService.handle_transcription",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            resp = await client.post(
                "/webhooks/twilio/voice/transcription",
                data=_transcription("Eine Pizza"),
            )

        assert resp.status_code == 500
        assert resp.text == "Error processing transcription"
        assert await _count(db, WebhookEvent) == 0


# ---------------------------------------------------------------------------
# Status callbacks
# ---------------------------------------------------------------------------


class TestStatusCallbacks:
    @pytest.mark.asyncio
    async def test_message_status_updates_log(self, client, db, tenant):
        db.add(MessageLog(
            tenant_id=tenant.id, direction="outbound", channel="sms",
            to_phone=CALLER_MOBILE, message_sid="SM_out_123", delivery_status="queued",
        ))
        await db.commit()

        resp = await client.post(
            "/webhooks/twilio/sms/status",
            data={"MessageSid": "SM_out_123", "MessageStatus": "undelivered", "ErrorCode": "30007"},
        )

        assert resp.status_code == 200
        log = (await db.execute(select(MessageLog))).scalar_one()
        assert log.delivery_status == "undelivered"
        assert log.error_code == "30007"

    @pytest.mark.asyncio
    async def test_call_status_recorded_once(self, client, db):
        form = {"CallSid": "CA_test_1", "CallStatus": "completed", "CallDuration": "42"}
        await client.post("/webhooks/twilio/voice/status", data=form)
        resp = await client.post("/webhooks/twilio/voice/status", data=form)

        assert resp.status_code == 200
        event = (await db.execute(select(WebhookEvent))).scalar_one()
        assert event.event_id == "CA_test_1:completed"


# ---------------------------------------------------------------------------
# Signature enforcement
# ---------------------------------------------------------------------------


class TestTwilioSignature:
    @pytest.mark.asyncio
    async def test_missing_signature_rejected_when_enforced(self, client, db, settings, tenant):
        settings.twilio_validate_signatures = True

        resp = await client.post("/webhooks/twilio/sms", data=_sms("Ich möchte bestellen"))

        assert resp.status_code == 403
        assert await _count(db, WebhookEvent) == 0
        assert await _count(db, MessageLog) == 0

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, client, settings, tenant):
        settings.twilio_validate_signatures = True
        form = _call()
        signature = RequestValidator(TWILIO_TEST_TOKEN).compute_signature(
            "https://test/webhooks/twilio/voice", form,
        )

        resp = await client.post(
            "/webhooks/twilio/voice", data=form, headers={"X-Twilio-Signature": signature},
        )

        assert resp.status_code == 200
        assert "Willkommen" in resp.text

    @pytest.mark.asyncio
    async def test_production_enforces_by_default(self, settings):
        settings.app_env = "production"
        assert settings.enforce_twilio_signatures is True
        settings.twilio_validate_signatures = False
        assert settings.enforce_twilio_signatures is False
