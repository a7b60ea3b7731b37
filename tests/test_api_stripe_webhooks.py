"""
Tests for orderhooks/api/stripe_webhooks.py - signature gate, idempotent
application, metadata safety and the handler-error policy.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from orderhooks.models.order import Order
from orderhooks.models.payment import Payment, Refund
from orderhooks.models.webhook_event import WebhookEvent


async def _count(db, model) -> int:
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar_one()


def _intent(order, amount=1850, **extra) -> dict:
    obj = {
        "id": "pi_test_123",
        "object": "payment_intent",
        "amount": amount,
        "currency": "chf",
        "payment_method_types": ["card"],
        "metadata": {"tenantId": str(order.tenant_id), "orderId": str(order.id)},
    }
    obj.update(extra)
    return obj


async def _post(client, body: str, signature: str):
    return await client.post(
        "/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


# ---------------------------------------------------------------------------
# Signature gate
# ---------------------------------------------------------------------------


class TestSignature:
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, client, db):
        resp = await client.post("/webhooks/stripe", content=b'{"id": "evt_1"}')
        assert resp.status_code == 400
        assert await _count(db, WebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client, db, stripe_event, stripe_signer):
        body = stripe_event("customer.updated", {"id": "cus_1"})
        resp = await _post(client, body, stripe_signer(body, secret="whsec_other"))
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("Webhook Error:")

    @pytest.mark.asyncio
    async def test_tampered_body_changes_nothing(self, client, db, order, stripe_event, stripe_signer):
        """A body edited after signing is rejected before any state change."""
        order_id = order.id
        body = stripe_event("payment_intent.succeeded", _intent(order))
        signature = stripe_signer(body)
        tampered = body.replace("1850", "1")

        resp = await _post(client, tampered, signature)

        assert resp.status_code == 400
        assert await _count(db, WebhookEvent) == 0
        assert await _count(db, Payment) == 0
        result = await db.execute(select(Order.payment_status).where(Order.id == order_id))
        assert result.scalar_one() == "pending"

    @pytest.mark.asyncio
    async def test_expired_timestamp_rejected(self, client, stripe_event, stripe_signer):
        body = stripe_event("customer.updated", {"id": "cus_1"})
        resp = await _post(client, body, stripe_signer(body, timestamp=1000000000))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unconfigured_secret_rejects_everything(self, client, settings, stripe_event, stripe_signer):
        settings.stripe_webhook_secret = ""
        body = stripe_event("customer.updated", {"id": "cus_1"})
        resp = await _post(client, body, stripe_signer(body))
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_signed_garbage_is_invalid_payload(self, client, stripe_signer):
        body = "not json"
        resp = await _post(client, body, stripe_signer(body))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Webhook Error: invalid payload"


# ---------------------------------------------------------------------------
# Payment flow + idempotency
# ---------------------------------------------------------------------------


class TestPaymentIntent:
    @pytest.mark.asyncio
    async def test_succeeded_marks_order_paid(self, client, db, order, stripe_event, stripe_signer, sendgrid_client):
        body = stripe_event("payment_intent.succeeded", _intent(order))
        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        assert resp.json() == {"received": True}

        await db.refresh(order)
        assert order.payment_status == "paid"
        assert order.paid_amount == 18.5
        assert order.payment_intent_id == "pi_test_123"
        assert order.payment_method == "card"

        payment = (await db.execute(select(Payment))).scalar_one()
        assert payment.amount == 18.5
        assert payment.currency == "chf"
        assert payment.status == "succeeded"

        event = (await db.execute(select(WebhookEvent))).scalar_one()
        assert event.provider == "stripe"
        assert event.event_id == "evt_test_1"
        assert event.event_type == "payment_intent.succeeded"
        assert event.livemode is False

        # Receipt goes out after commit
        sendgrid_client.send.assert_called_once()

    @pytest.mark.asyncio
    async def test_replay_applies_once(self, client, db, order, stripe_event, stripe_signer):
        """The same event delivered twice yields one transition and one audit row."""
        body = stripe_event("payment_intent.succeeded", _intent(order))

        first = await _post(client, body, stripe_signer(body))
        second = await _post(client, body, stripe_signer(body))

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json() == {"received": True, "duplicate": True}
        assert await _count(db, Payment) == 1
        assert await _count(db, WebhookEvent) == 1

    @pytest.mark.asyncio
    async def test_failed_records_error(self, client, db, order, stripe_event, stripe_signer):
        body = stripe_event(
            "payment_intent.payment_failed",
            _intent(order, last_payment_error={"message": "Your card was declined."}),
        )
        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        await db.refresh(order)
        assert order.payment_status == "failed"
        assert order.payment_error == "Your card was declined."
        assert order.payment_failed_at is not None

    @pytest.mark.asyncio
    async def test_email_failure_does_not_fail_webhook(
        self, client, db, order, stripe_event, stripe_signer, sendgrid_client,
    ):
        sendgrid_client.send.side_effect = Exception("SendGrid down")
        body = stripe_event("payment_intent.succeeded", _intent(order))

        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        await db.refresh(order)
        assert order.payment_status == "paid"


class TestMetadataSafety:
    @pytest.mark.asyncio
    async def test_missing_metadata_is_acknowledged_noop(self, client, db, order, stripe_event, stripe_signer):
        obj = {"id": "pi_no_meta", "amount": 1000, "currency": "chf", "metadata": {}}
        body = stripe_event("payment_intent.succeeded", obj)

        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        assert await _count(db, Payment) == 0
        assert await _count(db, WebhookEvent) == 1
        await db.refresh(order)
        assert order.payment_status == "pending"

    @pytest.mark.asyncio
    async def test_malformed_ids_are_acknowledged_noop(self, client, db, order, stripe_event, stripe_signer):
        obj = {"id": "pi_bad", "amount": 1000, "metadata": {"tenantId": "not-a-uuid", "orderId": "42"}}
        body = stripe_event("payment_intent.succeeded", obj)

        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        assert await _count(db, Payment) == 0

    @pytest.mark.asyncio
    async def test_unknown_event_type_recorded(self, client, db, stripe_event, stripe_signer):
        body = stripe_event("customer.source.created", {"id": "src_1"}, event_id="evt_unknown")

        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        event = (await db.execute(select(WebhookEvent))).scalar_one()
        assert event.event_type == "customer.source.created"


# ---------------------------------------------------------------------------
# Refund flow
# ---------------------------------------------------------------------------


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_converts_minor_units(self, client, db, order, stripe_event, stripe_signer):
        charge = {
            "id": "ch_test_1",
            "object": "charge",
            "amount": 1850,
            "amount_refunded": 1250,
            "currency": "chf",
            "metadata": {"tenantId": str(order.tenant_id), "orderId": str(order.id)},
            "refunds": {"data": [{"id": "re_1", "reason": "duplicate"}]},
        }
        body = stripe_event("charge.refunded", charge)

        resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        await db.refresh(order)
        assert order.refund_status == "refunded"
        assert order.refund_amount == 12.5
        assert order.refunded_at is not None

        refund = (await db.execute(select(Refund))).scalar_one()
        assert refund.amount == 12.5
        assert refund.charge_id == "ch_test_1"
        assert refund.reason == "duplicate"
        assert refund.order_id == order.id


# ---------------------------------------------------------------------------
# Handler error policy
# ---------------------------------------------------------------------------


class TestHandlerErrors:
    @pytest.mark.asyncio
    async def test_handler_crash_returns_500_without_audit(self, client, db, stripe_event, stripe_signer):
        body = stripe_event("customer.updated", {"id": "cus_1"})
        with patch(
            "orderhooks.services.billing.handle_event",
            new_callable=AsyncMock,
            side_effect=RuntimeError("database exploded"),
        ), patch("orderhooks.api.stripe_webhooks.send_alert", new_callable=AsyncMock) as alert:
            resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 500
        assert await _count(db, WebhookEvent) == 0
        alert.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_after_crash_is_applied(self, client, db, order, stripe_event, stripe_signer):
        body = stripe_event("payment_intent.succeeded", _intent(order))
        with patch(
            "orderhooks.services.billing.handle_event",
            new_callable=AsyncMock,
            side_effect=RuntimeError("transient"),
        ):
            first = await _post(client, body, stripe_signer(body))
        second = await _post(client, body, stripe_signer(body))

        assert first.status_code == 500
        assert second.status_code == 200
        assert second.json() == {"received": True}
        assert await _count(db, Payment) == 1

    @pytest.mark.asyncio
    async def test_ack_on_handler_error(self, client, db, settings, stripe_event, stripe_signer):
        settings.stripe_ack_on_handler_error = True
        body = stripe_event("customer.updated", {"id": "cus_1"})
        with patch(
            "orderhooks.services.billing.handle_event",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            resp = await _post(client, body, stripe_signer(body))

        assert resp.status_code == 200
        assert resp.json() == {"received": True, "error": "Webhook processing failed"}
        assert await _count(db, WebhookEvent) == 0

    @pytest.mark.asyncio
    async def test_response_carries_correlation_id(self, client, stripe_event, stripe_signer):
        body = stripe_event("customer.updated", {"id": "cus_1"})
        resp = await client.post(
            "/webhooks/stripe",
            content=body,
            headers={"Stripe-Signature": stripe_signer(body), "X-Correlation-ID": "corr-abc"},
        )
        assert resp.headers["X-Correlation-ID"] == "corr-abc"
