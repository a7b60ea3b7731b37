"""
Stripe webhook endpoint.

Order of operations:
1. Read the raw body and verify Stripe-Signature (400 on failure, no DB access)
2. Parse JSON only after verification
3. Apply the event at most once through the webhook ledger
4. Acknowledge with {"received": true}

A handler crash answers 500 so Stripe redelivers; with
STRIPE_ACK_ON_HANDLER_ERROR the crash is acknowledged with 200 instead.
Either way the transaction is rolled back and no audit row is written.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.database import get_db
from orderhooks.schemas.api_responses import StripeWebhookResponse
from orderhooks.schemas.webhook_payloads import StripeEventEnvelope
from orderhooks.services import billing
from orderhooks.services.providers import Providers, get_providers
from orderhooks.services.webhook_ledger import HandlerContext, apply_once
from orderhooks.utils.alerting import AlertType, send_alert
from orderhooks.utils.webhook_signatures import (
    InvalidSignature,
    compute_payload_hash,
    verify_stripe_signature,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=StripeWebhookResponse,
    response_model_exclude_none=True,
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    settings = providers.settings
    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        verify_stripe_signature(
            body, sig_header,
            settings.stripe_webhook_secret,
            settings.stripe_signature_tolerance_seconds,
        )
    except InvalidSignature as e:
        logger.warning("Stripe webhook signature verification failed: %s", str(e))
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Stripe signature rejected: {e}",
            severity="warning",
        )
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        raw_event = json.loads(body)
        envelope = StripeEventEnvelope.model_validate(raw_event)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Stripe webhook payload invalid: %s", str(e))
        raise HTTPException(status_code=400, detail="Webhook Error: invalid payload")

    logger.info(
        "Stripe webhook received: %s %s livemode=%s",
        envelope.type, envelope.id, envelope.livemode,
        extra={"event_id": envelope.id, "provider": "stripe"},
    )

    ctx = HandlerContext(db=db, providers=providers, event_id=envelope.id)
    try:
        outcome = await apply_once(
            ctx,
            lambda c: billing.handle_event(c, raw_event),
            provider="stripe",
            event_id=envelope.id,
            event_type=envelope.type,
            raw_payload=raw_event,
            payload_hash=compute_payload_hash(body),
            livemode=envelope.livemode,
            environment=settings.app_env,
        )
    except Exception as e:
        await db.rollback()
        logger.error(
            "Error processing Stripe webhook %s (%s): %s",
            envelope.id, envelope.type, str(e),
            exc_info=True,
            extra={"event_id": envelope.id, "provider": "stripe"},
        )
        await send_alert(
            AlertType.STRIPE_HANDLER_FAILED,
            f"Stripe {envelope.type} handler failed: {e}",
            extra={"event_id": envelope.id},
        )
        if settings.stripe_ack_on_handler_error:
            return StripeWebhookResponse(received=True, error="Webhook processing failed")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if outcome.duplicate:
        return StripeWebhookResponse(received=True, duplicate=True)
    return StripeWebhookResponse(received=True)
