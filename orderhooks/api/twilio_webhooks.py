"""
Twilio webhook endpoints - SMS, WhatsApp, IVR voice turns, transcriptions
and status callbacks. Twilio sends form-encoded data, not JSON.

Security layers (in order):
1. Signature validation (mandatory in production) - 403 before any DB access
2. Idempotency on the provider message / transcription SID
3. Audit trail (webhook_events table)

Voice turns never fail silently: any error while building the document
answers with a spoken apology in the caller's language.
"""
import logging
from enum import Enum
from typing import Optional, Type

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.config import Settings
from orderhooks.database import get_db
from orderhooks.models.message_log import MessageLog
from orderhooks.models.tenant import Tenant
from orderhooks.schemas.webhook_payloads import (
    TwilioCallStatusPayload,
    TwilioGatherPayload,
    TwilioRecordingPayload,
    TwilioSmsPayload,
    TwilioStatusPayload,
    TwilioTranscriptionPayload,
    TwilioVoicePayload,
    TwilioWhatsAppPayload,
)
from orderhooks.services import ivr
from orderhooks.services.confirmation import message_reply
from orderhooks.services.intake import (
    InboundMessage,
    IntakeService,
    find_order_by_number,
    resolve_tenant,
)
from orderhooks.services.language import detect_caller_language, tenant_default_language
from orderhooks.services.providers import Providers, get_providers
from orderhooks.services.webhook_ledger import HandlerContext, apply_once, commit_if_absent
from orderhooks.utils.alerting import AlertType, send_alert
from orderhooks.utils.phone import mask_phone, normalize_or_raw, strip_channel_prefix
from orderhooks.utils.templates import render_template
from orderhooks.utils.webhook_signatures import (
    InvalidSignature,
    compute_payload_hash,
    verify_twilio_request,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks/twilio", tags=["webhooks"])

PROVIDER = "twilio"


class TelephonyEvent(str, Enum):
    SMS_RECEIVED = "sms-received"
    WHATSAPP_RECEIVED = "whatsapp-message-received"
    VOICE_CALL_RECEIVED = "voice-call-received"
    VOICE_MENU_SELECTION = "voice-menu-selection"
    VOICE_RECORDING_COMPLETED = "voice-recording-completed"
    VOICE_ORDER_STATUS = "voice-order-status"
    VOICE_TRANSCRIPTION_READY = "voice-transcription-ready"
    MESSAGE_STATUS = "message-status"
    CALL_STATUS = "call-status"


_intake_service = IntakeService()


def get_intake_service() -> IntakeService:
    """FastAPI dependency; override to plug in other detectors."""
    return _intake_service


def _twiml(document) -> Response:
    return Response(content=str(document), media_type="text/xml")


async def _verified_form(request: Request, settings: Settings) -> tuple[bytes, dict]:
    """Read the raw body + form and enforce the Twilio signature."""
    body = await request.body()
    form_data = await request.form()
    params = {key: str(value) for key, value in form_data.items()}
    try:
        verify_twilio_request(request, params, settings)
    except InvalidSignature as e:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning("Rejected Twilio webhook from %s: %s", client_ip, str(e))
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Twilio signature rejected from {client_ip}: {e}",
            severity="warning",
        )
        raise HTTPException(status_code=403, detail="Invalid Twilio signature")
    return body, params


def _parse(model: Type[BaseModel], params: dict):
    try:
        return model.model_validate(params)
    except ValidationError as e:
        logger.warning("Malformed Twilio payload for %s: %s", model.__name__, str(e))
        raise HTTPException(status_code=400, detail="Missing required Twilio fields")


async def _call_context(
    db: AsyncSession, payload: TwilioVoicePayload, settings: Settings,
) -> tuple[Optional[Tenant], ivr.CallContext]:
    """Rebuild the per-turn call context from the request, tenant and caller."""
    region = settings.default_phone_region
    tenant = await resolve_tenant(db, payload.To, region)
    caller = normalize_or_raw(payload.From, region)
    default = tenant_default_language(tenant, settings.default_language)
    language = await detect_caller_language(
        db, caller, settings.area_code_languages, default,
        tenant_id=tenant.id if tenant is not None else None,
    )
    if tenant is None:
        return None, ivr.CallContext(
            call_sid=payload.CallSid, caller=caller, dialed=payload.To,
            language=language, call_status=payload.CallStatus,
        )
    return tenant, ivr.CallContext(
        call_sid=payload.CallSid,
        caller=caller,
        dialed=payload.To,
        language=language,
        call_status=payload.CallStatus,
        transfer_phone=tenant.phone_number,
        business_name=tenant.name,
        address=tenant.address,
        opening_hours=tenant.opening_hours,
    )


async def _record_turn(
    db: AsyncSession,
    call_sid: str,
    event: TelephonyEvent,
    params: dict,
    body: bytes,
    settings: Settings,
) -> None:
    """
    Audit a voice turn. Twilio gives turns no id of their own, so the call SID,
    the turn type and the payload hash form the key. A repeat is audit-only:
    the document is rebuilt from the request either way.
    """
    payload_hash = compute_payload_hash(body)
    try:
        await commit_if_absent(
            db,
            provider=PROVIDER,
            event_id=f"{call_sid}:{event.value}:{payload_hash[:12]}",
            event_type=event.value,
            raw_payload=params,
            payload_hash=payload_hash,
            environment=settings.app_env,
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Failed to audit voice turn %s for %s: %s", event.value, call_sid, str(e))


# === messaging ===

@router.post("/sms")
async def twilio_sms(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
    intake: IntakeService = Depends(get_intake_service),
):
    """Inbound SMS: order or inquiry, answered inline with TwiML."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioSmsPayload, params)
    region = settings.default_phone_region

    language = settings.default_language
    try:
        tenant = await resolve_tenant(db, payload.To, region)
        language = intake.detect_language(payload.Body, tenant_default_language(tenant, settings.default_language))
        message = InboundMessage(
            channel="sms",
            from_phone=normalize_or_raw(payload.From, region),
            to_phone=normalize_or_raw(payload.To, region),
            body=payload.Body,
            message_sid=payload.MessageSid,
            reply_to=payload.From,
            country=payload.FromCountry,
            city=payload.FromCity,
        )
        ctx = HandlerContext(db=db, providers=providers, event_id=payload.MessageSid)
        outcome = await apply_once(
            ctx,
            lambda c: intake.handle_message(c, tenant, message),
            provider=PROVIDER,
            event_id=payload.MessageSid,
            event_type=TelephonyEvent.SMS_RECEIVED.value,
            raw_payload=params,
            payload_hash=compute_payload_hash(body),
            environment=settings.app_env,
        )
    except Exception as e:
        await db.rollback()
        logger.error(
            "SMS webhook error for %s: %s", payload.MessageSid, str(e),
            exc_info=True, extra={"event_id": payload.MessageSid, "provider": PROVIDER},
        )
        return _twiml(message_reply(render_template("message", language, category="apology")))

    if outcome.duplicate:
        return _twiml(message_reply(None))
    return _twiml(message_reply(outcome.result.reply))


@router.post("/whatsapp")
async def twilio_whatsapp(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
    intake: IntakeService = Depends(get_intake_service),
):
    """Inbound WhatsApp: replies go out through the REST API after commit."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioWhatsAppPayload, params)
    region = settings.default_phone_region

    language = settings.default_language
    try:
        tenant = await resolve_tenant(db, strip_channel_prefix(payload.To), region)
        language = intake.detect_language(payload.Body, tenant_default_language(tenant, settings.default_language))
        message = InboundMessage(
            channel="whatsapp",
            from_phone=normalize_or_raw(payload.From, region),
            to_phone=normalize_or_raw(payload.To, region),
            body=payload.Body,
            message_sid=payload.MessageSid,
            reply_to=payload.From,
            profile_name=payload.ProfileName,
            country=payload.FromCountry,
            city=payload.FromCity,
            media_url=payload.MediaUrl0,
            media_type=payload.MediaContentType0,
        )
        ctx = HandlerContext(db=db, providers=providers, event_id=payload.MessageSid)
        await apply_once(
            ctx,
            lambda c: intake.handle_message(c, tenant, message),
            provider=PROVIDER,
            event_id=payload.MessageSid,
            event_type=TelephonyEvent.WHATSAPP_RECEIVED.value,
            raw_payload=params,
            payload_hash=compute_payload_hash(body),
            environment=settings.app_env,
        )
    except Exception as e:
        await db.rollback()
        logger.error(
            "WhatsApp webhook error for %s: %s", payload.MessageSid, str(e),
            exc_info=True, extra={"event_id": payload.MessageSid, "provider": PROVIDER},
        )
        return _twiml(message_reply(render_template("message", language, category="apology")))

    return _twiml(message_reply(None))


@router.post("/sms/status")
async def twilio_message_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Delivery status callback for outbound SMS / WhatsApp."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioStatusPayload, params)

    async def _apply(ctx: HandlerContext) -> Optional[MessageLog]:
        result = await ctx.db.execute(
            select(MessageLog).where(MessageLog.message_sid == payload.MessageSid).limit(1)
        )
        log = result.scalar_one_or_none()
        if log is None:
            logger.info("Status %s for unknown message %s", payload.MessageStatus, payload.MessageSid)
            return None
        log.delivery_status = payload.MessageStatus
        log.error_code = payload.ErrorCode
        await ctx.db.flush()
        return log

    if payload.ErrorCode:
        logger.warning(
            "Message %s to %s %s: error %s",
            payload.MessageSid, mask_phone(payload.To), payload.MessageStatus, payload.ErrorCode,
        )

    ctx = HandlerContext(db=db, providers=providers, event_id=payload.MessageSid)
    await apply_once(
        ctx, _apply,
        provider=PROVIDER,
        event_id=f"{payload.MessageSid}:{payload.MessageStatus}",
        event_type=TelephonyEvent.MESSAGE_STATUS.value,
        raw_payload=params,
        payload_hash=compute_payload_hash(body),
        environment=settings.app_env,
    )
    return PlainTextResponse("OK")


# === voice ===

@router.post("/voice")
async def twilio_voice(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Incoming call: greeting + main menu."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioVoicePayload, params)

    language = settings.default_language
    try:
        _, call = await _call_context(db, payload, settings)
        language = call.language
        state, response = ivr.greet(call)
        logger.info(
            "Voice call %s from %s (%s): %s -> %s",
            payload.CallSid, mask_phone(call.caller), language, payload.CallStatus, state.value,
            extra={"call_sid": payload.CallSid},
        )
        await _record_turn(db, payload.CallSid, TelephonyEvent.VOICE_CALL_RECEIVED, params, body, settings)
    except Exception as e:
        await db.rollback()
        logger.error("Voice webhook error for %s: %s", payload.CallSid, str(e), exc_info=True)
        return _twiml(ivr.apology_response(language, redirect=False))
    return _twiml(response)


@router.post("/voice/menu")
async def twilio_voice_menu(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Main menu keypress."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioGatherPayload, params)

    language = settings.default_language
    try:
        _, call = await _call_context(db, payload, settings)
        language = call.language
        state, response = ivr.select_menu(payload.Digits, call)
        logger.info(
            "Voice menu %s: digits=%s -> %s", payload.CallSid, payload.Digits, state.value,
            extra={"call_sid": payload.CallSid},
        )
        await _record_turn(db, payload.CallSid, TelephonyEvent.VOICE_MENU_SELECTION, params, body, settings)
    except Exception as e:
        await db.rollback()
        logger.error("Voice menu webhook error for %s: %s", payload.CallSid, str(e), exc_info=True)
        return _twiml(ivr.apology_response(language, redirect=True))
    return _twiml(response)


@router.post("/voice/order")
async def twilio_voice_order(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Recording finished: thank the caller and hang up."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioRecordingPayload, params)

    language = settings.default_language
    try:
        _, call = await _call_context(db, payload, settings)
        language = call.language
        state, response = ivr.recording_complete(call)
        logger.info(
            "Recording %s complete for call %s (%ss)",
            payload.RecordingSid, payload.CallSid, payload.RecordingDuration,
            extra={"call_sid": payload.CallSid},
        )
        await _record_turn(db, payload.CallSid, TelephonyEvent.VOICE_RECORDING_COMPLETED, params, body, settings)
    except Exception as e:
        await db.rollback()
        logger.error("Voice order webhook error for %s: %s", payload.CallSid, str(e), exc_info=True)
        return _twiml(ivr.apology_response(language, redirect=False))
    return _twiml(response)


@router.post("/voice/order-status")
async def twilio_voice_order_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Order number keyed in after menu option 2."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioGatherPayload, params)

    language = settings.default_language
    try:
        tenant, call = await _call_context(db, payload, settings)
        language = call.language
        order_number = (payload.Digits or "").strip().rstrip("#")
        status = None
        if tenant is not None and order_number:
            order = await find_order_by_number(db, tenant.id, order_number)
            status = order.status if order is not None else None
        state, response = ivr.order_status(call, order_number, status)
        await _record_turn(db, payload.CallSid, TelephonyEvent.VOICE_ORDER_STATUS, params, body, settings)
    except Exception as e:
        await db.rollback()
        logger.error("Voice order-status webhook error for %s: %s", payload.CallSid, str(e), exc_info=True)
        return _twiml(ivr.apology_response(language, redirect=True))
    return _twiml(response)


@router.post("/voice/transcription")
async def twilio_voice_transcription(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
    intake: IntakeService = Depends(get_intake_service),
):
    """Transcribed recording: create the voice order, confirm by SMS after commit."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioTranscriptionPayload, params)
    region = settings.default_phone_region
    event_id = payload.TranscriptionSid or payload.RecordingSid or payload.CallSid

    logger.info(
        "Voice transcription received for call %s (%d chars)",
        payload.CallSid, len(payload.TranscriptionText or ""),
        extra={"call_sid": payload.CallSid},
    )

    try:
        tenant = await resolve_tenant(db, payload.To, region)
        caller = normalize_or_raw(payload.From, region)
        default = tenant_default_language(tenant, settings.default_language)
        language = await detect_caller_language(
            db, caller, settings.area_code_languages, default,
            tenant_id=tenant.id if tenant is not None else None,
        )

        ctx = HandlerContext(db=db, providers=providers, event_id=event_id)
        await apply_once(
            ctx,
            lambda c: intake.handle_transcription(
                c, tenant, caller, payload.TranscriptionText or "", payload.CallSid,
                recording_sid=payload.RecordingSid,
                recording_url=payload.RecordingUrl,
                language=language,
            ),
            provider=PROVIDER,
            event_id=event_id,
            event_type=TelephonyEvent.VOICE_TRANSCRIPTION_READY.value,
            raw_payload=params,
            payload_hash=compute_payload_hash(body),
            environment=settings.app_env,
        )
    except Exception as e:
        await db.rollback()
        logger.error(
            "Voice transcription webhook error for %s: %s", payload.CallSid, str(e),
            exc_info=True, extra={"call_sid": payload.CallSid},
        )
        await send_alert(
            AlertType.TRANSCRIPTION_FAILED,
            f"Transcription for call {payload.CallSid} not processed: {e}",
        )
        return PlainTextResponse("Error processing transcription", status_code=500)

    return PlainTextResponse("OK")


@router.post("/voice/status")
async def twilio_call_status(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Providers = Depends(get_providers),
):
    """Call lifecycle callback - logged and audited."""
    settings = providers.settings
    body, params = await _verified_form(request, settings)
    payload = _parse(TwilioCallStatusPayload, params)

    logger.info(
        "Call %s status %s (duration %ss)",
        payload.CallSid, payload.CallStatus, payload.CallDuration,
        extra={"call_sid": payload.CallSid},
    )
    await commit_if_absent(
        db,
        provider=PROVIDER,
        event_id=f"{payload.CallSid}:{payload.CallStatus}",
        event_type=TelephonyEvent.CALL_STATUS.value,
        raw_payload=params,
        payload_hash=compute_payload_hash(body),
        environment=settings.app_env,
    )
    return PlainTextResponse("OK")
