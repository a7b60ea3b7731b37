"""
Telephony intake - turns inbound SMS, WhatsApp messages and call
transcriptions into draft orders or canned informational replies.

Stateless per message: classify intent, extract the order, persist it,
queue the channel confirmation on the HandlerContext.
"""
import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.models.customer import Customer
from orderhooks.models.message_log import MessageLog
from orderhooks.models.order import Order
from orderhooks.models.tenant import Tenant
from orderhooks.services import confirmation
from orderhooks.services.language import (
    IntentClassifier,
    KeywordIntentClassifier,
    KeywordLanguageDetector,
    LanguageDetector,
    tenant_default_language,
)
from orderhooks.services.order_extraction import OrderDraft, extract_order_for_tenant
from orderhooks.services.webhook_ledger import HandlerContext
from orderhooks.utils.phone import mask_phone, normalize_or_raw
from orderhooks.utils.templates import (
    DEFAULT_MENU_URL,
    render_template,
    resolve_language,
    restaurant_info,
)

logger = logging.getLogger(__name__)

HOURS_KEYWORDS = ("öffnung", "hour", "heure", "orari")
MENU_KEYWORDS = ("menu", "karte", "carte")

ORDER_NUMBER_ATTEMPTS = 5


@dataclass
class InboundMessage:
    channel: str  # sms, whatsapp
    from_phone: str  # E.164, prefix stripped
    to_phone: str
    body: str
    message_sid: str
    reply_to: str = ""  # address as Twilio sent it (keeps whatsapp: prefix)
    profile_name: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None


@dataclass
class IntakeResult:
    classification: str  # order, inquiry
    language: str
    reply: str
    order: Optional[Order] = None


async def resolve_tenant(db: AsyncSession, dialed: str, default_region: str = "CH") -> Optional[Tenant]:
    """Find the tenant whose Twilio number was dialed / messaged."""
    if not dialed:
        return None
    normalized = normalize_or_raw(dialed, default_region)
    result = await db.execute(
        select(Tenant).where(Tenant.twilio_phone.in_({normalized, dialed})).limit(1)
    )
    tenant = result.scalar_one_or_none()
    if tenant is None:
        logger.warning("No tenant for dialed number %s", mask_phone(normalized))
    return tenant


async def find_customer_by_phone(
    db: AsyncSession, phone: str, tenant_id: Optional[uuid.UUID] = None,
) -> Optional[Customer]:
    if not phone:
        return None
    query = select(Customer).where(Customer.phone == phone)
    if tenant_id is not None:
        query = query.where(or_(Customer.tenant_id == tenant_id, Customer.tenant_id.is_(None)))
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


async def generate_order_number(db: AsyncSession, tenant_id: uuid.UUID) -> str:
    """Six digits, unique per tenant, so callers can key it in on the phone."""
    candidate = ""
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = str(100000 + secrets.randbelow(900000))
        result = await db.execute(
            select(Order.id).where(
                Order.tenant_id == tenant_id,
                Order.order_number == candidate,
            ).limit(1)
        )
        if result.scalar_one_or_none() is None:
            return candidate
    logger.warning("Order number collisions for tenant %s, using 8 digits", str(tenant_id)[:8])
    return str(10000000 + secrets.randbelow(90000000))


async def find_order_by_number(db: AsyncSession, tenant_id: uuid.UUID, order_number: str) -> Optional[Order]:
    result = await db.execute(
        select(Order).where(
            Order.tenant_id == tenant_id,
            Order.order_number == order_number,
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def create_order(
    db: AsyncSession,
    tenant: Tenant,
    draft: OrderDraft,
    source: str,
    customer_phone: str,
    customer: Optional[Customer] = None,
    **fields,
) -> Order:
    """Persist a draft order (status pending)."""
    order = Order(
        tenant_id=tenant.id,
        order_number=await generate_order_number(db, tenant.id),
        customer_id=customer.id if customer else None,
        customer_phone=customer_phone,
        customer_email=customer.email if customer else None,
        items=draft.items,
        fulfillment_type=draft.fulfillment_type,
        special_instructions=draft.special_instructions,
        source=source,
        status="pending",
        payment_status="pending",
        **fields,
    )
    db.add(order)
    await db.flush()
    logger.info(
        "Order %s created from %s for %s (%d items)",
        order.order_number, source, mask_phone(customer_phone), len(draft.items),
        extra={"tenant_id": str(tenant.id), "order_id": str(order.id)},
    )
    return order


class IntakeService:
    def __init__(
        self,
        language_detector: Optional[LanguageDetector] = None,
        intent_classifier: Optional[IntentClassifier] = None,
    ):
        self.language_detector = language_detector or KeywordLanguageDetector()
        self.intent_classifier = intent_classifier or KeywordIntentClassifier()

    def detect_language(self, text: str, default: Optional[str] = None) -> str:
        return resolve_language(self.language_detector.detect(text or "", default=default))

    def inquiry_reply(self, text: str, language: str, tenant: Optional[Tenant]) -> str:
        """Canned answer for non-order messages: hours, menu link, or how to order."""
        lower = (text or "").lower()
        if any(k in lower for k in HOURS_KEYWORDS):
            if tenant is not None:
                return restaurant_info(language, tenant.name, tenant.address, tenant.opening_hours)
            return restaurant_info(language)
        if any(k in lower for k in MENU_KEYWORDS):
            menu_url = (tenant.menu_url if tenant is not None else None) or DEFAULT_MENU_URL
            return render_template("menu_link", language, category="message", menu_url=menu_url)
        return render_template("inquiry_fallback", language, category="message")

    async def handle_message(
        self,
        ctx: HandlerContext,
        tenant: Optional[Tenant],
        message: InboundMessage,
    ) -> IntakeResult:
        """SMS / WhatsApp. Confirmations for WhatsApp are deferred; SMS replies inline."""
        db = ctx.db
        fallback = tenant_default_language(tenant, ctx.providers.settings.default_language)
        language = self.detect_language(message.body, fallback)
        is_order = self.intent_classifier.is_order(message.body or "")
        classification = "order" if is_order else "inquiry"
        masked = mask_phone(message.from_phone)

        logger.info(
            "%s from %s classified as %s (%s)",
            message.channel, masked, classification, language,
            extra={"tenant_id": str(tenant.id) if tenant else None},
        )

        if message.media_url:
            logger.info(
                "WhatsApp media received from %s: %s (%s)",
                masked, message.media_type, message.message_sid,
            )

        db.add(MessageLog(
            tenant_id=tenant.id if tenant else None,
            direction="inbound",
            channel=message.channel,
            from_phone=message.from_phone,
            to_phone=message.to_phone,
            body=message.body,
            message_sid=message.message_sid,
            classification=classification,
            country=message.country,
            city=message.city,
        ))

        order = None
        if is_order and tenant is not None:
            customer = await find_customer_by_phone(db, message.from_phone, tenant.id)
            if customer is None and message.channel == "whatsapp" and message.profile_name:
                customer = Customer(
                    tenant_id=tenant.id,
                    phone=message.from_phone,
                    name=message.profile_name,
                    language=language,
                    source="whatsapp",
                )
                db.add(customer)
                await db.flush()

            draft = await extract_order_for_tenant(db, tenant.id, message.body)
            order = await create_order(
                db, tenant, draft,
                source=message.channel,
                customer_phone=message.from_phone,
                customer=customer,
                customer_name=message.profile_name or (customer.name if customer else None),
                message_sid=message.message_sid,
            )
            reply = render_template(
                "order_confirmation", language, category="message",
                order_number=order.order_number,
            )
        elif is_order:
            logger.warning("Order intent from %s but no tenant resolved - replying generically", masked)
            reply = render_template("inquiry_fallback", language, category="message")
        else:
            reply = self.inquiry_reply(message.body, language, tenant)

        await db.flush()

        if message.channel == "whatsapp":
            to = message.reply_to or message.from_phone
            if order is not None:
                ctx.defer(
                    confirmation.send_whatsapp_confirmation,
                    ctx.providers, db, tenant.id, to, order.order_number, language,
                )
            else:
                ctx.defer(
                    confirmation.send_whatsapp_menu,
                    ctx.providers, db, tenant.id if tenant else None, to, language,
                    tenant.name if tenant else None,
                )

        return IntakeResult(classification=classification, language=language, reply=reply, order=order)

    async def handle_transcription(
        self,
        ctx: HandlerContext,
        tenant: Optional[Tenant],
        caller: str,
        transcription: str,
        call_sid: str,
        recording_sid: Optional[str] = None,
        recording_url: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Optional[Order]:
        """Voice order from a finished recording; SMS confirmation to the caller after commit."""
        if not transcription or not transcription.strip():
            logger.warning("Empty transcription received for call %s", call_sid, extra={"call_sid": call_sid})
            return None
        if tenant is None:
            logger.warning("Transcription for call %s without tenant - no order", call_sid, extra={"call_sid": call_sid})
            return None

        db = ctx.db
        customer = await find_customer_by_phone(db, caller, tenant.id)
        draft = await extract_order_for_tenant(db, tenant.id, transcription)
        order = await create_order(
            db, tenant, draft,
            source="voice",
            customer_phone=caller,
            customer=customer,
            customer_name=customer.name if customer else None,
            call_sid=call_sid,
            recording_sid=recording_sid,
            recording_url=recording_url,
            transcription=transcription,
        )

        if language is None and customer is not None and customer.language:
            language = customer.language
        if language is None:
            fallback = tenant_default_language(tenant, ctx.providers.settings.default_language)
            language = self.detect_language(transcription, fallback)
        if caller:
            ctx.defer(
                confirmation.send_sms_confirmation,
                ctx.providers, db, tenant, caller, order.order_number, resolve_language(language),
            )
        return order
