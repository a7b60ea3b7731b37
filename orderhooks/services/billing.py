"""
Stripe event state machine - applies payment, subscription, invoice, checkout,
customer and setup events to orders, tenants and billing records.

Handlers receive the event's data.object as a plain dict. They only flush;
the ledger commits once the event is recorded. Notifications are deferred
through the HandlerContext so they run after commit.

Events missing the metadata they need (tenantId / orderId / customerId) or
pointing at unknown rows are logged and dropped: the delivery is still
acknowledged.
"""
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import select

from orderhooks.models.customer import Customer
from orderhooks.models.invoice import Invoice
from orderhooks.models.order import Order
from orderhooks.models.payment import Payment, PaymentMethod, Refund
from orderhooks.models.subscription import Subscription
from orderhooks.models.tenant import Tenant
from orderhooks.services import transactional_email
from orderhooks.services.webhook_ledger import HandlerContext

logger = logging.getLogger(__name__)


class StripeEventType(str, Enum):
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    CHARGE_REFUNDED = "charge.refunded"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    PAYMENT_METHOD_AUTO_UPDATED = "payment_method.automatically_updated"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_CREATED = "invoice.created"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    CUSTOMER_CREATED = "customer.created"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    SETUP_INTENT_SUCCEEDED = "setup_intent.succeeded"

    @property
    def category(self) -> str:
        prefix = self.value.split(".")[0]
        if self.value.startswith("customer.subscription."):
            return "subscription"
        return {
            "payment_intent": "payment",
            "charge": "payment",
            "payment_method": "payment",
            "invoice": "invoice",
            "checkout": "checkout",
            "customer": "customer",
            "setup_intent": "setup",
        }[prefix]

    @classmethod
    def parse(cls, event_type: str) -> Optional["StripeEventType"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


Handler = Callable[[HandlerContext, dict], Awaitable[None]]


# === helpers ===

def _to_major(amount_minor: Optional[int]) -> float:
    """Stripe amounts arrive in minor units (Rappen / cents)."""
    return (amount_minor or 0) / 100


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        return None


def _object_id(value) -> Optional[str]:
    """Expandable Stripe fields are either an id string or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _metadata(obj: dict) -> dict:
    return obj.get("metadata") or {}


async def _find_order(ctx: HandlerContext, metadata: dict, kind: str) -> Optional[Order]:
    """Resolve tenantId + orderId from metadata. Logs and returns None when unusable."""
    tenant_id = _parse_uuid(metadata.get("tenantId"))
    order_id = _parse_uuid(metadata.get("orderId"))
    if not tenant_id or not order_id:
        logger.error(
            "Missing or invalid tenantId/orderId metadata in %s (event %s)",
            kind, ctx.event_id, extra={"event_id": ctx.event_id},
        )
        return None

    result = await ctx.db.execute(
        select(Order).where(Order.id == order_id, Order.tenant_id == tenant_id)
    )
    order = result.scalar_one_or_none()
    if order is None:
        logger.error(
            "Unknown order %s for tenant %s in %s",
            str(order_id)[:8], str(tenant_id)[:8], kind,
            extra={"tenant_id": str(tenant_id), "order_id": str(order_id)},
        )
    return order


async def _find_tenant(ctx: HandlerContext, tenant_id_raw) -> Optional[Tenant]:
    tenant_id = _parse_uuid(tenant_id_raw)
    if not tenant_id:
        return None
    return await ctx.db.get(Tenant, tenant_id)


async def _find_subscription(ctx: HandlerContext, provider_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not provider_subscription_id:
        return None
    result = await ctx.db.execute(
        select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
    )
    return result.scalar_one_or_none()


async def _find_customer(ctx: HandlerContext, customer_id_raw) -> Optional[Customer]:
    customer_id = _parse_uuid(customer_id_raw)
    if not customer_id:
        return None
    return await ctx.db.get(Customer, customer_id)


def _subscription_items(sub: dict) -> list[dict]:
    items = (sub.get("items") or {}).get("data") or []
    return [
        {
            "price_id": (item.get("price") or {}).get("id"),
            "quantity": item.get("quantity") or 1,
        }
        for item in items
    ]


def _subscription_period(sub: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    """Period window lives on the subscription in older API versions, on items in newer ones."""
    start = sub.get("current_period_start")
    end = sub.get("current_period_end")
    if start is None or end is None:
        items = (sub.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    parent = invoice.get("parent") or {}
    return _object_id((parent.get("subscription_details") or {}).get("subscription"))


def _invoice_tenant_id(invoice: dict) -> Optional[str]:
    details = invoice.get("subscription_details") or {}
    if not details:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
    tenant_id = (details.get("metadata") or {}).get("tenantId")
    return tenant_id or _metadata(invoice).get("tenantId")


# === payment ===

async def _handle_payment_intent_succeeded(ctx: HandlerContext, intent: dict) -> None:
    order = await _find_order(ctx, _metadata(intent), "payment_intent.succeeded")
    if order is None:
        return

    amount = _to_major(intent.get("amount"))
    currency = intent.get("currency")
    method_types = intent.get("payment_method_types") or []
    method = method_types[0] if method_types else None
    now = datetime.now(timezone.utc)

    order.payment_status = "paid"
    order.payment_intent_id = intent.get("id")
    order.paid_amount = amount
    order.paid_at = now
    order.payment_method = method

    ctx.db.add(Payment(
        tenant_id=order.tenant_id,
        order_id=order.id,
        provider_payment_id=intent.get("id"),
        amount=amount,
        currency=currency,
        status="succeeded",
        method=method,
        extra_data=_metadata(intent),
    ))
    await ctx.db.flush()

    email = order.customer_email or intent.get("receipt_email")
    if email:
        ctx.defer(
            transactional_email.send_payment_confirmation,
            ctx.providers, email, order.order_number, amount, currency,
        )

    logger.info(
        "Payment succeeded for order %s: %.2f %s",
        order.order_number, amount, (currency or "").upper(),
        extra={"tenant_id": str(order.tenant_id), "order_id": str(order.id)},
    )


async def _handle_payment_intent_failed(ctx: HandlerContext, intent: dict) -> None:
    order = await _find_order(ctx, _metadata(intent), "payment_intent.payment_failed")
    if order is None:
        return

    error_message = (intent.get("last_payment_error") or {}).get("message")
    order.payment_status = "failed"
    order.payment_error = error_message
    order.payment_failed_at = datetime.now(timezone.utc)
    await ctx.db.flush()

    email = order.customer_email or intent.get("receipt_email")
    if email:
        ctx.defer(
            transactional_email.send_payment_failed,
            ctx.providers, email, order.order_number, error_message,
        )

    logger.warning(
        "Payment failed for order %s: %s",
        order.order_number, error_message,
        extra={"tenant_id": str(order.tenant_id), "order_id": str(order.id)},
    )


async def _handle_charge_succeeded(ctx: HandlerContext, charge: dict) -> None:
    logger.info(
        "Charge succeeded: %s (%.2f %s)",
        charge.get("id"), _to_major(charge.get("amount")), (charge.get("currency") or "").upper(),
    )


async def _handle_charge_failed(ctx: HandlerContext, charge: dict) -> None:
    logger.warning(
        "Charge failed: %s code=%s message=%s",
        charge.get("id"), charge.get("failure_code"), charge.get("failure_message"),
    )


async def _handle_charge_refunded(ctx: HandlerContext, charge: dict) -> None:
    refunded = _to_major(charge.get("amount_refunded"))
    order = await _find_order(ctx, _metadata(charge), "charge.refunded")
    if order is None:
        return

    refunds = (charge.get("refunds") or {}).get("data") or []
    reason = (refunds[0].get("reason") if refunds else None) or "requested_by_customer"

    order.refund_status = "refunded"
    order.refund_amount = refunded
    order.refunded_at = datetime.now(timezone.utc)

    ctx.db.add(Refund(
        tenant_id=order.tenant_id,
        order_id=order.id,
        charge_id=charge.get("id"),
        amount=refunded,
        reason=reason,
    ))
    await ctx.db.flush()

    logger.info(
        "Charge %s refunded: %.2f for order %s",
        charge.get("id"), refunded, order.order_number,
        extra={"tenant_id": str(order.tenant_id), "order_id": str(order.id)},
    )


def _apply_card(record: PaymentMethod, pm: dict) -> None:
    card = pm.get("card") or {}
    record.card_brand = card.get("brand")
    record.card_last4 = card.get("last4")
    record.card_exp_month = card.get("exp_month")
    record.card_exp_year = card.get("exp_year")


async def _get_payment_method(ctx: HandlerContext, payment_method_id: str) -> Optional[PaymentMethod]:
    result = await ctx.db.execute(
        select(PaymentMethod).where(PaymentMethod.payment_method_id == payment_method_id)
    )
    return result.scalar_one_or_none()


async def _handle_payment_method_attached(ctx: HandlerContext, pm: dict) -> None:
    customer_id = _object_id(pm.get("customer"))
    if not customer_id:
        logger.info("Payment method %s attached without customer - ignored", pm.get("id"))
        return

    record = await _get_payment_method(ctx, pm.get("id"))
    if record is None:
        record = PaymentMethod(payment_method_id=pm.get("id"))
        ctx.db.add(record)
    record.provider_customer_id = customer_id
    record.type = pm.get("type") or "card"
    _apply_card(record, pm)
    await ctx.db.flush()
    logger.info("Payment method attached for customer %s", customer_id)


async def _handle_payment_method_auto_updated(ctx: HandlerContext, pm: dict) -> None:
    record = await _get_payment_method(ctx, pm.get("id"))
    if record is None:
        customer_id = _object_id(pm.get("customer"))
        if not customer_id:
            logger.warning("Auto-updated payment method %s is unknown - ignored", pm.get("id"))
            return
        record = PaymentMethod(
            payment_method_id=pm.get("id"),
            provider_customer_id=customer_id,
            type=pm.get("type") or "card",
        )
        ctx.db.add(record)
    _apply_card(record, pm)
    await ctx.db.flush()
    logger.info("Payment method automatically updated: %s", pm.get("id"))


# === subscription ===

async def _handle_subscription_created(ctx: HandlerContext, sub: dict) -> None:
    metadata = _metadata(sub)
    tenant = await _find_tenant(ctx, metadata.get("tenantId"))
    if tenant is None:
        logger.error(
            "Subscription %s created without a known tenantId - ignored", sub.get("id"),
        )
        return

    start, end = _subscription_period(sub)
    record = await _find_subscription(ctx, sub.get("id"))
    if record is None:
        record = Subscription(tenant_id=tenant.id, provider_subscription_id=sub.get("id"))
        ctx.db.add(record)
    record.provider_customer_id = _object_id(sub.get("customer"))
    record.status = sub.get("status")
    record.items = _subscription_items(sub)
    record.current_period_start = start
    record.current_period_end = end
    record.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))

    tenant.subscription_id = sub.get("id")
    tenant.subscription_status = sub.get("status")
    tenant.subscription_plan = metadata.get("plan") or "standard"
    await ctx.db.flush()

    logger.info(
        "Subscription created for tenant %s (%s)", tenant.name, sub.get("status"),
        extra={"tenant_id": str(tenant.id)},
    )


async def _handle_subscription_updated(ctx: HandlerContext, sub: dict) -> None:
    record = await _find_subscription(ctx, sub.get("id"))
    if record is None:
        logger.warning("Update for unknown subscription %s - ignored", sub.get("id"))
        return

    start, end = _subscription_period(sub)
    record.status = sub.get("status")
    record.items = _subscription_items(sub)
    record.current_period_start = start
    record.current_period_end = end
    record.cancel_at_period_end = bool(sub.get("cancel_at_period_end"))

    tenant = await ctx.db.get(Tenant, record.tenant_id)
    if tenant is not None:
        tenant.subscription_status = sub.get("status")
    await ctx.db.flush()

    logger.info(
        "Subscription %s updated: status=%s", sub.get("id"), sub.get("status"),
        extra={"tenant_id": str(record.tenant_id)},
    )


async def _handle_subscription_deleted(ctx: HandlerContext, sub: dict) -> None:
    record = await _find_subscription(ctx, sub.get("id"))
    if record is None:
        logger.warning("Deletion of unknown subscription %s - ignored", sub.get("id"))
        return

    now = datetime.now(timezone.utc)
    record.status = "canceled"
    record.canceled_at = now

    tenant = await ctx.db.get(Tenant, record.tenant_id)
    if tenant is not None:
        tenant.subscription_status = "canceled"
        tenant.subscription_ended_at = now
        if tenant.owner_email:
            ctx.defer(
                transactional_email.send_subscription_canceled,
                ctx.providers, tenant.owner_email, tenant.name,
            )
    await ctx.db.flush()

    logger.info(
        "Subscription %s canceled", sub.get("id"),
        extra={"tenant_id": str(record.tenant_id)},
    )


async def _handle_subscription_trial_will_end(ctx: HandlerContext, sub: dict) -> None:
    record = await _find_subscription(ctx, sub.get("id"))
    tenant_id = record.tenant_id if record else _metadata(sub).get("tenantId")
    tenant = await _find_tenant(ctx, tenant_id)
    if tenant is None:
        logger.warning("Trial ending for unknown subscription %s - ignored", sub.get("id"))
        return

    trial_end = _from_timestamp(sub.get("trial_end"))
    if tenant.owner_email:
        ctx.defer(
            transactional_email.send_trial_ending,
            ctx.providers, tenant.owner_email, tenant.name,
            trial_end.strftime("%d.%m.%Y") if trial_end else None,
        )
    logger.info("Trial ending soon for tenant %s", tenant.name, extra={"tenant_id": str(tenant.id)})


# === invoice ===

async def _upsert_invoice(ctx: HandlerContext, inv: dict) -> Invoice:
    result = await ctx.db.execute(
        select(Invoice).where(Invoice.provider_invoice_id == inv.get("id"))
    )
    record = result.scalar_one_or_none()
    if record is None:
        tenant_id = _parse_uuid(_invoice_tenant_id(inv))
        if tenant_id is None:
            sub = await _find_subscription(ctx, _invoice_subscription_id(inv))
            tenant_id = sub.tenant_id if sub else None
        record = Invoice(
            provider_invoice_id=inv.get("id"),
            tenant_id=tenant_id,
            provider_customer_id=_object_id(inv.get("customer")),
            provider_subscription_id=_invoice_subscription_id(inv),
            amount=_to_major(inv.get("amount_due")),
            currency=inv.get("currency"),
            status=inv.get("status") or "draft",
            due_date=_from_timestamp(inv.get("due_date")),
        )
        ctx.db.add(record)
    return record


async def _handle_invoice_created(ctx: HandlerContext, inv: dict) -> None:
    record = await _upsert_invoice(ctx, inv)
    await ctx.db.flush()
    logger.info("Invoice %s recorded (%.2f)", inv.get("id"), record.amount or 0)


async def _handle_invoice_paid(ctx: HandlerContext, inv: dict) -> None:
    record = await _upsert_invoice(ctx, inv)
    record.status = "paid"
    record.paid_at = datetime.now(timezone.utc)
    await ctx.db.flush()
    logger.info("Invoice payment succeeded: %s (%.2f)", inv.get("id"), _to_major(inv.get("amount_paid")))


async def _handle_invoice_payment_failed(ctx: HandlerContext, inv: dict) -> None:
    record = await _upsert_invoice(ctx, inv)
    record.status = "payment_failed"
    await ctx.db.flush()
    logger.warning("Invoice payment failed: %s", inv.get("id"))

    tenant = await ctx.db.get(Tenant, record.tenant_id) if record.tenant_id else None
    if tenant is not None and tenant.owner_email:
        ctx.defer(
            transactional_email.send_invoice_payment_failed,
            ctx.providers, tenant.owner_email, tenant.name, record.amount, record.currency,
        )


# === checkout ===

async def _handle_checkout_completed(ctx: HandlerContext, session: dict) -> None:
    metadata = _metadata(session)
    kind = metadata.get("type")

    if kind == "order":
        order = await _find_order(ctx, metadata, "checkout.session.completed")
        if order is None:
            return
        order.checkout_session_id = session.get("id")
        order.payment_status = session.get("payment_status") or order.payment_status
        await ctx.db.flush()
        logger.info(
            "Order checkout completed for %s: payment_status=%s",
            order.order_number, order.payment_status,
            extra={"tenant_id": str(order.tenant_id), "order_id": str(order.id)},
        )
    elif kind == "subscription" and metadata.get("tenantId"):
        logger.info("Subscription checkout completed for tenant %s", metadata.get("tenantId"))
    else:
        logger.info("Checkout session %s completed without order/subscription metadata", session.get("id"))


async def _handle_checkout_expired(ctx: HandlerContext, session: dict) -> None:
    metadata = _metadata(session)
    if metadata.get("orderId") and metadata.get("tenantId"):
        order = await _find_order(ctx, metadata, "checkout.session.expired")
        if order is not None:
            order.status = "expired"
            order.expired_at = datetime.now(timezone.utc)
            await ctx.db.flush()
    logger.info("Checkout session expired: %s", session.get("id"))


# === customer / setup ===

def _customer_ref(obj: dict):
    metadata = _metadata(obj)
    return metadata.get("customerId") or metadata.get("userId")


async def _handle_customer_created(ctx: HandlerContext, customer: dict) -> None:
    record = await _find_customer(ctx, _customer_ref(customer))
    if record is not None:
        record.stripe_customer_id = customer.get("id")
        await ctx.db.flush()
    logger.info("Stripe customer created: %s", customer.get("id"))


async def _handle_customer_updated(ctx: HandlerContext, customer: dict) -> None:
    logger.info("Stripe customer updated: %s", customer.get("id"))


async def _handle_customer_deleted(ctx: HandlerContext, customer: dict) -> None:
    record = await _find_customer(ctx, _customer_ref(customer))
    if record is not None:
        record.stripe_customer_id = None
        await ctx.db.flush()
    logger.info("Stripe customer deleted: %s", customer.get("id"))


async def _handle_setup_intent_succeeded(ctx: HandlerContext, intent: dict) -> None:
    logger.info("Setup intent succeeded: %s", intent.get("id"))
    payment_method_id = _object_id(intent.get("payment_method"))
    if not payment_method_id:
        return
    record = await _find_customer(ctx, _metadata(intent).get("customerId"))
    if record is None:
        return
    record.default_payment_method_id = payment_method_id
    await ctx.db.flush()


HANDLERS: dict[StripeEventType, Handler] = {
    StripeEventType.PAYMENT_INTENT_SUCCEEDED: _handle_payment_intent_succeeded,
    StripeEventType.PAYMENT_INTENT_FAILED: _handle_payment_intent_failed,
    StripeEventType.CHARGE_SUCCEEDED: _handle_charge_succeeded,
    StripeEventType.CHARGE_FAILED: _handle_charge_failed,
    StripeEventType.CHARGE_REFUNDED: _handle_charge_refunded,
    StripeEventType.PAYMENT_METHOD_ATTACHED: _handle_payment_method_attached,
    StripeEventType.PAYMENT_METHOD_AUTO_UPDATED: _handle_payment_method_auto_updated,
    StripeEventType.SUBSCRIPTION_CREATED: _handle_subscription_created,
    StripeEventType.SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    StripeEventType.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    StripeEventType.SUBSCRIPTION_TRIAL_WILL_END: _handle_subscription_trial_will_end,
    StripeEventType.INVOICE_CREATED: _handle_invoice_created,
    StripeEventType.INVOICE_PAID: _handle_invoice_paid,
    StripeEventType.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_paid,
    StripeEventType.INVOICE_PAYMENT_FAILED: _handle_invoice_payment_failed,
    StripeEventType.CHECKOUT_COMPLETED: _handle_checkout_completed,
    StripeEventType.CHECKOUT_EXPIRED: _handle_checkout_expired,
    StripeEventType.CUSTOMER_CREATED: _handle_customer_created,
    StripeEventType.CUSTOMER_UPDATED: _handle_customer_updated,
    StripeEventType.CUSTOMER_DELETED: _handle_customer_deleted,
    StripeEventType.SETUP_INTENT_SUCCEEDED: _handle_setup_intent_succeeded,
}


def assert_exhaustive(handlers: dict) -> None:
    """Every StripeEventType member must have a handler."""
    missing = [t.value for t in StripeEventType if t not in handlers]
    if missing:
        raise RuntimeError(f"Stripe event types without a handler: {', '.join(missing)}")


assert_exhaustive(HANDLERS)


async def handle_event(ctx: HandlerContext, event: dict) -> dict:
    """
    Dispatch a verified Stripe event to its handler.

    Returns: {"event_type": str, "category": str|None, "handled": bool}
    """
    event_type = event.get("type", "")
    data = (event.get("data") or {}).get("object") or {}

    kind = StripeEventType.parse(event_type)
    if kind is None:
        logger.info("Unhandled Stripe event type: %s", event_type, extra={"event_id": ctx.event_id})
        return {"event_type": event_type, "category": None, "handled": False}

    logger.info(
        "Stripe webhook received: %s (%s)", event_type, kind.category,
        extra={"event_id": ctx.event_id, "provider": "stripe"},
    )
    await HANDLERS[kind](ctx, data)
    return {"event_type": event_type, "category": kind.category, "handled": True}
