"""
Database models - import all models here so Alembic can discover them.
"""
from orderhooks.models.tenant import Tenant
from orderhooks.models.customer import Customer
from orderhooks.models.menu_item import MenuItem
from orderhooks.models.order import Order
from orderhooks.models.payment import Payment, Refund, PaymentMethod
from orderhooks.models.subscription import Subscription
from orderhooks.models.invoice import Invoice
from orderhooks.models.message_log import MessageLog
from orderhooks.models.webhook_event import WebhookEvent

__all__ = [
    "Tenant",
    "Customer",
    "MenuItem",
    "Order",
    "Payment",
    "Refund",
    "PaymentMethod",
    "Subscription",
    "Invoice",
    "MessageLog",
    "WebhookEvent",
]
