"""
Order model - created from Stripe checkout or parsed from SMS / voice / WhatsApp text.
Payment lifecycle: pending -> paid | failed, then optionally refunded.
Order status: pending -> confirmed -> ... ; expired when a checkout session lapses.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from orderhooks.database import Base


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    order_number: Mapped[str] = mapped_column(String(12), nullable=False)

    # Customer
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id")
    )
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20))
    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Contents
    items: Mapped[list] = mapped_column(JSONB, default=list)
    fulfillment_type: Mapped[str] = mapped_column(
        String(20), default="dine-in"
    )  # delivery, pickup, dine-in
    special_instructions: Mapped[Optional[str]] = mapped_column(Text)
    source: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # sms, voice, whatsapp, checkout
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)

    # Payment
    payment_status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255))
    paid_amount: Mapped[Optional[float]] = mapped_column(Float)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    payment_method: Mapped[Optional[str]] = mapped_column(String(50))
    payment_error: Mapped[Optional[str]] = mapped_column(Text)
    payment_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    checkout_session_id: Mapped[Optional[str]] = mapped_column(String(255))
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Refund
    refund_status: Mapped[Optional[str]] = mapped_column(String(30))
    refund_amount: Mapped[Optional[float]] = mapped_column(Float)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Telephony provenance
    message_sid: Mapped[Optional[str]] = mapped_column(String(64))
    call_sid: Mapped[Optional[str]] = mapped_column(String(64))
    recording_sid: Mapped[Optional[str]] = mapped_column(String(64))
    recording_url: Mapped[Optional[str]] = mapped_column(Text)
    transcription: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_orders_tenant_id", "tenant_id"),
        Index("ix_orders_tenant_number", "tenant_id", "order_number"),
        Index("ix_orders_customer_phone", "customer_phone"),
        Index("ix_orders_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status} payment={self.payment_status}>"
