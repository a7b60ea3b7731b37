"""
Customer model - a guest of a tenant, identified by phone number.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from orderhooks.database import Base


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    phone: Mapped[Optional[str]] = mapped_column(String(20))
    name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    language: Mapped[Optional[str]] = mapped_column(String(5))  # de, fr, it, en
    source: Mapped[Optional[str]] = mapped_column(String(20))  # sms, voice, whatsapp, web

    # Stripe
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    default_payment_method_id: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_customers_phone", "phone"),
        Index("ix_customers_tenant_phone", "tenant_id", "phone"),
        Index("ix_customers_stripe_customer_id", "stripe_customer_id"),
    )
