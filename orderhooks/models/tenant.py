"""
Tenant model - a restaurant using EATECH.
The Twilio number customers dial resolves the tenant for telephony webhooks.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from orderhooks.database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Telephony
    twilio_phone: Mapped[Optional[str]] = mapped_column(String(20), unique=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20))  # transfer target for "9"

    # Restaurant info read out on the IVR and in SMS replies
    owner_email: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(Text)
    opening_hours: Mapped[Optional[str]] = mapped_column(String(255))
    menu_url: Mapped[Optional[str]] = mapped_column(String(255))
    default_language: Mapped[str] = mapped_column(String(5), default="de")

    # Subscription (driven by Stripe webhooks)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(255))
    subscription_status: Mapped[Optional[str]] = mapped_column(
        String(30)
    )  # trialing, active, past_due, canceled, unpaid
    subscription_plan: Mapped[Optional[str]] = mapped_column(String(50))
    subscription_ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<Tenant {self.name}>"
