"""
Message log - every inbound SMS/WhatsApp message and outbound confirmation.
Inbound rows carry the intent classification; outbound rows track Twilio delivery status.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from orderhooks.database import Base


class MessageLog(Base):
    __tablename__ = "message_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id")
    )
    direction: Mapped[str] = mapped_column(String(10), nullable=False)  # inbound, outbound
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # sms, whatsapp
    from_phone: Mapped[Optional[str]] = mapped_column(String(40))
    to_phone: Mapped[Optional[str]] = mapped_column(String(40))
    body: Mapped[Optional[str]] = mapped_column(Text)
    message_sid: Mapped[Optional[str]] = mapped_column(String(64))
    classification: Mapped[Optional[str]] = mapped_column(String(20))  # order, inquiry
    delivery_status: Mapped[Optional[str]] = mapped_column(String(20))
    error_code: Mapped[Optional[str]] = mapped_column(String(10))
    country: Mapped[Optional[str]] = mapped_column(String(5))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_message_logs_message_sid", "message_sid"),
        Index("ix_message_logs_tenant_id", "tenant_id"),
    )
