"""
Webhook event audit trail - every accepted webhook is recorded after its handler succeeds.
(provider, event_id) is unique: it is the idempotency key for event application.
Rows are immutable and never deleted by this service.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Boolean, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from orderhooks.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    provider = Column(String(20), nullable=False, index=True)  # stripe, twilio
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    livemode = Column(Boolean, nullable=True)
    environment = Column(String(20), nullable=True)
    payload_hash = Column(String(64), nullable=False, index=True)
    raw_payload = Column(JSONB, nullable=False)
    correlation_id = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
    )
