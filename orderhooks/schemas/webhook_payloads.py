"""
Webhook payload schemas - raw input from Stripe and Twilio.
Twilio posts URL-encoded forms; field names follow Twilio's casing.
"""
from typing import Optional
from pydantic import BaseModel, Field


class StripeEventEnvelope(BaseModel):
    """Outer shape of a Stripe event, validated after the signature check."""
    id: str
    type: str
    livemode: bool = False
    created: Optional[int] = None
    api_version: Optional[str] = None
    data: dict = Field(default_factory=dict)


class TwilioSmsPayload(BaseModel):
    """Twilio inbound SMS webhook payload."""
    MessageSid: str
    AccountSid: Optional[str] = None
    From: str
    To: str
    Body: str = ""
    NumMedia: str = "0"
    FromCity: Optional[str] = None
    FromCountry: Optional[str] = None


class TwilioWhatsAppPayload(TwilioSmsPayload):
    """WhatsApp adds the sender profile and media; From/To carry a whatsapp: prefix."""
    ProfileName: Optional[str] = None
    MediaUrl0: Optional[str] = None
    MediaContentType0: Optional[str] = None


class TwilioVoicePayload(BaseModel):
    """Incoming call / any voice turn."""
    CallSid: str
    From: str = ""
    To: str = ""
    CallStatus: str = "ringing"  # queued, ringing, in-progress, completed, busy, failed, no-answer, canceled
    Direction: Optional[str] = None


class TwilioGatherPayload(TwilioVoicePayload):
    """<Gather> action callback."""
    Digits: Optional[str] = None


class TwilioRecordingPayload(TwilioVoicePayload):
    """<Record> action callback."""
    RecordingSid: Optional[str] = None
    RecordingUrl: Optional[str] = None
    RecordingDuration: Optional[str] = None


class TwilioTranscriptionPayload(BaseModel):
    """transcribeCallback payload."""
    CallSid: str
    From: str = ""
    To: str = ""
    TranscriptionSid: Optional[str] = None
    TranscriptionText: Optional[str] = None
    TranscriptionStatus: Optional[str] = None
    RecordingSid: Optional[str] = None
    RecordingUrl: Optional[str] = None


class TwilioStatusPayload(BaseModel):
    """Twilio message delivery status callback."""
    MessageSid: str
    MessageStatus: str  # queued, sent, delivered, undelivered, failed, read
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None
    To: Optional[str] = None
    From: Optional[str] = None


class TwilioCallStatusPayload(BaseModel):
    """Twilio call status callback."""
    CallSid: str
    CallStatus: str
    CallDuration: Optional[str] = None
    From: Optional[str] = None
    To: Optional[str] = None
