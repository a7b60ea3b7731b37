"""
Outbound provider clients, built once at startup and injected per request.

The lifespan handler builds a Providers container and stores it on
app.state; endpoints receive it through the get_providers dependency.
Tests override the dependency with doubles.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Request

from orderhooks.config import Settings

logger = logging.getLogger(__name__)

# Twilio client timeout
TWILIO_CLIENT_TIMEOUT = 10


@dataclass
class Providers:
    settings: Settings
    twilio: Optional[Any] = None  # twilio.rest.Client
    sendgrid: Optional[Any] = None  # sendgrid.SendGridAPIClient


def _build_twilio_client(settings: Settings):
    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        logger.warning("Twilio credentials not set - outbound SMS/WhatsApp disabled")
        return None
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


def _build_sendgrid_client(settings: Settings):
    if not settings.sendgrid_api_key:
        logger.warning("SENDGRID_API_KEY not set - transactional email disabled")
        return None
    from sendgrid import SendGridAPIClient
    return SendGridAPIClient(api_key=settings.sendgrid_api_key)


def build_providers(settings: Settings) -> Providers:
    """Construct provider clients from settings. Missing credentials leave a slot empty."""
    return Providers(
        settings=settings,
        twilio=_build_twilio_client(settings),
        sendgrid=_build_sendgrid_client(settings),
    )


def get_providers(request: Request) -> Providers:
    """FastAPI dependency returning the Providers built at startup."""
    return request.app.state.providers
