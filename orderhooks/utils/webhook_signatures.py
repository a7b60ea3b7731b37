"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported providers:
- Stripe: HMAC-SHA256 over the raw body via Stripe-Signature (timestamped, replay tolerance)
- Twilio: HMAC-SHA1 via X-Twilio-Signature over the public URL + form params

Both checks run before any database access.
"""
import hashlib
import logging

logger = logging.getLogger(__name__)


class InvalidSignature(Exception):
    """Provider signature missing or not matching the request."""


def verify_stripe_signature(
    payload: bytes,
    sig_header: str,
    secret: str,
    tolerance: int = 300,
) -> None:
    """
    Verify a Stripe-Signature header against the exact raw request body.
    The body must not have been parsed and re-serialized.
    Raises InvalidSignature on any failure.
    """
    if not sig_header:
        raise InvalidSignature("Missing Stripe-Signature header")
    if not secret:
        raise InvalidSignature("Stripe webhook secret not configured")

    import stripe

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), sig_header, secret, tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(str(e)) from e
    except UnicodeDecodeError as e:
        raise InvalidSignature("Payload is not valid UTF-8") from e


def validate_twilio_signature(
    auth_token: str,
    signature: str,
    url: str,
    params: dict,
) -> bool:
    """
    Validate Twilio webhook signature using their RequestValidator.
    Returns True if valid, False if invalid or on error.
    """
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        return False

    try:
        from twilio.request_validator import RequestValidator
        validator = RequestValidator(auth_token)
        return validator.validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature validation error: %s", str(e))
        return False


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit."""
    return hashlib.sha256(body).hexdigest()


def get_webhook_url(request) -> str:
    """
    Reconstruct the public URL for Twilio signature validation.
    Behind a reverse proxy request.url is the internal URL, but Twilio signs
    against the public one, so X-Forwarded-Proto / X-Forwarded-Host win.
    """
    proto = request.headers.get("x-forwarded-proto", "https")
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    path = request.url.path
    query = request.url.query
    base = f"{proto}://{host}{path}"
    if query:
        return f"{base}?{query}"
    return base


def verify_twilio_request(request, form_params: dict, settings) -> None:
    """
    Enforce Twilio signatures when configured (always in production).
    Raises InvalidSignature when enforcement is on and the check fails.
    """
    if not settings.enforce_twilio_signatures:
        return

    if not settings.twilio_auth_token:
        logger.error("Missing TWILIO_AUTH_TOKEN with signature enforcement on - rejecting webhook")
        raise InvalidSignature("Twilio auth token not configured")

    signature = request.headers.get("X-Twilio-Signature", "")
    url = get_webhook_url(request)
    if not validate_twilio_signature(settings.twilio_auth_token, signature, url, form_params):
        logger.warning("Invalid Twilio signature for %s", request.url.path)
        raise InvalidSignature("Invalid Twilio signature")
