"""
orderhooks - Stripe and Twilio webhook intake for EATECH restaurants.
Main FastAPI application entry point.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from orderhooks.config import get_settings
from orderhooks.api.router import api_router
from orderhooks.database import dispose_engine
from orderhooks.services.providers import build_providers
from orderhooks.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("orderhooks")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)
        response.headers["X-Correlation-ID"] = cid
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("orderhooks starting up (env=%s)", settings.app_env)

    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - every Stripe webhook will be rejected")
    if settings.app_env == "production" and not settings.enforce_twilio_signatures:
        logger.warning("Twilio signature validation disabled in production")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    app.state.providers = build_providers(settings)

    yield

    logger.info("orderhooks shutting down")
    await dispose_engine()


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="orderhooks",
        description="Payment and telephony webhook intake for EATECH",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
