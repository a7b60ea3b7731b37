"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from orderhooks.api.stripe_webhooks import router as stripe_router
from orderhooks.api.twilio_webhooks import router as twilio_router
from orderhooks.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(stripe_router)
api_router.include_router(twilio_router)
api_router.include_router(health_router)
