"""
API response schemas for the JSON endpoints.
"""
from typing import Optional
from pydantic import BaseModel


class StripeWebhookResponse(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    timestamp: str


class ReadinessResponse(BaseModel):
    status: str  # ready, degraded
    checks: dict
    timestamp: str
