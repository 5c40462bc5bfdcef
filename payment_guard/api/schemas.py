"""
Pydantic schemas for API responses.
"""
from typing import Optional

from pydantic import BaseModel, Field

from payment_guard.core.models import PaymentStatus


class WebhookResponse(BaseModel):
    """Acknowledgement of an accepted webhook delivery."""

    received: bool = Field(default=True)
    outcome: str = Field(..., description="applied, duplicate, stale, ignored or unknown_payment")
    provider_payment_id: str
    status: Optional[PaymentStatus] = None


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="Overall status (healthy/unhealthy)")
    service: str
    version: str
