"""
API routes for provider webhooks and monitoring.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_guard import __version__
from payment_guard.core.exceptions import (
    GatewayError,
    MalformedWebhookPayload,
    WebhookAuthenticationError,
)
from payment_guard.core.webhooks import WebhookProcessor

from .schemas import HealthCheckResponse, WebhookResponse

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_webhook_processor(request: Request) -> WebhookProcessor:
    """Webhook processor wired at application startup."""
    return request.app.state.services.webhook_processor


@webhook_router.post(
    "/payments",
    response_model=WebhookResponse,
    summary="Payment provider webhook endpoint",
    description="Authenticate a provider notification and refresh the payment status",
)
async def payment_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Dict[str, Any]:
    """
    Handle payment provider notifications.

    The raw body is authenticated with ``X-Signature`` / ``X-Timestamp``;
    a gateway failure answers 503 so the provider redelivers.
    """
    body = await request.body()

    try:
        result = await processor.handle(body, request.headers)

    except WebhookAuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.to_dict())

    except MalformedWebhookPayload as e:
        logger.warning("api_webhook_malformed", error=e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())

    except GatewayError as e:
        logger.error("api_webhook_gateway_error", error_code=e.error_code, error=e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return {
        "received": True,
        "outcome": result.outcome,
        "provider_payment_id": result.provider_payment_id,
        "status": result.status,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def health(request: Request) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "service": request.app.state.services.settings.app_name,
        "version": __version__,
    }


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
