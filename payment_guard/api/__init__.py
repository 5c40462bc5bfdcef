"""FastAPI application and routes."""
from .main import create_app
from .schemas import HealthCheckResponse, WebhookResponse

__all__ = ["create_app", "HealthCheckResponse", "WebhookResponse"]
