"""
Webhook API application.

Thin FastAPI surface over the payment core:
- Provider webhook endpoint
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from payment_guard import __version__
from payment_guard.bootstrap import Services, start_services
from payment_guard.config import Settings, get_settings
from payment_guard.core.exceptions import PaymentGuardError
from payment_guard.monitoring.logging import setup_logging

from .routes import monitoring_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Settings; loaded from the environment when omitted
        services: Prebuilt services; built on startup when omitted
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
        owns_services = app.state.services is None
        if owns_services:
            app.state.services = await start_services(settings)
            logger.info("database_initialized")

        yield

        logger.info("application_shutdown")
        if owns_services:
            await app.state.services.close()
            app.state.services = None

    app = FastAPI(
        title="Payment Guard",
        description="Payment security and risk core: provider webhook endpoint.",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
    )
    app.state.services = services

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add a request ID to every request for tracing."""
        request_id = str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentGuardError)
    async def payment_guard_error_handler(request: Request, exc: PaymentGuardError) -> JSONResponse:
        logger.error(
            "payment_guard_error",
            error_code=exc.error_code,
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(webhook_router)
    app.include_router(monitoring_router)
    return app


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "payment_guard.api.main:create_app",
        factory=True,
        host=_settings.api_host,
        port=_settings.api_port,
        log_level=_settings.log_level.lower(),
    )
