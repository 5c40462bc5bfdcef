"""
Service wiring.

Builds the object graph shared by the webhook API and the reconciliation
worker from a :class:`Settings` instance.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_guard.config import Settings
from payment_guard.core.discount import DiscountResolver
from payment_guard.core.masking import PIIMasker
from payment_guard.core.orchestrator import PaymentOrchestrator
from payment_guard.core.payment_code import PayeeAccount
from payment_guard.core.risk_scorer import RiskRules, RiskScorer
from payment_guard.core.vault import EncryptionVault
from payment_guard.core.webhooks import WebhookAuthenticator, WebhookProcessor
from payment_guard.database.connection import create_engine, create_session_factory, init_db
from payment_guard.database.repository import PaymentRepository, SqlOrderHistory
from payment_guard.integrations.gateway import GatewayClient
from payment_guard.integrations.stripe_gateway import StripeGatewayClient
from payment_guard.integrations.velocity import VelocityTracker

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Long-lived components for one process."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    repository: PaymentRepository
    order_history: SqlOrderHistory
    vault: EncryptionVault
    gateway: GatewayClient
    velocity: Optional[VelocityTracker]
    orchestrator: PaymentOrchestrator
    webhook_processor: WebhookProcessor

    async def close(self) -> None:
        if self.velocity is not None:
            await self.velocity.close()
        await self.engine.dispose()
        logger.info("services_closed")


def build_services(
    settings: Settings,
    gateway: Optional[GatewayClient] = None,
    velocity: Optional[VelocityTracker] = None,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    """
    Build every component from settings.

    Args:
        settings: Loaded settings
        gateway: Gateway override; defaults to Stripe
        velocity: Velocity tracker override; defaults to Redis when enabled
        engine: Database engine override
    """
    engine = engine or create_engine(settings.database_url, echo=settings.database_echo)
    session_factory = create_session_factory(engine)
    repository = PaymentRepository(session_factory)
    order_history = SqlOrderHistory(session_factory)
    vault = EncryptionVault.from_settings(settings)
    gateway = gateway or StripeGatewayClient.from_settings(settings)

    if velocity is None and settings.velocity_enabled:
        velocity = VelocityTracker.from_url(
            settings.redis_url, window_seconds=settings.velocity_window_seconds
        )

    orchestrator = PaymentOrchestrator(
        gateway=gateway,
        store=repository,
        vault=vault,
        discount_resolver=DiscountResolver(order_history),
        masker=PIIMasker.from_settings(settings),
        scorer=RiskScorer(RiskRules.from_settings(settings)),
        velocity=velocity,
        payee=PayeeAccount.from_settings(settings),
        gateway_timeout_seconds=settings.gateway_timeout_seconds,
        timezone=settings.risk_timezone,
    )
    webhook_processor = WebhookProcessor(
        WebhookAuthenticator.from_settings(settings),
        gateway,
        repository,
        gateway_timeout_seconds=settings.gateway_timeout_seconds,
    )

    logger.info(
        "services_built",
        gateway=type(gateway).__name__,
        velocity_enabled=velocity is not None,
        database_dialect=engine.dialect.name,
    )
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        repository=repository,
        order_history=order_history,
        vault=vault,
        gateway=gateway,
        velocity=velocity,
        orchestrator=orchestrator,
        webhook_processor=webhook_processor,
    )


async def start_services(settings: Settings, **overrides) -> Services:
    """Build the services and make sure the schema exists."""
    services = build_services(settings, **overrides)
    await init_db(services.engine)
    return services
