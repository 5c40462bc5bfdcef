"""
Pytest configuration and fixtures.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from payment_guard.config import Settings
from payment_guard.core.discount import DiscountResolver, InMemoryOrderHistory
from payment_guard.core.models import (
    CustomerIdentity,
    MaskedIdentity,
    OrderSnapshot,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RiskLevel,
)
from payment_guard.core.orchestrator import PaymentOrchestrator
from payment_guard.core.payment_code import PayeeAccount
from payment_guard.core.store import InMemoryPaymentStore
from payment_guard.core.vault import EncryptionVault
from payment_guard.database.connection import create_engine, create_session_factory, init_db
from payment_guard.integrations.gateway import (
    CardPaymentResult,
    GatewayClient,
    OfflinePaymentResult,
    RefundResult,
)

TEST_KEY_HEX = "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
WEBHOOK_SECRET = "whsec_test"
VALID_NATIONAL_ID = "529.982.247-25"
OTHER_VALID_NATIONAL_ID = "111.444.777-35"

# 12:00 in Sao Paulo
FIXED_NOW = datetime(2024, 1, 15, 15, 0, tzinfo=timezone.utc)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "race: concurrency and race condition tests")


class FakeGateway(GatewayClient):
    """In-process gateway recording every call."""

    def __init__(self) -> None:
        self.card_status = PaymentStatus.APPROVED
        self.offline_raw_code: Optional[str] = "00020101021226provider"
        self.query_results: List[Any] = []
        self.refund_errors: List[Exception] = []
        self.delay_seconds = 0.0
        self.calls: List[tuple] = []
        self._counter = 0

    def _next_reference(self) -> str:
        self._counter += 1
        return f"pi_test_{self._counter}"

    async def create_card_payment(
        self, amount, token, installments, identity, reference=None
    ) -> CardPaymentResult:
        self.calls.append(("create_card_payment", amount, token, installments, reference))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return CardPaymentResult(provider_reference=self._next_reference(), status=self.card_status)

    async def create_offline_payment(self, amount, identity, reference=None) -> OfflinePaymentResult:
        self.calls.append(("create_offline_payment", amount, reference))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        return OfflinePaymentResult(
            provider_reference=self._next_reference(), raw_code=self.offline_raw_code
        )

    async def query_status(self, provider_reference: str) -> PaymentStatus:
        self.calls.append(("query_status", provider_reference))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        result = self.query_results.pop(0) if self.query_results else PaymentStatus.APPROVED
        if isinstance(result, Exception):
            raise result
        return result

    async def refund(self, provider_reference: str, amount) -> RefundResult:
        self.calls.append(("refund", provider_reference, amount))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        return RefundResult(
            provider_reference=provider_reference, refund_id="re_test_1", amount=amount
        )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        encryption_key=TEST_KEY_HEX,
        webhook_secret=WEBHOOK_SECRET,
        stripe_secret_key="sk_test_fake_key_for_testing",
        database_url="sqlite+aiosqlite:///:memory:",
        velocity_enabled=False,
        app_name="payment-guard-test",
        app_env="test",
        log_level="DEBUG",
        pix_payee_key="pagamentos@loja.com.br",
        pix_payee_name="Loja Exemplo",
        pix_payee_city="Sao Paulo",
    )


@pytest.fixture
def vault() -> EncryptionVault:
    return EncryptionVault(bytes.fromhex(TEST_KEY_HEX))


@pytest.fixture
def customer() -> CustomerIdentity:
    return CustomerIdentity(
        first_name="Joao",
        last_name="Silva",
        national_id=VALID_NATIONAL_ID,
        email="Joao@Example.com",
        phone="(11) 98765-4321",
        user_id="user-1",
    )


@pytest.fixture
def make_order(customer: CustomerIdentity) -> Callable[..., OrderSnapshot]:
    """Factory for order snapshots; defaults to a 150.00 order with a 10.00 fee."""

    def _make(order_id: str = "order-1", **overrides: Any) -> OrderSnapshot:
        data = {
            "order_id": order_id,
            "amount": Decimal("150.00"),
            "item_count": 2,
            "delivery_fee": Decimal("10.00"),
            "customer": customer,
        }
        data.update(overrides)
        return OrderSnapshot(**data)

    return _make


@pytest.fixture
def make_record() -> Callable[..., PaymentRecord]:
    """Factory for persisted-shape payment records."""

    def _make(**overrides: Any) -> PaymentRecord:
        data = {
            "order_id": "order-1",
            "method": PaymentMethod.CARD,
            "amount": Decimal("140.00"),
            "status": PaymentStatus.PENDING,
            "masked_identity": MaskedIdentity(
                first_name="J***o",
                last_name="S***a",
                national_id="***.982.***-**",
                email="j***o@e***e.com",
                phone="(11) *****-4321",
            ),
            "encrypted_blob": "00:11:22",
            "risk_score": 10,
            "risk_level": RiskLevel.LOW,
            "risk_factors": ["card payment"],
            "fingerprint": "f" * 64,
            "provider_reference": "pi_test_1",
            "created_at": FIXED_NOW,
        }
        data.update(overrides)
        return PaymentRecord(**data)

    return _make


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def payment_store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()


@pytest.fixture
def order_history() -> InMemoryOrderHistory:
    return InMemoryOrderHistory()


@pytest.fixture
def payee() -> PayeeAccount:
    return PayeeAccount(key="pagamentos@loja.com.br", name="Loja Exemplo", city="Sao Paulo")


@pytest.fixture
def orchestrator(
    gateway: FakeGateway,
    payment_store: InMemoryPaymentStore,
    order_history: InMemoryOrderHistory,
    vault: EncryptionVault,
    payee: PayeeAccount,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        gateway=gateway,
        store=payment_store,
        vault=vault,
        discount_resolver=DiscountResolver(order_history),
        payee=payee,
        gateway_timeout_seconds=1.0,
        clock=lambda: FIXED_NOW,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine; one connection per session so claims really race."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'payment_guard.db'}", poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)
