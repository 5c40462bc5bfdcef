"""
Payment gateway boundary.

The core treats the gateway as an opaque RPC service and only consumes
its typed responses. Implementations translate provider errors into
:class:`GatewayTimeout` / :class:`GatewayRejected`.
"""
import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Awaitable, Optional, TypeVar

import structlog
from pydantic import BaseModel

from payment_guard.core.exceptions import GatewayTimeout
from payment_guard.core.models import CustomerIdentity, PaymentStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_with_timeout(operation: str, call: Awaitable[T], timeout_seconds: float) -> T:
    """
    Await a gateway call, bounded by ``timeout_seconds``.

    Raises:
        GatewayTimeout: The gateway did not answer in time
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.error(
            "gateway_call_timed_out",
            operation=operation,
            timeout_seconds=timeout_seconds,
        )
        raise GatewayTimeout(
            f"Gateway did not answer within {timeout_seconds}s",
            operation=operation,
        ) from e


class CardPaymentResult(BaseModel):
    provider_reference: str
    status: PaymentStatus


class OfflinePaymentResult(BaseModel):
    provider_reference: str
    raw_code: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING


class RefundResult(BaseModel):
    provider_reference: str
    refund_id: str
    amount: Decimal


class GatewayClient(ABC):
    """Interface every payment gateway adapter implements."""

    @abstractmethod
    async def create_card_payment(
        self,
        amount: Decimal,
        token: str,
        installments: int,
        identity: CustomerIdentity,
        reference: Optional[str] = None,
    ) -> CardPaymentResult:
        """Charge a tokenized card."""

    @abstractmethod
    async def create_offline_payment(
        self,
        amount: Decimal,
        identity: CustomerIdentity,
        reference: Optional[str] = None,
    ) -> OfflinePaymentResult:
        """Register an offline (Pix) payment awaiting the payer."""

    @abstractmethod
    async def query_status(self, provider_reference: str) -> PaymentStatus:
        """Fetch the authoritative status of a payment."""

    @abstractmethod
    async def refund(self, provider_reference: str, amount: Decimal) -> RefundResult:
        """Refund ``amount`` of a settled payment."""
