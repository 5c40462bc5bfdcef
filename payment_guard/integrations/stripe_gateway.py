"""
Stripe adapter for the payment gateway boundary.

Implements:
- Card payments as confirmed PaymentIntents on a tokenized card
- Offline (Pix) payments as PaymentIntents awaiting the payer
- Status queries mapped onto the core status set
- Refunds of settled PaymentIntents
- Circuit breaker around every SDK call
"""
import asyncio
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional

import stripe
import structlog

from payment_guard.core.exceptions import GatewayRejected, GatewayTimeout
from payment_guard.core.models import CustomerIdentity, PaymentStatus
from payment_guard.integrations.gateway import (
    CardPaymentResult,
    GatewayClient,
    OfflinePaymentResult,
    RefundResult,
)
from payment_guard.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CURRENCY = "brl"

# PaymentIntent statuses that still wait on the payer or the issuer
_PENDING_INTENT_STATUSES = frozenset(
    {
        "requires_payment_method",
        "requires_confirmation",
        "requires_action",
        "processing",
        "requires_capture",
    }
)


def to_minor_units(amount: Decimal) -> int:
    """Convert a BRL amount to centavos."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_intent_status(intent: Any, confirmed_card: bool = False) -> PaymentStatus:
    """
    Map a PaymentIntent onto the core status set.

    A confirmed card intent that falls back to ``requires_payment_method``
    was declined.
    """
    status = intent.status
    if status == "succeeded":
        charge = getattr(intent, "latest_charge", None)
        if charge is not None and not isinstance(charge, str) and getattr(charge, "refunded", False):
            return PaymentStatus.REFUNDED
        return PaymentStatus.APPROVED
    if status == "canceled":
        return PaymentStatus.CANCELLED
    if status == "requires_payment_method" and confirmed_card:
        return PaymentStatus.REJECTED
    if status in _PENDING_INTENT_STATUSES:
        return PaymentStatus.PENDING
    raise GatewayRejected(f"Unexpected PaymentIntent status: {status}")


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops sending requests for ``timeout`` seconds once ``failure_threshold``
    consecutive calls have failed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking SDK call in a worker thread under breaker protection.

        Raises:
            GatewayRejected: If the circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self._clock() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise GatewayRejected("Circuit breaker is open", circuit_state="open")

        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("circuit_breaker_state_changed", old=self.state, new=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeGatewayClient(GatewayClient):
    """
    Stripe-backed :class:`GatewayClient`.

    The SDK is synchronous; calls run on a worker thread so the event loop
    stays free. The caller applies the overall timeout.
    """

    def __init__(
        self,
        api_key: str,
        api_version: Optional[str] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[stripe.StripeClient] = None,
    ):
        self._client = client or stripe.StripeClient(api_key, stripe_version=api_version)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=api_key.startswith("sk_test_"),
        )

    @classmethod
    def from_settings(cls, settings) -> "StripeGatewayClient":
        if settings.stripe_secret_key is None:
            raise ValueError("STRIPE_SECRET_KEY is not configured")
        return cls(
            settings.stripe_secret_key.get_secret_value(),
            api_version=settings.stripe_api_version,
        )

    async def create_card_payment(
        self,
        amount: Decimal,
        token: str,
        installments: int,
        identity: CustomerIdentity,
        reference: Optional[str] = None,
    ) -> CardPaymentResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": CURRENCY,
            "confirm": True,
            "payment_method_types": ["card"],
            "payment_method_data": {"type": "card", "card": {"token": token}},
            "receipt_email": identity.email,
            "metadata": {"order_id": reference or "", "installments": str(installments)},
        }
        intent = await self._call("create_card_payment", self._create_intent, params, reference)
        return CardPaymentResult(
            provider_reference=intent.id,
            status=map_intent_status(intent, confirmed_card=True),
        )

    async def create_offline_payment(
        self,
        amount: Decimal,
        identity: CustomerIdentity,
        reference: Optional[str] = None,
    ) -> OfflinePaymentResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": CURRENCY,
            "confirm": True,
            "payment_method_types": ["pix"],
            "payment_method_data": {
                "type": "pix",
                "billing_details": {
                    "name": f"{identity.first_name} {identity.last_name}",
                    "email": identity.email,
                },
            },
            "metadata": {"order_id": reference or ""},
        }
        intent = await self._call(
            "create_offline_payment", self._create_intent, params, reference
        )
        return OfflinePaymentResult(
            provider_reference=intent.id,
            raw_code=self._pix_code(intent),
            status=map_intent_status(intent),
        )

    async def query_status(self, provider_reference: str) -> PaymentStatus:
        intent = await self._call(
            "query_status",
            self._client.payment_intents.retrieve,
            provider_reference,
            {"expand": ["latest_charge"]},
        )
        return map_intent_status(intent)

    async def refund(self, provider_reference: str, amount: Decimal) -> RefundResult:
        cents = to_minor_units(amount)
        refund = await self._call("refund", self._create_refund, provider_reference, cents)
        return RefundResult(
            provider_reference=provider_reference,
            refund_id=refund.id,
            amount=Decimal(refund.amount) / 100,
        )

    def _create_intent(self, params: Dict[str, Any], reference: Optional[str]) -> Any:
        options = {"idempotency_key": f"payment-guard:{reference}"} if reference else None
        return self._client.payment_intents.create(params=params, options=options)

    def _create_refund(self, provider_reference: str, cents: int) -> Any:
        return self._client.refunds.create(
            params={"payment_intent": provider_reference, "amount": cents},
            options={"idempotency_key": f"payment-guard:refund:{provider_reference}:{cents}"},
        )

    @staticmethod
    def _pix_code(intent: Any) -> Optional[str]:
        next_action = getattr(intent, "next_action", None)
        display = getattr(next_action, "pix_display_qr_code", None) if next_action else None
        return getattr(display, "data", None) if display else None

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        start = time.perf_counter()
        try:
            result = await self.circuit_breaker.call(func, *args)
        except stripe.APIConnectionError as e:
            metrics.record_gateway_call(operation, "timeout", time.perf_counter() - start)
            logger.error("gateway_connection_failed", operation=operation, error=str(e))
            raise GatewayTimeout("Gateway connection failed", operation=operation) from e
        except stripe.StripeError as e:
            metrics.record_gateway_call(operation, "rejected", time.perf_counter() - start)
            logger.error(
                "gateway_request_rejected",
                operation=operation,
                error_code=getattr(e, "code", None),
                http_status=getattr(e, "http_status", None),
            )
            raise GatewayRejected(
                "Gateway rejected the request",
                operation=operation,
                provider_code=getattr(e, "code", None),
            ) from e
        metrics.record_gateway_call(operation, "success", time.perf_counter() - start)
        return result
