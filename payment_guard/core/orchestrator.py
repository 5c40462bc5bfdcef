"""
Payment orchestration for card and offline (Pix) payments.

Orchestrates the complete payment flow:
1. Gate on amount and national ID checksum
2. Resolve the first-order delivery fee waiver
3. Build the payment code (offline only)
4. Look up recent activity and score the risk
5. Call the gateway under a timeout
6. Encrypt the sensitive payload and mask the identity
7. Persist the record and count it for velocity

Approved payments can later be refunded in full or in part.
"""
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
from zoneinfo import ZoneInfo

import structlog

from payment_guard.core.discount import DiscountResolver
from payment_guard.core.exceptions import (
    InvalidAmount,
    PaymentNotFound,
    PaymentNotRefundable,
    ValidationError,
)
from payment_guard.core.identity import IdentityValidator, normalize_national_id
from payment_guard.core.masking import PIIMasker
from payment_guard.core.models import (
    CardPaymentRequest,
    DiscountDecision,
    OfflinePaymentRequest,
    OrderSnapshot,
    PaymentMethod,
    PaymentOutcome,
    PaymentRecord,
    PaymentStatus,
    RiskAssessment,
    StatusUpdate,
    utcnow,
)
from payment_guard.core.payment_code import PayeeAccount, PaymentCodeEncoder
from payment_guard.core.risk_scorer import RiskScorer
from payment_guard.core.store import PaymentStore
from payment_guard.core.vault import EncryptionVault
from payment_guard.integrations.gateway import GatewayClient, RefundResult, call_with_timeout
from payment_guard.integrations.velocity import VelocityTracker
from payment_guard.monitoring.logging import log_security_event
from payment_guard.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROCEED_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.APPROVED})


class PaymentOrchestrator:
    """
    Main payment orchestrator.

    Never retries: a :class:`GatewayTimeout` leaves nothing persisted and
    the caller decides whether to try again.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        store: PaymentStore,
        vault: EncryptionVault,
        discount_resolver: DiscountResolver,
        masker: Optional[PIIMasker] = None,
        scorer: Optional[RiskScorer] = None,
        validator: Optional[IdentityValidator] = None,
        encoder: Optional[PaymentCodeEncoder] = None,
        velocity: Optional[VelocityTracker] = None,
        payee: Optional[PayeeAccount] = None,
        gateway_timeout_seconds: float = 15.0,
        timezone: str = "America/Sao_Paulo",
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the orchestrator.

        Args:
            gateway: Payment gateway client
            store: Payment record store
            vault: Encryption vault for the sensitive payload
            discount_resolver: First-order waiver resolver
            velocity: Optional recent-activity counter; without it every
                customer scores as having no recent payments
            payee: Merchant account used for offline payment codes
            gateway_timeout_seconds: Upper bound on every gateway call
            timezone: Zone in which the risk hour of day is taken
        """
        self.gateway = gateway
        self.store = store
        self.vault = vault
        self.discount_resolver = discount_resolver
        self.masker = masker or PIIMasker()
        self.scorer = scorer or RiskScorer()
        self.validator = validator or IdentityValidator()
        self.encoder = encoder or PaymentCodeEncoder()
        self.velocity = velocity
        self.payee = payee
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.timezone = ZoneInfo(timezone)
        self._clock = clock

    async def process_card_payment(self, request: CardPaymentRequest) -> PaymentOutcome:
        """
        Charge a tokenized card for an order.

        Raises:
            ValidationError: Bad amount or national ID
            RaceConditionDetected: First-order waiver double grant
            GatewayError: Gateway timed out or refused; nothing persisted
            EncryptionError: Sensitive payload could not be encrypted
        """
        start = time.perf_counter()
        order = request.order
        national_id = self._gate(order)

        discount = await self.discount_resolver.resolve(order)
        amount = self._charge_amount(order, discount)
        assessment = await self._assess(national_id, amount, PaymentMethod.CARD)

        result = await self._call_gateway(
            "create_card_payment",
            self.gateway.create_card_payment(
                amount,
                request.card_token,
                request.installments,
                order.customer,
                reference=order.order_id,
            ),
        )

        sensitive = self._sensitive_payload(order, result.provider_reference)
        sensitive["card_token"] = request.card_token
        sensitive["installments"] = request.installments
        record = self._build_record(
            order=order,
            method=PaymentMethod.CARD,
            amount=amount,
            status=result.status,
            assessment=assessment,
            provider_reference=result.provider_reference,
            sensitive=sensitive,
            masked_card=(
                self.masker.mask_card_number(request.card_number)
                if request.card_number
                else None
            ),
        )
        return await self._finish(record, national_id, discount, start)

    async def process_offline_payment(self, request: OfflinePaymentRequest) -> PaymentOutcome:
        """
        Register an offline payment and build its copy-and-paste code.

        The code is always encoded locally from the configured payee so its
        format does not depend on the gateway.
        """
        start = time.perf_counter()
        order = request.order
        national_id = self._gate(order)
        if self.payee is None or not self.payee.is_configured:
            raise ValidationError("Offline payee account is not configured")

        discount = await self.discount_resolver.resolve(order)
        amount = self._charge_amount(order, discount)

        # Encode first: a rejected code must not leave a provider payment behind
        payment_code = self.encoder.encode(
            payee_key=self.payee.key,
            payee_name=self.payee.name,
            payee_city=self.payee.city,
            amount=amount,
            reference_label=order.order_id,
            description=request.description,
        )
        assessment = await self._assess(national_id, amount, PaymentMethod.OFFLINE_CODE)

        result = await self._call_gateway(
            "create_offline_payment",
            self.gateway.create_offline_payment(
                amount, order.customer, reference=order.order_id
            ),
        )

        sensitive = self._sensitive_payload(order, result.provider_reference)
        if result.raw_code:
            sensitive["provider_code"] = result.raw_code
        record = self._build_record(
            order=order,
            method=PaymentMethod.OFFLINE_CODE,
            amount=amount,
            status=result.status,
            assessment=assessment,
            provider_reference=result.provider_reference,
            sensitive=sensitive,
            payment_code=payment_code,
        )
        return await self._finish(record, national_id, discount, start)

    async def refresh_status(self, payment_id: str) -> StatusUpdate:
        """
        Re-query the gateway for a payment and apply the answer.

        Raises:
            PaymentNotFound: No record with this id
            GatewayError: Status query failed
        """
        record = await self.store.get(payment_id)
        if record is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")

        status = await self._call_gateway(
            "query_status", self.gateway.query_status(record.provider_reference)
        )
        update = await self.store.apply_status(record.provider_reference, status)
        logger.info(
            "payment_status_refreshed",
            payment_id=payment_id,
            previous_status=record.status.value,
            gateway_status=status.value,
            outcome=update.value,
        )
        return update

    async def refund_payment(
        self, payment_id: str, amount: Optional[Decimal] = None
    ) -> RefundResult:
        """
        Refund an approved payment, in full or in part.

        Args:
            payment_id: Record to refund
            amount: Amount to give back, defaults to the charged amount

        Returns:
            RefundResult: Gateway refund reference and amount

        Raises:
            PaymentNotFound: No record with this id
            PaymentNotRefundable: Record is not APPROVED
            InvalidAmount: Amount not positive or above the charged amount
            GatewayError: Gateway timed out or refused; status unchanged
        """
        record = await self.store.get(payment_id)
        if record is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if record.status != PaymentStatus.APPROVED:
            raise PaymentNotRefundable(
                f"Payment in status {record.status.value} cannot be refunded",
                payment_id=payment_id,
            )

        refund_amount = record.amount if amount is None else Decimal(amount)
        if refund_amount <= 0:
            raise InvalidAmount("Refund amount must be positive", payment_id=payment_id)
        if refund_amount > record.amount:
            raise InvalidAmount(
                "Refund amount exceeds the charged amount", payment_id=payment_id
            )

        result = await self._call_gateway(
            "refund", self.gateway.refund(record.provider_reference, refund_amount)
        )
        update = await self.store.apply_status(
            record.provider_reference, PaymentStatus.REFUNDED
        )
        metrics.record_refund(update.value)
        if update != StatusUpdate.APPLIED:
            logger.warning(
                "payment_refund_status_not_applied",
                payment_id=payment_id,
                refund_id=result.refund_id,
                outcome=update.value,
            )
        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            refund_id=result.refund_id,
            amount=str(result.amount),
            partial=refund_amount < record.amount,
            outcome=update.value,
        )
        return result

    async def reveal_sensitive(self, payment_id: str) -> Dict[str, Any]:
        """
        Decrypt the sensitive payload of a record. Privileged callers only.

        Raises:
            PaymentNotFound: No record with this id
            DecryptionError: Blob corrupted or key mismatch
        """
        record = await self.store.get(payment_id)
        if record is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        payload = self.vault.decrypt_json(record.encrypted_blob)
        log_security_event("sensitive_payload_revealed", "PrivilegedAccess", payment_id=payment_id)
        return payload

    def _gate(self, order: OrderSnapshot) -> str:
        if order.amount <= 0:
            raise InvalidAmount("Order amount must be positive", order_id=order.order_id)
        if order.delivery_fee > order.amount:
            raise InvalidAmount(
                "Delivery fee cannot exceed the order amount", order_id=order.order_id
            )
        try:
            return self.validator.require(order.customer.national_id)
        except ValidationError:
            logger.warning("payment_identity_rejected", order_id=order.order_id)
            raise

    @staticmethod
    def _charge_amount(order: OrderSnapshot, discount: DiscountDecision) -> Decimal:
        amount = order.amount - discount.waived_fee
        if amount <= 0:
            raise InvalidAmount(
                "Nothing left to charge after the delivery fee waiver",
                order_id=order.order_id,
            )
        return amount

    async def _assess(
        self, national_id: str, amount: Decimal, method: PaymentMethod
    ) -> RiskAssessment:
        recent = await self.velocity.recent_count(national_id) if self.velocity else 0
        hour = self._clock().astimezone(self.timezone).hour
        assessment = self.scorer.score(amount, method, hour, recent)
        metrics.record_risk_level(assessment.level.value)
        return assessment

    async def _call_gateway(self, operation: str, call: Awaitable[T]) -> T:
        return await call_with_timeout(operation, call, self.gateway_timeout_seconds)

    @staticmethod
    def _sensitive_payload(order: OrderSnapshot, provider_reference: str) -> Dict[str, Any]:
        return {
            "order_id": order.order_id,
            "provider_reference": provider_reference,
            "customer": order.customer.model_dump(),
        }

    def _build_record(
        self,
        order: OrderSnapshot,
        method: PaymentMethod,
        amount: Decimal,
        status: PaymentStatus,
        assessment: RiskAssessment,
        provider_reference: str,
        sensitive: Dict[str, Any],
        masked_card: Optional[str] = None,
        payment_code: Optional[str] = None,
    ) -> PaymentRecord:
        customer = order.customer
        customer_key = self.vault.hash_identifier(normalize_national_id(customer.national_id))
        return PaymentRecord(
            order_id=order.order_id,
            method=method,
            amount=amount,
            status=status,
            masked_identity=self.masker.mask_identity(customer),
            masked_card=masked_card,
            encrypted_blob=self.vault.encrypt_json(sensitive),
            risk_score=assessment.score,
            risk_level=assessment.level,
            risk_factors=assessment.factors,
            fingerprint=self.vault.fingerprint(customer_key, order.order_id),
            provider_reference=provider_reference,
            payment_code=payment_code,
            created_at=self._clock(),
        )

    async def _finish(
        self,
        record: PaymentRecord,
        national_id: str,
        discount: DiscountDecision,
        start: float,
    ) -> PaymentOutcome:
        await self.store.add(record)
        if self.velocity:
            await self.velocity.record(national_id, record.payment_id)

        proceed = record.status in PROCEED_STATUSES
        metrics.record_payment(
            record.method.value, record.status.value, time.perf_counter() - start
        )
        logger.info(
            "payment_processed",
            payment_id=record.payment_id,
            order_id=record.order_id,
            method=record.method.value,
            status=record.status.value,
            risk_level=record.risk_level.value,
            risk_score=record.risk_score,
            first_order=discount.is_first_order,
            proceed=proceed,
        )
        return PaymentOutcome(record=record, proceed=proceed, discount=discount)
