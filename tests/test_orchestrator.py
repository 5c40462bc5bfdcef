"""
Tests for the payment orchestrator.
"""
import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from payment_guard.core.discount import DiscountResolver, identity_keys
from payment_guard.core.exceptions import (
    EncryptionError,
    GatewayTimeout,
    InvalidAmount,
    InvalidNationalId,
    PaymentNotFound,
    PaymentNotRefundable,
    ValidationError,
)
from payment_guard.core.models import (
    CardPaymentRequest,
    OfflinePaymentRequest,
    PaymentMethod,
    PaymentStatus,
    RiskLevel,
    StatusUpdate,
)
from payment_guard.core.orchestrator import PaymentOrchestrator
from payment_guard.core.payment_code import crc16_ccitt
from payment_guard.core.vault import EncryptionVault
from payment_guard.integrations.velocity import VelocityTracker
from tests.conftest import FIXED_NOW, TEST_KEY_HEX


def card_request(order, **overrides) -> CardPaymentRequest:
    data = {"order": order, "card_token": "tok_visa", "installments": 1}
    data.update(overrides)
    return CardPaymentRequest(**data)


def build_orchestrator(gateway, payment_store, order_history, **overrides) -> PaymentOrchestrator:
    data = {
        "gateway": gateway,
        "store": payment_store,
        "vault": EncryptionVault(bytes.fromhex(TEST_KEY_HEX)),
        "discount_resolver": DiscountResolver(order_history),
        "gateway_timeout_seconds": 1.0,
        "clock": lambda: FIXED_NOW,
    }
    data.update(overrides)
    return PaymentOrchestrator(**data)


class BrokenVault(EncryptionVault):
    def encrypt_json(self, payload):
        raise EncryptionError("Encryption failed")


class TestCardPayments:
    """Test suite for card payments."""

    @pytest.mark.asyncio
    async def test_first_order_is_charged_without_delivery_fee(self, orchestrator, gateway, payment_store, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        assert outcome.proceed is True
        assert outcome.discount.is_first_order is True
        assert outcome.record.amount == Decimal("140.00")
        assert outcome.record.status == PaymentStatus.APPROVED
        assert outcome.record.method == PaymentMethod.CARD
        assert gateway.calls[0] == ("create_card_payment", Decimal("140.00"), "tok_visa", 1, "order-1")
        assert await payment_store.get(outcome.record.payment_id) == outcome.record

    @pytest.mark.asyncio
    async def test_repeat_customer_pays_delivery_fee(self, orchestrator, make_order) -> None:
        await orchestrator.process_card_payment(card_request(make_order("order-1")))
        outcome = await orchestrator.process_card_payment(card_request(make_order("order-2")))

        assert outcome.discount.is_first_order is False
        assert outcome.record.amount == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_record_holds_no_raw_pii(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_card_payment(
            card_request(make_order(), card_number="4111 1111 1111 1234")
        )
        record = outcome.record
        serialized = record.model_dump_json()

        assert record.masked_identity.national_id == "***.982.***-**"
        assert record.masked_identity.email == "j***o@e***e.com"
        assert record.masked_card == "**** **** **** 1234"
        assert "52998224725" not in serialized
        assert "529.982.247-25" not in serialized
        assert "joao@example.com" not in serialized
        assert "4111 1111" not in serialized
        assert "tok_visa" not in serialized

    @pytest.mark.asyncio
    async def test_risk_is_scored(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        assert outcome.record.risk_score == 10
        assert outcome.record.risk_level == RiskLevel.LOW
        assert outcome.record.risk_factors == ["card payment"]

    @pytest.mark.asyncio
    async def test_risk_hour_taken_in_local_time(self, gateway, payment_store, order_history, make_order) -> None:
        # 03:00 in Sao Paulo
        night = datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)
        orchestrator = build_orchestrator(gateway, payment_store, order_history, clock=lambda: night)

        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        assert "unusual hour" in outcome.record.risk_factors
        assert outcome.record.risk_score == 25

    @pytest.mark.asyncio
    async def test_velocity_feeds_risk_and_is_recorded(self, gateway, payment_store, order_history, make_order) -> None:
        velocity = AsyncMock(spec=VelocityTracker)
        velocity.recent_count.return_value = 6
        orchestrator = build_orchestrator(gateway, payment_store, order_history, velocity=velocity)

        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        assert "high frequency" in outcome.record.risk_factors
        assert outcome.record.risk_level == RiskLevel.MEDIUM
        velocity.recent_count.assert_awaited_once_with("52998224725")
        velocity.record.assert_awaited_once_with("52998224725", outcome.record.payment_id)

    @pytest.mark.asyncio
    async def test_declined_card_does_not_proceed(self, orchestrator, gateway, payment_store, make_order) -> None:
        gateway.card_status = PaymentStatus.REJECTED

        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        assert outcome.proceed is False
        assert (await payment_store.get(outcome.record.payment_id)).status == PaymentStatus.REJECTED

    @pytest.mark.asyncio
    async def test_pending_card_proceeds(self, orchestrator, gateway, make_order) -> None:
        gateway.card_status = PaymentStatus.PENDING
        outcome = await orchestrator.process_card_payment(card_request(make_order()))
        assert outcome.proceed is True

    @pytest.mark.asyncio
    async def test_invalid_national_id_never_reaches_gateway(self, orchestrator, gateway, make_order, customer) -> None:
        bad = customer.model_copy(update={"national_id": "123.456.789-00"})

        with pytest.raises(InvalidNationalId):
            await orchestrator.process_card_payment(card_request(make_order(customer=bad)))

        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_fee_above_amount_rejected(self, orchestrator, gateway, make_order) -> None:
        with pytest.raises(InvalidAmount):
            await orchestrator.process_card_payment(
                card_request(make_order(amount=Decimal("5.00"), delivery_fee=Decimal("10.00")))
            )
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_nothing_left_to_charge(self, orchestrator, gateway, make_order) -> None:
        with pytest.raises(InvalidAmount):
            await orchestrator.process_card_payment(
                card_request(make_order(amount=Decimal("10.00"), delivery_fee=Decimal("10.00")))
            )
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_gateway_timeout_persists_nothing(self, gateway, payment_store, order_history, make_order) -> None:
        gateway.delay_seconds = 1.0
        orchestrator = build_orchestrator(
            gateway, payment_store, order_history, gateway_timeout_seconds=0.05
        )

        with pytest.raises(GatewayTimeout) as exc_info:
            await orchestrator.process_card_payment(card_request(make_order()))

        assert exc_info.value.retryable is True
        assert await payment_store.list_pending(datetime.max.replace(tzinfo=timezone.utc)) == []

    @pytest.mark.asyncio
    async def test_retry_after_timeout_keeps_waiver(self, gateway, payment_store, order_history, make_order) -> None:
        gateway.delay_seconds = 1.0
        slow = build_orchestrator(gateway, payment_store, order_history, gateway_timeout_seconds=0.05)
        with pytest.raises(GatewayTimeout):
            await slow.process_card_payment(card_request(make_order()))

        gateway.delay_seconds = 0
        fast = build_orchestrator(gateway, payment_store, order_history)
        outcome = await fast.process_card_payment(card_request(make_order()))

        assert outcome.discount.is_first_order is True
        assert outcome.record.amount == Decimal("140.00")

    @pytest.mark.asyncio
    async def test_encryption_failure_fails_closed(self, gateway, payment_store, order_history, make_order) -> None:
        orchestrator = build_orchestrator(
            gateway, payment_store, order_history, vault=BrokenVault(bytes.fromhex(TEST_KEY_HEX))
        )

        with pytest.raises(EncryptionError):
            await orchestrator.process_card_payment(card_request(make_order()))

        assert await payment_store.get_by_provider_reference("pi_test_1") is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_first_orders_waive_once(self, orchestrator, make_order) -> None:
        outcomes = await asyncio.gather(
            *(orchestrator.process_card_payment(card_request(make_order(f"order-{i}"))) for i in range(5))
        )

        assert sorted(o.record.amount for o in outcomes) == [Decimal("140.00")] + [Decimal("150.00")] * 4


class TestOfflinePayments:

    @pytest.mark.asyncio
    async def test_payment_code_is_built_locally(self, orchestrator, gateway, make_order) -> None:
        outcome = await orchestrator.process_offline_payment(
            OfflinePaymentRequest(order=make_order(), description="Pedido 1")
        )
        code = outcome.record.payment_code

        assert outcome.record.method == PaymentMethod.OFFLINE_CODE
        assert outcome.record.status == PaymentStatus.PENDING
        assert outcome.proceed is True
        assert code.startswith("000201")
        assert "5406140.00" in code
        assert "0506order1" in code
        assert code[-4:] == f"{crc16_ccitt(code[:-4].encode('ascii')):04X}"
        assert gateway.calls == [("create_offline_payment", Decimal("140.00"), "order-1")]

    @pytest.mark.asyncio
    async def test_offline_payments_are_scored_without_card_points(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_offline_payment(OfflinePaymentRequest(order=make_order()))
        assert outcome.record.risk_score == 0

    @pytest.mark.asyncio
    async def test_provider_code_kept_encrypted(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_offline_payment(OfflinePaymentRequest(order=make_order()))

        revealed = await orchestrator.reveal_sensitive(outcome.record.payment_id)

        assert revealed["provider_code"] == "00020101021226provider"
        assert "00020101021226provider" not in outcome.record.model_dump_json()

    @pytest.mark.asyncio
    async def test_unconfigured_payee(self, gateway, payment_store, order_history, make_order, customer) -> None:
        orchestrator = build_orchestrator(gateway, payment_store, order_history, payee=None)

        with pytest.raises(ValidationError):
            await orchestrator.process_offline_payment(OfflinePaymentRequest(order=make_order()))

        assert gateway.calls == []
        assert await order_history.first_order_grants(identity_keys(customer)) == []

    @pytest.mark.asyncio
    async def test_unencodable_code_never_reaches_gateway(self, orchestrator, gateway, payment_store, make_order) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.process_offline_payment(
                OfflinePaymentRequest(order=make_order(), description="x" * 90)
            )

        assert gateway.calls == []
        assert await payment_store.list_pending(datetime.max.replace(tzinfo=timezone.utc)) == []

        outcome = await orchestrator.process_offline_payment(
            OfflinePaymentRequest(order=make_order(), description="Pedido 1")
        )
        assert outcome.record.amount == Decimal("140.00")


class TestStatusAndSensitiveData:

    @pytest.mark.asyncio
    async def test_refresh_status_applies_gateway_answer(self, orchestrator, gateway, payment_store, make_order) -> None:
        gateway.card_status = PaymentStatus.PENDING
        outcome = await orchestrator.process_card_payment(card_request(make_order()))
        gateway.query_results = [PaymentStatus.APPROVED]

        update = await orchestrator.refresh_status(outcome.record.payment_id)

        assert update == StatusUpdate.APPLIED
        assert (await payment_store.get(outcome.record.payment_id)).status == PaymentStatus.APPROVED

    @pytest.mark.asyncio
    async def test_refresh_unknown_payment(self, orchestrator) -> None:
        with pytest.raises(PaymentNotFound):
            await orchestrator.refresh_status("missing")

    @pytest.mark.asyncio
    async def test_reveal_sensitive(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_card_payment(
            card_request(make_order(), installments=3)
        )

        revealed = await orchestrator.reveal_sensitive(outcome.record.payment_id)

        assert revealed["order_id"] == "order-1"
        assert revealed["provider_reference"] == outcome.record.provider_reference
        assert revealed["customer"]["national_id"] == "529.982.247-25"
        assert revealed["card_token"] == "tok_visa"
        assert revealed["installments"] == 3

    @pytest.mark.asyncio
    async def test_reveal_unknown_payment(self, orchestrator) -> None:
        with pytest.raises(PaymentNotFound):
            await orchestrator.reveal_sensitive("missing")


class TestRefunds:
    """Test suite for refunds."""

    @pytest.mark.asyncio
    async def test_full_refund(self, orchestrator, gateway, payment_store, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))
        record = outcome.record

        result = await orchestrator.refund_payment(record.payment_id)

        assert result.amount == Decimal("140.00")
        assert gateway.calls[-1] == ("refund", record.provider_reference, Decimal("140.00"))
        assert (await payment_store.get(record.payment_id)).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_partial_refund(self, orchestrator, gateway, payment_store, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        result = await orchestrator.refund_payment(outcome.record.payment_id, Decimal("40.00"))

        assert result.amount == Decimal("40.00")
        assert (await payment_store.get(outcome.record.payment_id)).status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [Decimal("140.01"), Decimal("0"), Decimal("-1")])
    async def test_refund_amount_bounds(self, orchestrator, gateway, payment_store, make_order, amount) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        with pytest.raises(InvalidAmount):
            await orchestrator.refund_payment(outcome.record.payment_id, amount)

        assert [c[0] for c in gateway.calls] == ["create_card_payment"]
        assert (await payment_store.get(outcome.record.payment_id)).status == PaymentStatus.APPROVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.REJECTED])
    async def test_only_approved_payments_are_refunded(self, orchestrator, gateway, make_order, status) -> None:
        gateway.card_status = status
        outcome = await orchestrator.process_card_payment(card_request(make_order()))

        with pytest.raises(PaymentNotRefundable) as exc_info:
            await orchestrator.refund_payment(outcome.record.payment_id)

        assert isinstance(exc_info.value, ValidationError)
        assert [c[0] for c in gateway.calls] == ["create_card_payment"]

    @pytest.mark.asyncio
    async def test_second_refund_rejected(self, orchestrator, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))
        await orchestrator.refund_payment(outcome.record.payment_id)

        with pytest.raises(PaymentNotRefundable):
            await orchestrator.refund_payment(outcome.record.payment_id)

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_status(self, orchestrator, gateway, payment_store, make_order) -> None:
        outcome = await orchestrator.process_card_payment(card_request(make_order()))
        gateway.refund_errors = [GatewayTimeout("slow")]

        with pytest.raises(GatewayTimeout):
            await orchestrator.refund_payment(outcome.record.payment_id)

        assert (await payment_store.get(outcome.record.payment_id)).status == PaymentStatus.APPROVED

    @pytest.mark.asyncio
    async def test_refund_unknown_payment(self, orchestrator) -> None:
        with pytest.raises(PaymentNotFound):
            await orchestrator.refund_payment("missing")
