"""
Tests for the first-order delivery fee waiver.

The race tests run concurrent claims for the same customer and assert
that exactly one order is granted the waiver.
"""
import asyncio
from decimal import Decimal
from typing import Iterable, List

import pytest

from payment_guard.core.discount import (
    DiscountResolver,
    IdentityKey,
    InMemoryOrderHistory,
    OrderHistoryStore,
    identity_keys,
)
from payment_guard.core.exceptions import RaceConditionDetected, ValidationError
from payment_guard.core.models import CustomerIdentity
from payment_guard.database.repository import SqlOrderHistory
from tests.conftest import OTHER_VALID_NATIONAL_ID


class TestIdentityKeys:

    @pytest.mark.unit
    def test_three_hashed_keys(self, customer: CustomerIdentity) -> None:
        keys = identity_keys(customer)

        assert [k.kind for k in keys] == ["national_id", "email", "user_id"]
        assert all(len(k.value) == 64 for k in keys)
        assert not any("52998224725" in k.value or "joao" in k.value for k in keys)

    @pytest.mark.unit
    def test_national_id_punctuation_ignored(self, customer: CustomerIdentity) -> None:
        bare = customer.model_copy(update={"national_id": "52998224725"})
        assert identity_keys(bare) == identity_keys(customer)

    @pytest.mark.unit
    def test_empty_values_skipped(self, customer: CustomerIdentity) -> None:
        keys = identity_keys(customer.model_copy(update={"user_id": None, "email": "  "}))
        assert [k.kind for k in keys] == ["national_id"]


class TestDiscountResolver:
    """Test suite for DiscountResolver."""

    @pytest.fixture
    def resolver(self, order_history: InMemoryOrderHistory) -> DiscountResolver:
        return DiscountResolver(order_history)

    @pytest.mark.asyncio
    async def test_first_order_waives_fee(self, resolver, make_order) -> None:
        decision = await resolver.resolve(make_order())

        assert decision.is_first_order is True
        assert decision.delivery_fee == Decimal("0")
        assert decision.original_delivery_fee == Decimal("10.00")
        assert decision.waived_fee == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_second_order_pays_fee(self, resolver, make_order) -> None:
        await resolver.resolve(make_order("order-1"))
        decision = await resolver.resolve(make_order("order-2"))

        assert decision.is_first_order is False
        assert decision.delivery_fee == Decimal("10.00")
        assert decision.waived_fee == Decimal("0")

    @pytest.mark.asyncio
    async def test_retry_of_same_order_keeps_waiver(self, resolver, make_order) -> None:
        first = await resolver.resolve(make_order("order-1"))
        again = await resolver.resolve(make_order("order-1"))

        assert first.is_first_order is True
        assert again.is_first_order is True

    @pytest.mark.asyncio
    async def test_any_shared_key_identifies_customer(self, resolver, make_order, customer) -> None:
        await resolver.resolve(make_order("order-1"))
        same_email = CustomerIdentity(
            first_name="Outra",
            last_name="Pessoa",
            national_id=OTHER_VALID_NATIONAL_ID,
            email="JOAO@example.com",
            phone="(21) 91234-5678",
        )

        decision = await resolver.resolve(make_order("order-2", customer=same_email))

        assert decision.is_first_order is False

    @pytest.mark.asyncio
    async def test_different_customers_both_first(self, resolver, make_order) -> None:
        other = CustomerIdentity(
            first_name="Maria",
            last_name="Souza",
            national_id=OTHER_VALID_NATIONAL_ID,
            email="maria@example.com",
            phone="(21) 91234-5678",
            user_id="user-2",
        )

        first = await resolver.resolve(make_order("order-1"))
        second = await resolver.resolve(make_order("order-2", customer=other))

        assert first.is_first_order and second.is_first_order

    @pytest.mark.asyncio
    async def test_snapshot_marked_not_first_is_not_claimed(self, resolver, make_order, order_history, customer) -> None:
        decision = await resolver.resolve(make_order(is_first_order=False))

        assert decision.is_first_order is False
        assert decision.delivery_fee == Decimal("10.00")
        assert await order_history.first_order_grants(identity_keys(customer)) == []

    @pytest.mark.asyncio
    async def test_snapshot_marked_first_is_still_claimed(self, resolver, make_order, order_history, customer) -> None:
        decision = await resolver.resolve(make_order(is_first_order=True))

        assert decision.is_first_order is True
        assert decision.delivery_fee == Decimal("0")
        assert await order_history.first_order_grants(identity_keys(customer)) == ["order-1"]

    @pytest.mark.asyncio
    async def test_first_order_flag_cannot_grant_repeat_customer(self, resolver, make_order) -> None:
        await resolver.resolve(make_order("order-1"))

        decision = await resolver.resolve(make_order("order-2", is_first_order=True))

        assert decision.is_first_order is False
        assert decision.delivery_fee == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_fee_override(self, resolver, make_order) -> None:
        decision = await resolver.resolve(make_order(), delivery_fee=Decimal("7.50"))

        assert decision.original_delivery_fee == Decimal("7.50")
        assert decision.delivery_fee == Decimal("0")

    @pytest.mark.asyncio
    async def test_negative_fee_rejected(self, resolver, make_order) -> None:
        with pytest.raises(ValidationError):
            await resolver.resolve(make_order(), delivery_fee=Decimal("-1"))

    @pytest.mark.asyncio
    async def test_customer_without_keys_rejected(self, resolver, make_order, customer) -> None:
        anonymous = customer.model_copy(update={"national_id": "", "email": "", "user_id": None})

        with pytest.raises(ValidationError):
            await resolver.resolve(make_order(customer=anonymous))


class RacyHistory(OrderHistoryStore):
    """Store that lets every claim through, as a broken backend would."""

    def __init__(self) -> None:
        self.granted: List[str] = []

    async def claim_first_order(self, order_id: str, keys: Iterable[IdentityKey]) -> bool:
        self.granted.append(order_id)
        return True

    async def first_order_grants(self, keys: Iterable[IdentityKey]) -> List[str]:
        return list(self.granted)


class TestConcurrentClaims:

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_in_memory_grants_exactly_once(self, order_history, make_order) -> None:
        resolver = DiscountResolver(order_history)

        decisions = await asyncio.gather(
            *(resolver.resolve(make_order(f"order-{i}")) for i in range(20))
        )

        assert sum(d.is_first_order for d in decisions) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_double_grant_is_surfaced(self, make_order) -> None:
        resolver = DiscountResolver(RacyHistory())
        await resolver.resolve(make_order("order-1"))

        with pytest.raises(RaceConditionDetected) as exc_info:
            await resolver.resolve(make_order("order-2"))

        assert exc_info.value.order_ids == ["order-1", "order-2"]
        assert exc_info.value.http_status == 409

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_sql_history_grants_exactly_once(self, session_factory, make_order) -> None:
        resolver = DiscountResolver(SqlOrderHistory(session_factory))

        decisions = await asyncio.gather(
            *(resolver.resolve(make_order(f"order-{i}")) for i in range(5))
        )

        winners = [d.order_id for d in decisions if d.is_first_order]
        assert len(winners) == 1


class TestSqlOrderHistory:

    @pytest.mark.asyncio
    async def test_claim_and_grants(self, session_factory, customer) -> None:
        history = SqlOrderHistory(session_factory)
        keys = identity_keys(customer)

        assert await history.claim_first_order("order-1", keys) is True
        assert await history.claim_first_order("order-2", keys) is False
        assert await history.first_order_grants(keys) == ["order-1"]

    @pytest.mark.asyncio
    async def test_claim_is_idempotent_per_order(self, session_factory, customer) -> None:
        history = SqlOrderHistory(session_factory)
        keys = identity_keys(customer)

        await history.claim_first_order("order-1", keys)
        await history.claim_first_order("order-2", keys)

        assert await history.claim_first_order("order-1", keys) is True
        assert await history.claim_first_order("order-2", keys) is False

    @pytest.mark.asyncio
    async def test_partial_key_overlap(self, session_factory, customer) -> None:
        history = SqlOrderHistory(session_factory)
        keys = identity_keys(customer)
        await history.claim_first_order("order-1", keys[:1])

        assert await history.claim_first_order("order-2", keys) is False

    @pytest.mark.asyncio
    async def test_empty_keys(self, session_factory) -> None:
        history = SqlOrderHistory(session_factory)

        assert await history.claim_first_order("order-1", []) is False
        assert await history.first_order_grants([]) == []
