"""
First-order delivery fee waiver.

A customer is recognised by any of their identity keys (national ID,
email, storefront user id). An order is the customer's first iff none of
its keys has been seen on an earlier order. Checking and recording the
keys happen in one atomic store operation; after a grant the resolver
re-reads the grants so a double grant is surfaced instead of silently
kept.
"""

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict

from payment_guard.core.exceptions import RaceConditionDetected, ValidationError
from payment_guard.core.identity import normalize_national_id
from payment_guard.core.models import CustomerIdentity, DiscountDecision, OrderSnapshot
from payment_guard.core.vault import sha256_hex
from payment_guard.monitoring.logging import log_security_event
from payment_guard.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


class IdentityKey(BaseModel):
    """
    One customer identity key.

    ``value`` is a SHA-256 digest so order history never stores raw PII.
    """
    model_config = ConfigDict(frozen=True)

    kind: str
    value: str


def identity_keys(customer: CustomerIdentity) -> List[IdentityKey]:
    """Derive the hashed identity keys of a customer. Empty values are skipped."""
    raw = {
        "national_id": normalize_national_id(customer.national_id),
        "email": customer.email.strip().lower(),
        "user_id": (customer.user_id or "").strip(),
    }
    return [
        IdentityKey(kind=kind, value=sha256_hex(f"{kind}:{value}"))
        for kind, value in raw.items()
        if value
    ]


class OrderHistoryStore(ABC):
    """Records which orders each identity key has been seen on."""

    @abstractmethod
    async def claim_first_order(self, order_id: str, keys: Iterable[IdentityKey]) -> bool:
        """
        Atomically check and record ``keys`` for ``order_id``.

        Returns True iff no key was seen on another order, in which case a
        first-order grant is recorded as well. Claiming the same order
        again returns the original answer.
        """

    @abstractmethod
    async def first_order_grants(self, keys: Iterable[IdentityKey]) -> List[str]:
        """Ids of every order granted a first-order waiver for any of ``keys``."""


class InMemoryOrderHistory(OrderHistoryStore):
    """Process-local order history guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._owners: Dict[IdentityKey, str] = {}
        self._grants: Dict[str, Set[IdentityKey]] = {}
        self._lock = asyncio.Lock()

    async def claim_first_order(self, order_id: str, keys: Iterable[IdentityKey]) -> bool:
        keys = list(keys)
        async with self._lock:
            if order_id in self._grants:
                return True
            seen_elsewhere = any(
                key in self._owners and self._owners[key] != order_id for key in keys
            )
            for key in keys:
                self._owners.setdefault(key, order_id)
            if seen_elsewhere:
                return False
            self._grants[order_id] = set(keys)
            return True

    async def first_order_grants(self, keys: Iterable[IdentityKey]) -> List[str]:
        wanted = set(keys)
        return sorted(
            order_id for order_id, granted in self._grants.items() if granted & wanted
        )


class DiscountResolver:
    """Decides whether an order gets its delivery fee waived."""

    def __init__(self, store: OrderHistoryStore):
        self.store = store

    async def resolve(
        self, order: OrderSnapshot, delivery_fee: Optional[Decimal] = None
    ) -> DiscountDecision:
        """
        Resolve the first-order waiver for ``order``.

        A snapshot already marked as not first is charged the fee without
        touching order history. One marked as first is still claimed, so a
        caller cannot grant the waiver by setting the flag.

        Raises:
            ValidationError: The customer has no usable identity key
            RaceConditionDetected: The waiver ended up granted to more
                than one order for the same customer
        """
        fee = order.delivery_fee if delivery_fee is None else Decimal(delivery_fee)
        if fee < ZERO:
            raise ValidationError("Delivery fee cannot be negative")

        if order.is_first_order is False:
            return self._decision(order.order_id, False, fee)

        keys = identity_keys(order.customer)
        if not keys:
            raise ValidationError("At least one customer identity key is required")

        is_first = await self.store.claim_first_order(order.order_id, keys)
        if order.is_first_order and not is_first:
            log_security_event(
                "first_order_flag_rejected",
                "UnverifiedFirstOrder",
                order_id=order.order_id,
            )
        if is_first:
            grants = await self.store.first_order_grants(keys)
            if len(set(grants)) > 1:
                metrics.record_first_order_double_grant()
                log_security_event(
                    "first_order_double_grant",
                    "RaceConditionDetected",
                    order_id=order.order_id,
                    conflicting_orders=sorted(set(grants)),
                )
                raise RaceConditionDetected(
                    "First-order discount granted to more than one order",
                    order_ids=list(set(grants)),
                )
            metrics.record_first_order_grant()

        logger.info(
            "first_order_resolved",
            order_id=order.order_id,
            is_first_order=is_first,
            key_kinds=[k.kind for k in keys],
        )
        return self._decision(order.order_id, is_first, fee)

    @staticmethod
    def _decision(order_id: str, is_first: bool, fee: Decimal) -> DiscountDecision:
        return DiscountDecision(
            order_id=order_id,
            is_first_order=is_first,
            delivery_fee=ZERO if is_first else fee,
            original_delivery_fee=fee,
        )
