"""
Payment record storage interface.

Records are append-only apart from ``status``, which only moves forward
along :data:`STATUS_TRANSITIONS`. ``apply_status`` is the single write path
for status changes and must behave as a compare-and-swap so duplicate and
out-of-order notifications can never regress a record.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from payment_guard.core.models import (
    PaymentRecord,
    PaymentStatus,
    StatusUpdate,
    can_transition,
)


class PaymentStore(ABC):
    """Persistence boundary for payment records."""

    @abstractmethod
    async def add(self, record: PaymentRecord) -> None:
        """Persist a new record."""

    @abstractmethod
    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        """Fetch a record by its payment id."""

    @abstractmethod
    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        """Fetch a record by the gateway's payment id."""

    @abstractmethod
    async def apply_status(self, provider_reference: str, status: PaymentStatus) -> StatusUpdate:
        """Move a record to ``status`` if that is a forward transition."""

    @abstractmethod
    async def list_pending(self, older_than: datetime, limit: int = 100) -> List[PaymentRecord]:
        """PENDING records created before ``older_than``, oldest first."""


class InMemoryPaymentStore(PaymentStore):
    """Process-local store. Used for tests and single-process deployments."""

    def __init__(self) -> None:
        self._records: Dict[str, PaymentRecord] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: PaymentRecord) -> None:
        async with self._lock:
            if record.payment_id in self._records:
                raise ValueError(f"Duplicate payment id {record.payment_id}")
            self._records[record.payment_id] = record.model_copy(deep=True)

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        record = self._records.get(payment_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        for record in self._records.values():
            if record.provider_reference == provider_reference:
                return record.model_copy(deep=True)
        return None

    async def apply_status(self, provider_reference: str, status: PaymentStatus) -> StatusUpdate:
        async with self._lock:
            record = next(
                (r for r in self._records.values() if r.provider_reference == provider_reference),
                None,
            )
            if record is None:
                return StatusUpdate.UNKNOWN_PAYMENT
            if record.status == status:
                return StatusUpdate.DUPLICATE
            if not can_transition(record.status, status):
                return StatusUpdate.STALE
            record.status = status
            return StatusUpdate.APPLIED

    async def list_pending(self, older_than: datetime, limit: int = 100) -> List[PaymentRecord]:
        pending = sorted(
            (
                r
                for r in self._records.values()
                if r.status == PaymentStatus.PENDING and r.created_at < older_than
            ),
            key=lambda r: r.created_at,
        )
        return [r.model_copy(deep=True) for r in pending[:limit]]
