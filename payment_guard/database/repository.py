"""
SQL implementations of the payment store and order history.

Status changes go through a conditional ``UPDATE ... WHERE status IN
(predecessors)`` so concurrent or out-of-order deliveries can only move a
record forward. First-order claims rely on the unique key constraint of
``customer_order_keys`` with ``INSERT ... ON CONFLICT DO NOTHING``.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_guard.core.discount import IdentityKey, OrderHistoryStore
from payment_guard.core.models import (
    MaskedIdentity,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RiskLevel,
    StatusUpdate,
    predecessors_of,
    utcnow,
)
from payment_guard.core.store import PaymentStore
from payment_guard.database.models import CustomerOrderKey, FirstOrderGrant, PaymentRecordRow

logger = structlog.get_logger(__name__)


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def from_cents(amount_cents: int) -> Decimal:
    return (Decimal(amount_cents) / 100).quantize(Decimal("0.01"))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _key_filter(model, pairs):
    return or_(*(and_(model.key_kind == kind, model.key_value == value) for kind, value in pairs))


def _insert_for(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")


class PaymentRepository(PaymentStore):
    """Payment records on SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, record: PaymentRecord) -> None:
        row = PaymentRecordRow(
            payment_id=record.payment_id,
            order_id=record.order_id,
            method=record.method.value,
            amount_cents=to_cents(record.amount),
            status=record.status.value,
            masked_identity=record.masked_identity.model_dump(),
            masked_card=record.masked_card,
            encrypted_blob=record.encrypted_blob,
            risk_score=record.risk_score,
            risk_level=record.risk_level.value,
            risk_factors=list(record.risk_factors),
            fingerprint=record.fingerprint,
            provider_reference=record.provider_reference,
            payment_code=record.payment_code,
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.created_at),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(row)
        logger.info(
            "payment_record_persisted",
            payment_id=record.payment_id,
            order_id=record.order_id,
            status=record.status.value,
        )

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as session:
            row = await session.get(PaymentRecordRow, payment_id)
            return self._to_model(row) if row else None

    async def get_by_provider_reference(self, provider_reference: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentRecordRow).where(
                    PaymentRecordRow.provider_reference == provider_reference
                )
            )
            row = result.scalar_one_or_none()
            return self._to_model(row) if row else None

    async def apply_status(self, provider_reference: str, status: PaymentStatus) -> StatusUpdate:
        allowed_from = [s.value for s in predecessors_of(status)]
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PaymentRecordRow)
                    .where(
                        PaymentRecordRow.provider_reference == provider_reference,
                        PaymentRecordRow.status.in_(allowed_from),
                    )
                    .values(status=status.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    outcome = StatusUpdate.APPLIED
                else:
                    current = await session.scalar(
                        select(PaymentRecordRow.status).where(
                            PaymentRecordRow.provider_reference == provider_reference
                        )
                    )
                    if current is None:
                        outcome = StatusUpdate.UNKNOWN_PAYMENT
                    elif current == status.value:
                        outcome = StatusUpdate.DUPLICATE
                    else:
                        outcome = StatusUpdate.STALE

        logger.info(
            "payment_status_update",
            provider_reference=provider_reference,
            status=status.value,
            outcome=outcome.value,
        )
        return outcome

    async def list_pending(self, older_than: datetime, limit: int = 100) -> List[PaymentRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentRecordRow)
                .where(
                    PaymentRecordRow.status == PaymentStatus.PENDING.value,
                    PaymentRecordRow.created_at < _as_utc(older_than),
                )
                .order_by(PaymentRecordRow.created_at)
                .limit(limit)
            )
            return [self._to_model(row) for row in result.scalars()]

    @staticmethod
    def _to_model(row: PaymentRecordRow) -> PaymentRecord:
        return PaymentRecord(
            payment_id=row.payment_id,
            order_id=row.order_id,
            method=PaymentMethod(row.method),
            amount=from_cents(row.amount_cents),
            status=PaymentStatus(row.status),
            masked_identity=MaskedIdentity(**row.masked_identity),
            masked_card=row.masked_card,
            encrypted_blob=row.encrypted_blob,
            risk_score=row.risk_score,
            risk_level=RiskLevel(row.risk_level),
            risk_factors=list(row.risk_factors or []),
            fingerprint=row.fingerprint,
            provider_reference=row.provider_reference,
            payment_code=row.payment_code,
            created_at=_as_utc(row.created_at),
        )


class SqlOrderHistory(OrderHistoryStore):
    """
    Order history on SQL tables.

    Each claim runs in a single transaction: the key inserts come first so
    the database serialises concurrent claims on the unique constraint
    before any ownership is read back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def claim_first_order(self, order_id: str, keys: Iterable[IdentityKey]) -> bool:
        keys = list(keys)
        if not keys:
            return False

        async with self.session_factory() as session:
            async with session.begin():
                insert = _insert_for(session)
                for key in keys:
                    await session.execute(
                        insert(CustomerOrderKey)
                        .values(
                            key_kind=key.kind,
                            key_value=key.value,
                            order_id=order_id,
                            created_at=utcnow(),
                        )
                        .on_conflict_do_nothing(index_elements=["key_kind", "key_value"])
                    )

                already_granted = await session.scalar(
                    select(FirstOrderGrant.id).where(FirstOrderGrant.order_id == order_id).limit(1)
                )
                if already_granted is not None:
                    return True

                owners = await session.scalars(
                    select(CustomerOrderKey.order_id).where(
                        _key_filter(CustomerOrderKey, [(k.kind, k.value) for k in keys])
                    )
                )
                if any(owner != order_id for owner in owners):
                    return False

                session.add_all(
                    [
                        FirstOrderGrant(
                            order_id=order_id,
                            key_kind=key.kind,
                            key_value=key.value,
                            created_at=utcnow(),
                        )
                        for key in keys
                    ]
                )
                return True

    async def first_order_grants(self, keys: Iterable[IdentityKey]) -> List[str]:
        pairs = [(k.kind, k.value) for k in keys]
        if not pairs:
            return []
        async with self.session_factory() as session:
            result = await session.scalars(
                select(FirstOrderGrant.order_id)
                .where(_key_filter(FirstOrderGrant, pairs))
                .distinct()
                .order_by(FirstOrderGrant.order_id)
            )
            return list(result)
