"""SQLAlchemy database models for the payment security core."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentRecordRow(Base):
    """
    Payment records table.

    Only ``status`` (and ``updated_at``) change after insert. Identity data
    is stored masked; the full sensitive payload lives in
    ``encrypted_blob``.
    """

    __tablename__ = "payment_records"

    payment_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    masked_identity: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    masked_card: Mapped[str | None] = mapped_column(String(32), nullable=True)
    encrypted_blob: Mapped[str] = mapped_column(Text, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(10), nullable=False)
    risk_factors: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    payment_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED', 'REFUNDED')",
            name="valid_status",
        ),
        CheckConstraint("method IN ('CARD', 'OFFLINE_CODE')", name="valid_method"),
        Index("idx_payment_records_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentRecordRow(payment_id={self.payment_id}, order_id={self.order_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class CustomerOrderKey(Base):
    """
    First order seen for each customer identity key.

    The unique constraint is what makes the first-order claim atomic: of
    two concurrent claims for the same key only one insert lands.
    """

    __tablename__ = "customer_order_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    key_value: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("key_kind", "key_value", name="uq_customer_order_keys_key"),
    )

    def __repr__(self) -> str:
        return f"<CustomerOrderKey(kind={self.key_kind}, order_id={self.order_id})>"


class FirstOrderGrant(Base):
    """One row per identity key of an order that received the first-order waiver."""

    __tablename__ = "first_order_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    key_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    key_value: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("order_id", "key_kind", "key_value", name="uq_first_order_grants"),
        Index("idx_first_order_grants_key", "key_kind", "key_value"),
    )
