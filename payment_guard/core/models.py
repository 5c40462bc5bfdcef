"""
Data models for the payment security core.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentMethod(str, Enum):
    """Payment methods handled by the core."""
    CARD = "CARD"
    OFFLINE_CODE = "OFFLINE_CODE"


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment record."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class RiskLevel(str, Enum):
    """Coarse fraud risk level."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


# Allowed forward moves. Anything not listed is either a duplicate delivery
# (same status) or a stale, out-of-order one.
STATUS_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.APPROVED: frozenset({PaymentStatus.REFUNDED, PaymentStatus.CANCELLED}),
    PaymentStatus.REJECTED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


class StatusUpdate(str, Enum):
    """Result of applying a status to an existing payment record."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_PAYMENT = "unknown_payment"


def can_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    """Check whether ``current -> new`` is a forward status move."""
    return new in STATUS_TRANSITIONS[current]


def predecessors_of(status: PaymentStatus) -> List[PaymentStatus]:
    """Statuses from which ``status`` can be reached in one step."""
    return [s for s, targets in STATUS_TRANSITIONS.items() if status in targets]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomerIdentity(BaseModel):
    """Customer identity as supplied by the order service."""
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    national_id: str = Field(description="11-digit CPF, punctuation allowed")
    email: str
    phone: str
    user_id: Optional[str] = Field(default=None, description="External storefront user id")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class MaskedIdentity(BaseModel):
    """Display-safe redaction of a customer identity."""
    first_name: str
    last_name: str
    national_id: str
    email: str
    phone: str


class OrderSnapshot(BaseModel):
    """
    Read-only view of an order owned by the external order service.

    ``is_first_order`` is ``None`` until the discount resolver has run;
    once resolved the snapshot is replaced, never mutated.
    """
    model_config = ConfigDict(frozen=True)

    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, description="Order total including delivery fee")
    item_count: int = Field(ge=1)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    customer: CustomerIdentity
    is_first_order: Optional[bool] = None


class CardPaymentRequest(BaseModel):
    """Card payment request. The card itself is tokenized by the gateway."""
    order: OrderSnapshot
    card_token: str = Field(min_length=1)
    installments: int = Field(default=1, ge=1, le=12)
    card_number: Optional[str] = Field(
        default=None, description="Card number hint, only ever stored masked"
    )


class OfflinePaymentRequest(BaseModel):
    """Offline (Pix copy-and-paste) payment request."""
    order: OrderSnapshot
    description: Optional[str] = None


class RiskAssessment(BaseModel):
    """Result of rule-based risk scoring."""
    score: int = Field(ge=0)
    level: RiskLevel
    factors: List[str] = Field(default_factory=list)


class DiscountDecision(BaseModel):
    """Outcome of first-order discount resolution."""
    order_id: str
    is_first_order: bool
    delivery_fee: Decimal
    original_delivery_fee: Decimal

    @property
    def waived_fee(self) -> Decimal:
        return self.original_delivery_fee - self.delivery_fee


class PaymentRecord(BaseModel):
    """
    Persisted payment attempt.

    Only ``status`` changes after creation; ``encrypted_blob`` is write-once.
    """
    payment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    method: PaymentMethod
    amount: Decimal
    status: PaymentStatus
    masked_identity: MaskedIdentity
    masked_card: Optional[str] = None
    encrypted_blob: str
    risk_score: int
    risk_level: RiskLevel
    risk_factors: List[str] = Field(default_factory=list)
    fingerprint: str
    provider_reference: str
    payment_code: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class PaymentOutcome(BaseModel):
    """What the core hands back to the order service."""
    record: PaymentRecord
    proceed: bool
    discount: DiscountDecision


class WebhookEnvelope(BaseModel):
    """Authenticated provider notification. Never persisted."""
    signature: str
    timestamp: int
    raw_payload: bytes
    provider_payment_id: str
    event_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
