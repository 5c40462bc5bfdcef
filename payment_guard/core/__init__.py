"""
Core payment security and risk logic.

The orchestrator and webhook modules depend on the gateway integration
and are imported from their own modules.
"""
from .discount import DiscountResolver, InMemoryOrderHistory, OrderHistoryStore
from .identity import IdentityValidator, validate_national_id
from .masking import MaskedField, PIIMasker
from .payment_code import PayeeAccount, PaymentCodeEncoder
from .risk_scorer import RiskRules, RiskScorer
from .store import InMemoryPaymentStore, PaymentStore
from .vault import EncryptionVault

__all__ = [
    "DiscountResolver",
    "EncryptionVault",
    "IdentityValidator",
    "InMemoryOrderHistory",
    "InMemoryPaymentStore",
    "MaskedField",
    "OrderHistoryStore",
    "PIIMasker",
    "PayeeAccount",
    "PaymentCodeEncoder",
    "PaymentStore",
    "RiskRules",
    "RiskScorer",
    "validate_national_id",
]
