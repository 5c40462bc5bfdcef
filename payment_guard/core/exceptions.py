"""
Exception taxonomy for the payment security core.

Every error carries:
- Error code (stable, for client handling)
- HTTP status code (so routers never parse messages)
- Retryable flag (caller-side retry policy; the core never retries)
"""

from typing import Any, Dict, List, Optional


class PaymentGuardError(Exception):
    """Base exception for all payment core errors."""

    error_code = "payment_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


# ============================================================================
# VALIDATION ERRORS
# ============================================================================


class ValidationError(PaymentGuardError):
    """Bad caller input. Reported back, never retried automatically."""

    error_code = "validation_error"
    http_status = 422


class InvalidNationalId(ValidationError):
    """National ID failed the modulo-11 checksum."""

    error_code = "invalid_national_id"


class InvalidAmount(ValidationError):
    """Amount is missing, not a number, or not positive."""

    error_code = "invalid_amount"


class PaymentNotRefundable(ValidationError):
    """Only approved payments can be refunded."""

    error_code = "payment_not_refundable"
    http_status = 409


# ============================================================================
# VAULT ERRORS
# ============================================================================


class EncryptionError(PaymentGuardError):
    """
    Encryption failed.

    Fatal for the current operation: nothing is persisted unencrypted.
    """

    error_code = "encryption_failed"


class DecryptionError(PaymentGuardError):
    """Blob is malformed or failed authentication."""

    error_code = "decryption_failed"


# ============================================================================
# GATEWAY ERRORS
# ============================================================================


class GatewayError(PaymentGuardError):
    """Base class for payment gateway failures."""

    error_code = "gateway_error"
    http_status = 502
    retryable = True


class GatewayTimeout(GatewayError):
    """Gateway did not answer in time. The payment outcome is unknown."""

    error_code = "gateway_timeout"
    http_status = 504


class GatewayRejected(GatewayError):
    """Gateway refused the request."""

    error_code = "gateway_rejected"
    http_status = 502


# ============================================================================
# WEBHOOK ERRORS
# ============================================================================


class WebhookAuthenticationError(PaymentGuardError):
    """
    Webhook failed authentication.

    Always rejected and logged as a security event.
    """

    error_code = "webhook_unauthenticated"
    http_status = 401
    reason = "Unauthenticated"


class MissingHeaders(WebhookAuthenticationError):
    error_code = "webhook_missing_headers"
    reason = "MissingHeaders"


class StaleTimestamp(WebhookAuthenticationError):
    error_code = "webhook_stale_timestamp"
    reason = "StaleTimestamp"


class SignatureInvalid(WebhookAuthenticationError):
    error_code = "webhook_invalid_signature"
    reason = "InvalidSignature"


class MalformedWebhookPayload(PaymentGuardError):
    """Authenticated webhook whose body is not the expected JSON shape."""

    error_code = "webhook_malformed_payload"
    http_status = 400


# ============================================================================
# DISCOUNT / PERSISTENCE ERRORS
# ============================================================================


class RaceConditionDetected(PaymentGuardError):
    """
    First-order discount was granted to more than one order.

    Not automatically correctable: the fee waiver already happened and the
    orders must go to manual reconciliation.
    """

    error_code = "first_order_double_grant"
    http_status = 409

    def __init__(self, message: str, order_ids: Optional[List[str]] = None, **context: Any):
        super().__init__(message, **context)
        self.order_ids = sorted(order_ids or [])


class PaymentNotFound(PaymentGuardError):
    error_code = "payment_not_found"
    http_status = 404
