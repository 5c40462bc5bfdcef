"""
Payment provider webhook authentication and processing.

Implements:
- Freshness check on the ``X-Timestamp`` header (replay protection)
- HMAC-SHA256 signature over ``"<timestamp>." + raw body``
- Constant-time signature comparison
- Status refresh from the gateway, never from the webhook body
"""
import hmac
import json
import time
from typing import Any, Callable, Mapping, Optional

import structlog
from pydantic import BaseModel

from payment_guard.core.exceptions import (
    MalformedWebhookPayload,
    MissingHeaders,
    SignatureInvalid,
    StaleTimestamp,
    WebhookAuthenticationError,
)
from payment_guard.core.models import PaymentStatus, StatusUpdate, WebhookEnvelope
from payment_guard.core.store import PaymentStore
from payment_guard.core.vault import hmac_sha256
from payment_guard.integrations.gateway import GatewayClient, call_with_timeout
from payment_guard.monitoring.logging import log_security_event
from payment_guard.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-signature"
TIMESTAMP_HEADER = "x-timestamp"
SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300
PAYMENT_EVENT_TYPE = "payment"
IGNORED_OUTCOME = "ignored"
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 15.0


class WebhookAuthenticator:
    """
    Verifies that a webhook was sent by the payment provider.

    Rejections raise a :class:`WebhookAuthenticationError` subclass after
    being recorded as a security event. The secret is never logged.
    """

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Webhook secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "WebhookAuthenticator":
        return cls(
            settings.webhook_secret.get_secret_value(),
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )

    def expected_signature(self, timestamp: int | str, raw_body: bytes) -> str:
        """Signature the provider would send for this body and timestamp."""
        return hmac_sha256(self._secret, f"{timestamp}.".encode("utf-8") + raw_body)

    def authenticate(
        self,
        raw_body: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
        now: Optional[float] = None,
    ) -> WebhookEnvelope:
        """
        Authenticate a delivery and parse its body.

        Args:
            raw_body: Request body exactly as received
            signature: ``X-Signature`` header value
            timestamp: ``X-Timestamp`` header value (unix seconds)
            now: Current unix time, defaults to the authenticator clock

        Returns:
            WebhookEnvelope: Authenticated notification

        Raises:
            MissingHeaders: Signature or timestamp header absent
            StaleTimestamp: Timestamp unparseable or outside the tolerance
            SignatureInvalid: HMAC mismatch
            MalformedWebhookPayload: Authenticated body is not a payment event
        """
        try:
            ts = self._check_headers(signature, timestamp, now)
            self._check_signature(raw_body, signature, str(timestamp).strip())
        except WebhookAuthenticationError as e:
            metrics.record_webhook_rejection(e.reason)
            log_security_event(
                "webhook_rejected", e.reason, error_code=e.error_code, body_size=len(raw_body)
            )
            raise

        event_type, provider_payment_id, data = self._parse_body(raw_body)
        logger.info(
            "webhook_authenticated",
            event_type=event_type,
            provider_payment_id=provider_payment_id,
        )
        return WebhookEnvelope(
            signature=signature,
            timestamp=ts,
            raw_payload=raw_body,
            provider_payment_id=provider_payment_id,
            event_type=event_type,
            data=data,
        )

    def _check_headers(
        self, signature: Optional[str], timestamp: Optional[str], now: Optional[float]
    ) -> int:
        if not signature or not timestamp or not str(timestamp).strip():
            raise MissingHeaders("Webhook signature headers are missing")

        try:
            ts = int(str(timestamp).strip())
        except ValueError as e:
            raise StaleTimestamp("Webhook timestamp is not a unix time") from e

        current = self._clock() if now is None else now
        if abs(current - ts) > self.tolerance_seconds:
            raise StaleTimestamp(
                "Webhook timestamp outside tolerance", skew_seconds=int(current - ts)
            )
        return ts

    def _check_signature(self, raw_body: bytes, signature: str, signed_timestamp: str) -> None:
        # The provider signs the header text as sent, not its parsed value
        provided = signature.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]
        expected = self.expected_signature(signed_timestamp, raw_body)
        if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
            raise SignatureInvalid("Webhook signature mismatch")

    @staticmethod
    def _parse_body(raw_body: bytes) -> tuple[str, str, dict[str, Any]]:
        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedWebhookPayload("Webhook body is not valid JSON") from e

        if not isinstance(body, dict):
            raise MalformedWebhookPayload("Webhook body must be a JSON object")
        event_type = body.get("type")
        data = body.get("data")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedWebhookPayload("Webhook body has no event type")
        if not isinstance(data, dict) or data.get("id") in (None, ""):
            raise MalformedWebhookPayload("Webhook body has no payment id")
        return event_type, str(data["id"]), data


class WebhookResult(BaseModel):
    """What happened to an authenticated delivery."""
    outcome: str
    event_type: str
    provider_payment_id: str
    status: Optional[PaymentStatus] = None


class WebhookProcessor:
    """
    Handles authenticated deliveries.

    The body only tells us *which* payment changed. The new status is
    always fetched from the gateway and applied through the store's
    monotonic update, so redelivery and reordering are harmless.
    """

    def __init__(
        self,
        authenticator: WebhookAuthenticator,
        gateway: GatewayClient,
        store: PaymentStore,
        gateway_timeout_seconds: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS,
    ):
        self.authenticator = authenticator
        self.gateway = gateway
        self.store = store
        self.gateway_timeout_seconds = gateway_timeout_seconds

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """
        Authenticate and apply one webhook delivery.

        Raises:
            WebhookAuthenticationError: Delivery failed authentication
            MalformedWebhookPayload: Body is not a payment notification
            GatewayError: Status query failed or timed out; the provider
                should redeliver
        """
        normalized = {k.lower(): v for k, v in headers.items()}
        envelope = self.authenticator.authenticate(
            raw_body,
            normalized.get(SIGNATURE_HEADER),
            normalized.get(TIMESTAMP_HEADER),
        )

        if envelope.event_type != PAYMENT_EVENT_TYPE:
            metrics.record_webhook_event(envelope.event_type, IGNORED_OUTCOME)
            logger.info("webhook_ignored", event_type=envelope.event_type)
            return WebhookResult(
                outcome=IGNORED_OUTCOME,
                event_type=envelope.event_type,
                provider_payment_id=envelope.provider_payment_id,
            )

        status = await call_with_timeout(
            "query_status",
            self.gateway.query_status(envelope.provider_payment_id),
            self.gateway_timeout_seconds,
        )
        update = await self.store.apply_status(envelope.provider_payment_id, status)

        metrics.record_webhook_event(envelope.event_type, update.value)
        logger.info(
            "webhook_processed",
            provider_payment_id=envelope.provider_payment_id,
            status=status.value,
            outcome=update.value,
        )
        return WebhookResult(
            outcome=update.value,
            event_type=envelope.event_type,
            provider_payment_id=envelope.provider_payment_id,
            status=status,
        )
