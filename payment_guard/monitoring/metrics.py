"""
Prometheus metrics for the payment security core.

Tracks:
- Payments processed by method and status
- Refunds by outcome
- Risk level distribution
- Gateway errors and latency
- Webhook outcomes and authentication rejections
- First-order discount grants and double grants
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payments_processed_total = Counter(
    "payment_guard_payments_processed_total",
    "Total number of payment attempts persisted",
    ["method", "status"],
)

payment_processing_duration_seconds = Histogram(
    "payment_guard_payment_processing_duration_seconds",
    "End-to-end payment processing duration in seconds",
    ["method"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

risk_assessments_total = Counter(
    "payment_guard_risk_assessments_total",
    "Risk assessments by level",
    ["level"],
)

refunds_total = Counter(
    "payment_guard_refunds_total",
    "Refunds sent to the gateway by status update outcome",
    ["outcome"],
)

# Gateway metrics
gateway_requests_total = Counter(
    "payment_guard_gateway_requests_total",
    "Total gateway requests",
    ["operation", "status"],  # status: success, timeout, rejected
)

gateway_request_duration_seconds = Histogram(
    "payment_guard_gateway_request_duration_seconds",
    "Gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

gateway_circuit_breaker_state = Gauge(
    "payment_guard_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_total = Counter(
    "payment_guard_webhook_events_total",
    "Total webhook events by outcome",
    ["event_type", "outcome"],  # applied, duplicate, stale, ignored, unknown_payment
)

webhook_rejections_total = Counter(
    "payment_guard_webhook_rejections_total",
    "Webhook deliveries rejected before processing",
    ["reason"],
)

# Discount metrics
first_order_grants_total = Counter(
    "payment_guard_first_order_grants_total",
    "First-order delivery fee waivers granted",
)

first_order_double_grants_total = Counter(
    "payment_guard_first_order_double_grants_total",
    "First-order waivers detected as granted more than once",
)

# Reconciliation metrics
reconciliation_refreshed_total = Counter(
    "payment_guard_reconciliation_refreshed_total",
    "Pending payments re-queried by the reconciliation worker",
    ["outcome"],
)

reconciliation_last_run_timestamp = Gauge(
    "payment_guard_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment(method: str, status: str, duration_seconds: float) -> None:
        """Record a persisted payment attempt."""
        payments_processed_total.labels(method=method, status=status).inc()
        payment_processing_duration_seconds.labels(method=method).observe(duration_seconds)

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_risk_level(level: str) -> None:
        risk_assessments_total.labels(level=level).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str) -> None:
        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()

    @staticmethod
    def record_webhook_rejection(reason: str) -> None:
        webhook_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_first_order_grant() -> None:
        first_order_grants_total.inc()

    @staticmethod
    def record_first_order_double_grant() -> None:
        first_order_double_grants_total.inc()

    @staticmethod
    def record_reconciliation(outcome: str) -> None:
        reconciliation_refreshed_total.labels(outcome=outcome).inc()

    @staticmethod
    def mark_reconciliation_run() -> None:
        import time

        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
