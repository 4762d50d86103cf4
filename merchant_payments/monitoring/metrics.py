"""
Prometheus metrics for merchant payment monitoring.

Tracks:
- STK push initiations by outcome
- Payment amounts
- Daraja API calls, errors and latency
- Access token cache usage
- Callback reconciliation outcomes and latency
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total STK push initiations",
    ["outcome", "payment_type"],  # accepted, invalid_input, merchant_not_found, rejected, unreachable
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "Payment initiation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

payment_amount_kes = Histogram(
    "payment_amount_kes",
    "Requested payment amounts in shillings",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 150000),
)

# Daraja API metrics
daraja_api_requests_total = Counter(
    "daraja_api_requests_total",
    "Total Daraja API requests",
    ["operation", "status"],  # operation: oauth, stk_push
)

daraja_api_errors_total = Counter(
    "daraja_api_errors_total",
    "Total Daraja API errors",
    ["error_type"],  # rejected, unreachable, circuit_open
)

daraja_api_duration_seconds = Histogram(
    "daraja_api_duration_seconds",
    "Daraja API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

daraja_circuit_breaker_state = Gauge(
    "daraja_circuit_breaker_state",
    "Daraja circuit breaker state (0=closed, 1=open, 2=half_open)",
)

access_token_requests_total = Counter(
    "access_token_requests_total",
    "Access token lookups",
    ["source"],  # memory, redis, gateway
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total STK callbacks received",
    ["outcome"],  # applied, duplicate, conflict, orphaned, malformed, error
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

orphan_callbacks_total = Counter(
    "orphan_callbacks_total",
    "Callbacks that matched no transaction",
)

last_callback_timestamp = Gauge(
    "last_callback_timestamp",
    "Timestamp of the last callback received",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(
        outcome: str, payment_type: str, amount: float, duration_seconds: float
    ) -> None:
        """Record an STK push initiation."""
        payment_initiations_total.labels(outcome=outcome, payment_type=payment_type).inc()
        payment_initiation_duration_seconds.observe(duration_seconds)
        if outcome == "accepted":
            payment_amount_kes.observe(amount)

    @staticmethod
    def record_daraja_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record Daraja API call."""
        daraja_api_requests_total.labels(operation=operation, status=status).inc()
        daraja_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_daraja_error(error_type: str) -> None:
        """Record Daraja API error."""
        daraja_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        daraja_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_access_token(source: str) -> None:
        """Record where an access token was served from."""
        access_token_requests_total.labels(source=source).inc()

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback reconciliation."""
        callbacks_received_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)
        last_callback_timestamp.set(time.time())
        if outcome == "orphaned":
            orphan_callbacks_total.inc()


# Export singleton instance
metrics = MetricsCollector()
