"""
Prometheus metrics for ledger monitoring.

Tracks:
- Ledger transactions by type and status
- Balance mutations
- Webhook deliveries by outcome
- Gateway API calls, errors and latency
- Reconciliation discrepancies
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_transactions_total = Counter(
    "ledger_transactions_total",
    "Ledger transactions written or transitioned",
    ["type", "status"],
)

balance_mutations_total = Counter(
    "balance_mutations_total",
    "Shop balance mutations",
    ["reason", "result"],  # result: applied, rejected
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Webhook deliveries by outcome",
    ["outcome"],  # completed, duplicate, failed, pending, rejected, not_found
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_discrepancies = Gauge(
    "reconciliation_discrepancies",
    "Discrepancies found by the last reconciliation pass",
)

reconciliation_repaired_total = Counter(
    "reconciliation_repaired_total",
    "Missing ledger records recreated by reconciliation",
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transaction(tx_type: str, status: str) -> None:
        """Record a ledger write or status transition."""
        ledger_transactions_total.labels(type=tx_type, status=status).inc()

    @staticmethod
    def record_balance_mutation(reason: str, applied: bool) -> None:
        """Record a shop balance mutation attempt."""
        balance_mutations_total.labels(
            reason=reason, result="applied" if applied else "rejected"
        ).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook(outcome: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_deliveries_total.labels(outcome=outcome).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_reconciliation_metrics(discrepancies_count: int, repaired: int) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies.set(discrepancies_count)
        reconciliation_repaired_total.inc(repaired)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
