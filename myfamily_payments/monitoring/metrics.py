"""
Prometheus metrics for the family payments core.

Tracks:
- Cascade outcomes by path
- Amounts drawn from the fund and from cards
- Gateway call counts, durations and errors
- Compensating fund credits
- Circuit breaker state
- Ledger reconciliation mismatches
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Cascade metrics
cascade_payments_total = Counter(
    "cascade_payments_total",
    "Total cascade payment invocations",
    ["path", "outcome"],  # path: fund_only, split, card_only, deposit; outcome: success, declined, ...
)

cascade_amount_minor_units = Histogram(
    "cascade_amount_minor_units",
    "Amounts collected by source in minor currency units",
    ["source"],  # fund, card
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

cascade_duration_seconds = Histogram(
    "cascade_duration_seconds",
    "Cascade payment duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Rollback metrics
fund_rollbacks_total = Counter(
    "fund_rollbacks_total",
    "Compensating fund credits after a failed card leg",
    ["status"],  # succeeded, failed
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total card gateway requests",
    ["operation", "status"],  # operation: charge, tokenize; status: answered, error
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total card gateway errors",
    ["error_type"],  # transport, declined
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Card gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Circuit breaker metrics
gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
ledger_mismatched_funds = Gauge(
    "ledger_mismatched_funds",
    "Funds whose balance differs from the sum of their transactions",
)

ledger_reconciliation_last_run_timestamp = Gauge(
    "ledger_reconciliation_last_run_timestamp",
    "Timestamp of last ledger reconciliation run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_cascade(
        path: str,
        outcome: str,
        amount_from_fund: int,
        amount_from_card: int,
        duration_seconds: float,
    ) -> None:
        """Record a finished cascade invocation."""
        cascade_payments_total.labels(path=path, outcome=outcome).inc()
        cascade_duration_seconds.observe(duration_seconds)
        if amount_from_fund > 0:
            cascade_amount_minor_units.labels(source="fund").observe(amount_from_fund)
        if amount_from_card > 0:
            cascade_amount_minor_units.labels(source="card").observe(amount_from_card)

    @staticmethod
    def record_rollback(status: str) -> None:
        """Record a compensating fund credit attempt."""
        fund_rollbacks_total.labels(status=status).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def set_reconciliation_metrics(mismatched_funds: int) -> None:
        """Set ledger reconciliation metrics."""
        ledger_mismatched_funds.set(mismatched_funds)
        ledger_reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
