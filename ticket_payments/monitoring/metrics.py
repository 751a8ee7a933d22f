"""
Prometheus metrics for ticket payment monitoring.

Tracks:
- Initiation requests by provider and outcome
- Status transitions applied by the reconciliation engine
- Callback and webhook processing
- Provider API calls and circuit breaker state
- Rate limiter rejections
- Confirmation emails
"""
from prometheus_client import Counter, Gauge, Histogram

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiation requests",
    ["provider", "outcome"],  # accepted, rejected, unreachable, invalid
)

payment_amount = Histogram(
    "payment_amount",
    "Initiated payment amounts in the provider's unit (KES or cents)",
    ["provider"],
    buckets=(0, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

# Reconciliation metrics
transaction_transitions_total = Counter(
    "transaction_transitions_total",
    "Status transitions requested against stored transactions",
    ["provider", "trigger", "decision"],  # decision: apply, noop, reject, not_found
)

transaction_status_changes_total = Counter(
    "transaction_status_changes_total",
    "Applied status changes",
    ["provider", "from_status", "to_status"],
)

# Callback / webhook metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total provider callbacks and webhook events received",
    ["provider", "event_type"],
)

callbacks_processed_total = Counter(
    "callbacks_processed_total",
    "Total provider callbacks and webhook events processed",
    ["provider", "event_type", "status"],  # success, failed, rejected, ignored
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["provider", "event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Provider API metrics
provider_api_requests_total = Counter(
    "provider_api_requests_total",
    "Total provider API requests",
    ["provider", "operation", "status"],
)

provider_api_duration_seconds = Histogram(
    "provider_api_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

mpesa_token_refreshes_total = Counter(
    "mpesa_token_refreshes_total",
    "OAuth token fetches against Daraja",
    ["status"],
)

# Boundary metrics
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the sliding window rate limiter",
    ["route"],
)

# Notification metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Confirmation emails by outcome",
    ["status"],  # sent, failed, disabled
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(provider: str, outcome: str, amount: int = 0) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(provider=provider, outcome=outcome).inc()
        if outcome == "accepted":
            payment_amount.labels(provider=provider).observe(amount)

    @staticmethod
    def record_transition(
        provider: str,
        trigger: str,
        decision: str,
        from_status: str | None = None,
        to_status: str | None = None,
    ) -> None:
        """Record a requested status transition and, if applied, the status change."""
        transaction_transitions_total.labels(
            provider=provider, trigger=trigger, decision=decision
        ).inc()
        if decision == "apply" and to_status:
            transaction_status_changes_total.labels(
                provider=provider,
                from_status=from_status or "none",
                to_status=to_status,
            ).inc()

    @staticmethod
    def record_callback(
        provider: str, event_type: str, status: str, duration_seconds: float
    ) -> None:
        """Record callback or webhook processing."""
        callbacks_received_total.labels(provider=provider, event_type=event_type).inc()
        callbacks_processed_total.labels(
            provider=provider, event_type=event_type, status=status
        ).inc()
        callback_processing_duration_seconds.labels(
            provider=provider, event_type=event_type
        ).observe(duration_seconds)

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record provider API call."""
        provider_api_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_api_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_token_refresh(status: str) -> None:
        """Record an M-Pesa OAuth token fetch."""
        mpesa_token_refreshes_total.labels(status=status).inc()

    @staticmethod
    def record_rate_limited(route: str) -> None:
        """Record a rate limiter rejection."""
        rate_limit_rejections_total.labels(route=route).inc()

    @staticmethod
    def record_notification(status: str) -> None:
        """Record a confirmation email outcome."""
        notifications_sent_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
