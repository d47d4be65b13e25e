"""
Prometheus metrics for deferred payout monitoring.

Tracks:
- Sale sessions by routing strategy
- Routing decisions that degraded to platform-held
- Earnings ledger increments and onboarding notifications
- Settlements by outcome and transfer failures
- Stripe API errors
- Webhook events
- Per-seller lock acquisitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Sale metrics
sale_sessions_total = Counter(
    "sale_sessions_total",
    "Total sale sessions created",
    ["strategy"],  # direct_transfer, platform_held
)

sale_gross_amount_cents = Histogram(
    "sale_gross_amount_cents",
    "Sale gross amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

routing_degraded_total = Counter(
    "routing_degraded_total",
    "Routing decisions that fell back to platform-held after a failed capability check",
)

provisioning_total = Counter(
    "provisioning_total",
    "Destination account provisioning attempts",
    ["status"],  # existing, created, failed
)

# Ledger metrics
ledger_sales_recorded_total = Counter(
    "ledger_sales_recorded_total",
    "Platform-held sales applied to earnings ledgers",
    ["status"],  # applied, duplicate
)

ledger_held_amount_cents = Histogram(
    "ledger_held_amount_cents",
    "Seller net amounts held by the platform in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

onboarding_notifications_total = Counter(
    "onboarding_notifications_total",
    "Onboarding threshold notifications",
    ["status"],  # sent, failed
)

# Settlement metrics
settlements_total = Counter(
    "settlements_total",
    "Verification events handled by the settlement reconciler",
    ["outcome"],
)

settlement_amount_cents = Histogram(
    "settlement_amount_cents",
    "Settled pending balances in cents",
    buckets=(100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

settlement_transfer_failures_total = Counter(
    "settlement_transfer_failures_total",
    "Settlement transfers that were not confirmed",
    ["reason"],  # rejected, outcome_unknown
)

# Stripe API metrics
stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit, unknown_outcome
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, no_handler
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Lock metrics
seller_lock_acquisitions_total = Counter(
    "seller_lock_acquisitions_total",
    "Total per-seller lock acquisitions",
    ["backend", "status"],  # acquired, timeout
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_sale_session(strategy: str, gross_cents: int) -> None:
        """Record a created sale session."""
        sale_sessions_total.labels(strategy=strategy).inc()
        sale_gross_amount_cents.observe(gross_cents)

    @staticmethod
    def record_routing_degraded() -> None:
        """Record a degraded routing decision."""
        routing_degraded_total.inc()

    @staticmethod
    def record_provisioning(status: str) -> None:
        """Record a provisioning attempt."""
        provisioning_total.labels(status=status).inc()

    @staticmethod
    def record_ledger_sale(status: str, net_cents: int = 0) -> None:
        """Record a ledger increment."""
        ledger_sales_recorded_total.labels(status=status).inc()
        if net_cents > 0:
            ledger_held_amount_cents.observe(net_cents)

    @staticmethod
    def record_onboarding_notification(status: str) -> None:
        """Record an onboarding notification."""
        onboarding_notifications_total.labels(status=status).inc()

    @staticmethod
    def record_settlement(outcome: str, amount_cents: int = 0) -> None:
        """Record a settlement reconciler run."""
        settlements_total.labels(outcome=outcome).inc()
        if amount_cents > 0:
            settlement_amount_cents.observe(amount_cents)

    @staticmethod
    def record_transfer_failure(reason: str) -> None:
        """Record a failed settlement transfer."""
        settlement_transfer_failures_total.labels(reason=reason).inc()

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_seller_lock(backend: str, status: str) -> None:
        """Record per-seller lock acquisition."""
        seller_lock_acquisitions_total.labels(backend=backend, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
