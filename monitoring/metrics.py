"""
Prometheus metrics for gateway monitoring.

Tracks:
- Processor webhook events received and their reconciliation outcomes
- Reconciliation duration
- Workflow signal outcomes and circuit breaker state
- Outbox enqueues, delivery attempts, exhaustion and queue depth
- Persistence retries at the webhook boundary
"""
from prometheus_client import Counter, Gauge, Histogram

# Processor webhook metrics
processor_events_received_total = Counter(
    "processor_events_received_total",
    "Total processor webhook events received",
    ["processor"],
)

processor_events_rejected_total = Counter(
    "processor_events_rejected_total",
    "Total processor webhook events rejected before reconciliation",
    ["processor", "reason"],  # missing_signature, invalid_signature, malformed_payload
)

reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Total reconciliation outcomes",
    ["processor", "kind", "outcome"],  # applied, signaled, duplicate, stale, order_not_found
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Processor event reconciliation duration in seconds",
    ["processor"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

persistence_retries_total = Counter(
    "persistence_retries_total",
    "Total reconciliation retries after persistence failures",
    ["processor"],
)

# Workflow metrics
workflow_signals_total = Counter(
    "workflow_signals_total",
    "Total workflow signal attempts",
    ["outcome"],  # signaled, not_applicable, unreachable
)

workflow_starts_total = Counter(
    "workflow_starts_total",
    "Total workflow start attempts",
    ["status"],  # started, failed
)

workflow_circuit_breaker_state = Gauge(
    "workflow_circuit_breaker_state",
    "Orchestrator circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of outbox entries awaiting delivery",
)

outbox_entries_enqueued_total = Counter(
    "outbox_entries_enqueued_total",
    "Total outbox entries enqueued",
    ["event_type"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total merchant webhook delivery attempts",
    ["event_type", "status"],  # delivered, failed, exhausted
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Merchant webhook delivery duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

outbox_batch_duration_seconds = Histogram(
    "outbox_batch_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_event_received(processor: str) -> None:
        """Record a processor webhook hitting the endpoint."""
        processor_events_received_total.labels(processor=processor).inc()

    @staticmethod
    def record_event_rejected(processor: str, reason: str) -> None:
        """Record a processor webhook rejected with 400."""
        processor_events_rejected_total.labels(processor=processor, reason=reason).inc()

    @staticmethod
    def record_reconciliation(
        processor: str, kind: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record a reconciliation outcome."""
        reconciliation_outcomes_total.labels(
            processor=processor, kind=kind, outcome=outcome
        ).inc()
        reconciliation_duration_seconds.labels(processor=processor).observe(duration_seconds)

    @staticmethod
    def record_persistence_retry(processor: str) -> None:
        """Record a persistence retry."""
        persistence_retries_total.labels(processor=processor).inc()

    @staticmethod
    def record_workflow_signal(outcome: str) -> None:
        """Record a workflow signal outcome."""
        workflow_signals_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_workflow_start(status: str) -> None:
        """Record a workflow start attempt."""
        workflow_starts_total.labels(status=status).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        workflow_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_outbox_enqueued(event_type: str) -> None:
        """Record an outbox entry written."""
        outbox_entries_enqueued_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_webhook_delivery(event_type: str, status: str, duration_seconds: float) -> None:
        """Record a merchant webhook delivery attempt."""
        webhook_deliveries_total.labels(event_type=event_type, status=status).inc()
        webhook_delivery_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record outbox batch duration."""
        outbox_batch_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
