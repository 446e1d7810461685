"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Webhook deliveries by event kind and handling status
- Order state transitions and reconciliation decisions
- Order lookup retries (commit-lag misses)
- Enrollment grants
- Manual confirmation submissions and verdicts
- Gateway API calls and circuit breaker state
- Outbox queue depth
- Buyer status watches and scheduled job runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total pending orders created at checkout",
    ["payment_method", "currency"],
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Reconciliation decisions by resulting kind",
    ["from_status", "to_status", "kind"],  # kind: transitioned, unchanged, orphaned, stale_approval
)

order_lookup_retries_total = Counter(
    "order_lookup_retries_total",
    "Order lookups retried after a miss",
    ["result"],  # retried, recovered, orphaned
)

# Enrollment metrics
enrollment_grants_total = Counter(
    "enrollment_grants_total",
    "Enrollment insert attempts by result",
    ["result"],  # granted, already_enrolled, failed
)

# Manual confirmation metrics
manual_submissions_total = Counter(
    "manual_submissions_total",
    "Buyer-submitted manual confirmations",
    ["result"],  # accepted, rejected, refused, invalid
)

gateway_returns_total = Counter(
    "gateway_returns_total",
    "Buyer returns from the gateway checkout",
    ["result"],  # reconciled, mismatched, refused
)

manual_verdicts_total = Counter(
    "manual_verdicts_total",
    "Receipt validation verdicts received",
    ["status"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_kind"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_kind", "status"],  # processed, duplicate, ignored, orphaned
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_kind"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Status observer metrics
status_watches_total = Counter(
    "status_watches_total",
    "Buyer status watches by how they ended",
    ["resolved_by"],  # immediate, push, poll, timeout
)

status_watch_duration_seconds = Histogram(
    "status_watch_duration_seconds",
    "Time until a status watch resolved",
    buckets=(0.5, 2, 5, 15, 30, 60, 120, 300, 600),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox event handling duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Notification metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notification dispatch attempts",
    ["kind", "status"],
)

# Scheduler metrics
scheduled_job_runs_total = Counter(
    "scheduled_job_runs_total",
    "Scheduled job executions",
    ["job", "status"],
)

scheduled_job_duration_seconds = Histogram(
    "scheduled_job_duration_seconds",
    "Scheduled job execution duration in seconds",
    ["job"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

scheduled_job_last_run_timestamp = Gauge(
    "scheduled_job_last_run_timestamp",
    "Timestamp of the last run of each scheduled job",
    ["job"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(payment_method: str, currency: str) -> None:
        """Record a pending order created at checkout."""
        orders_created_total.labels(payment_method=payment_method, currency=currency).inc()

    @staticmethod
    def record_order_transition(from_status: str, to_status: str, kind: str) -> None:
        """Record a reconciliation decision."""
        order_transitions_total.labels(
            from_status=from_status, to_status=to_status, kind=kind
        ).inc()

    @staticmethod
    def record_lookup_retry(result: str) -> None:
        """Record an order lookup retry outcome."""
        order_lookup_retries_total.labels(result=result).inc()

    @staticmethod
    def record_enrollment_grant(result: str, count: int = 1) -> None:
        """Record enrollment insert results."""
        if count:
            enrollment_grants_total.labels(result=result).inc(count)

    @staticmethod
    def record_manual_submission(result: str) -> None:
        """Record a manual confirmation submission."""
        manual_submissions_total.labels(result=result).inc()

    @staticmethod
    def record_gateway_return(result: str) -> None:
        gateway_returns_total.labels(result=result).inc()

    @staticmethod
    def record_manual_verdict(status: str) -> None:
        """Record a receipt validation verdict."""
        manual_verdicts_total.labels(status=status).inc()

    @staticmethod
    def record_gateway_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_api_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_kind: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_kind=event_kind).inc()
        webhook_events_processed_total.labels(event_kind=event_kind, status=status).inc()
        webhook_processing_duration_seconds.labels(event_kind=event_kind).observe(
            duration_seconds
        )

    @staticmethod
    def record_status_watch(resolved_by: str, duration_seconds: float) -> None:
        """Record how a buyer status watch ended."""
        status_watches_total.labels(resolved_by=resolved_by).inc()
        status_watch_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_notification(kind: str, status: str) -> None:
        """Record a notification dispatch attempt."""
        notifications_sent_total.labels(kind=kind, status=status).inc()

    @staticmethod
    def record_job_run(job: str, status: str, duration_seconds: float) -> None:
        """Record a scheduled job execution."""
        scheduled_job_runs_total.labels(job=job, status=status).inc()
        scheduled_job_duration_seconds.labels(job=job).observe(duration_seconds)
        scheduled_job_last_run_timestamp.labels(job=job).set(time.time())


# Export singleton instance
metrics = MetricsCollector()
