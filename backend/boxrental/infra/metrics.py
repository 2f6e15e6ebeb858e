import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.bookings = None
            self.materializations = None
            self.status_transitions = None
            self.status_sync_failures = None
            self.refunds = None
            self.reconciliation_warnings = None
            self.provider_retries = None
            self.stripe_webhook_events = None
            self.webhook_errors = None
            self.http_5xx = None
            self.http_latency = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.materializations = Counter(
            "booking_materializations_total",
            "Payment-to-booking materialization outcomes.",
            ["outcome"],
            registry=self.registry,
        )
        self.status_transitions = Counter(
            "booking_status_transitions_total",
            "Booking status transitions written by the status syncer.",
            ["from_status", "to_status"],
            registry=self.registry,
        )
        self.status_sync_failures = Counter(
            "booking_status_sync_failures_total",
            "Per-booking failures during status synchronization.",
            registry=self.registry,
        )
        self.refunds = Counter(
            "booking_refunds_total",
            "Refund attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.reconciliation_warnings = Counter(
            "reconciliation_warnings_total",
            "Money and booking state diverged and needs operator attention.",
            ["kind"],
            registry=self.registry,
        )
        self.provider_retries = Counter(
            "payment_provider_retries_total",
            "Retried payment provider calls by operation.",
            ["operation"],
            registry=self.registry,
        )
        self.stripe_webhook_events = Counter(
            "stripe_webhook_events_total",
            "Stripe webhook outcomes by result.",
            ["outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook errors by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_materialization(self, outcome: str) -> None:
        if not self.enabled or self.materializations is None:
            return
        self.materializations.labels(outcome=outcome or "unknown").inc()

    def record_status_transition(self, from_status: str, to_status: str) -> None:
        if not self.enabled or self.status_transitions is None:
            return
        self.status_transitions.labels(from_status=from_status, to_status=to_status).inc()

    def record_status_sync_failure(self, count: int = 1) -> None:
        if not self.enabled or self.status_sync_failures is None:
            return
        if count <= 0:
            return
        self.status_sync_failures.inc(count)

    def record_refund(self, outcome: str) -> None:
        if not self.enabled or self.refunds is None:
            return
        self.refunds.labels(outcome=outcome or "unknown").inc()

    def record_reconciliation_warning(self, kind: str) -> None:
        if not self.enabled or self.reconciliation_warnings is None:
            return
        self.reconciliation_warnings.labels(kind=kind or "unknown").inc()

    def record_provider_retry(self, operation: str) -> None:
        if not self.enabled or self.provider_retries is None:
            return
        self.provider_retries.labels(operation=operation or "unknown").inc()

    def record_stripe_webhook(self, outcome: str) -> None:
        if not self.enabled or self.stripe_webhook_events is None:
            return
        safe_outcome = outcome or "unknown"
        self.stripe_webhook_events.labels(outcome=safe_outcome).inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        safe_type = error_type or "unknown"
        self.webhook_errors.labels(type=safe_type).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
