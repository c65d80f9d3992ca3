"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    ROUTE = "route"
    FORMAT = "format"
    OUTCOME = "outcome"
    EVENT_TYPE = "event_type"


class ServiceMetrics:
    """
    Centralized metrics for the optimization API.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Optimizations (rate by route/format/outcome, bytes saved, duration)
    - Ledger (debits by outcome, credits added by event type)
    - Webhooks (deliveries by outcome)
    - Staged objects (deletions, orphans)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "pixelmeter_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "pixelmeter_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "pixelmeter_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "pixelmeter_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Optimization Metrics
        # ====================================================================
        self.optimizations_total = Counter(
            "pixelmeter_optimizations_total",
            "Optimization requests by input route, output format and outcome",
            [MetricLabels.ROUTE, MetricLabels.FORMAT, MetricLabels.OUTCOME],
        )

        self.optimization_duration_seconds = Histogram(
            "pixelmeter_optimization_duration_seconds",
            "Transform duration in seconds",
            [MetricLabels.FORMAT],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.bytes_saved_total = Counter(
            "pixelmeter_bytes_saved_total",
            "Total bytes saved by optimization",
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.debits_total = Counter(
            "pixelmeter_debits_total",
            "Debit attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.credits_added_total = Counter(
            "pixelmeter_credits_added_total",
            "Credits added to accounts",
            [MetricLabels.EVENT_TYPE],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_total = Counter(
            "pixelmeter_webhooks_total",
            "Webhook deliveries by event type and outcome",
            [MetricLabels.EVENT_TYPE, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Staged Object Metrics
        # ====================================================================
        self.staged_objects_deleted_total = Counter(
            "pixelmeter_staged_objects_deleted_total",
            "Staged objects deleted by purpose",
            ["purpose"],
        )

        self.staged_objects_orphaned_total = Counter(
            "pixelmeter_staged_objects_orphaned_total",
            "Staged objects whose deletion failed",
            ["purpose"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "pixelmeter_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_optimization(
        self,
        route: str,
        image_format: str,
        outcome: str,
        duration: float | None = None,
        bytes_saved: int = 0,
    ) -> None:
        """Record one optimization attempt."""
        self.optimizations_total.labels(route=route, format=image_format, outcome=outcome).inc()
        if duration is not None:
            self.optimization_duration_seconds.labels(format=image_format).observe(duration)
        if bytes_saved > 0:
            self.bytes_saved_total.inc(bytes_saved)

    def record_debit(self, success: bool) -> None:
        """Record a debit attempt."""
        self.debits_total.labels(outcome="applied" if success else "refused").inc()

    def record_credit_addition(self, event_type: str, amount: int) -> None:
        """Record credits added by a provider event."""
        self.credits_added_total.labels(event_type=event_type).inc(amount)

    def record_webhook(self, event_type: str, outcome: str) -> None:
        """Record a webhook delivery outcome."""
        self.webhooks_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_staged_cleanup(self, purpose: str, success: bool) -> None:
        """Record a staged object deletion or orphaning."""
        if success:
            self.staged_objects_deleted_total.labels(purpose=purpose).inc()
        else:
            self.staged_objects_orphaned_total.labels(purpose=purpose).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ServiceMetrics()
