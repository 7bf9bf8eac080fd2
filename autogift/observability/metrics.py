"""
Metrics Collection with Prometheus.

Exposes execution lifecycle and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from autogift.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    FROM_STATUS = "from_status"
    TO_STATUS = "to_status"
    OUTCOME = "outcome"


class GiftingMetrics:
    """
    Centralized metrics for the auto-gift service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Execution transitions and creation
    - Order placement attempts by outcome
    - Scheduler runs (trigger evaluation, retry sweep)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("autogift_service", "Service information")
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
            "autogift_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "autogift_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "autogift_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Execution Metrics
        # ====================================================================
        self.executions_created_total = Counter(
            "autogift_executions_created_total",
            "Executions created by the trigger evaluator",
        )

        self.transitions_total = Counter(
            "autogift_transitions_total",
            "Execution status transitions",
            [MetricLabels.FROM_STATUS, MetricLabels.TO_STATUS],
        )

        self.transition_conflicts_total = Counter(
            "autogift_transition_conflicts_total",
            "Compare-and-set transitions lost to a concurrent writer",
        )

        self.approved_amount_minor = Histogram(
            "autogift_approved_amount_minor",
            "Approved execution totals in minor units (cents)",
            buckets=(500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
        )

        # ====================================================================
        # Order Placement Metrics
        # ====================================================================
        self.order_attempts_total = Counter(
            "autogift_order_attempts_total",
            "Order Placer calls by outcome",
            [MetricLabels.OUTCOME, MetricLabels.ERROR_TYPE],
        )

        self.order_placement_duration_seconds = Histogram(
            "autogift_order_placement_duration_seconds",
            "Order Placer call duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Scheduler Metrics
        # ====================================================================
        self.trigger_duration_seconds = Histogram(
            "autogift_trigger_duration_seconds",
            "Trigger evaluation run duration in seconds",
            buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
        )

        self.sweep_duration_seconds = Histogram(
            "autogift_sweep_duration_seconds",
            "Retry sweep duration in seconds",
            buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "autogift_errors_total",
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

    def record_transition(self, from_status: str, to_status: str) -> None:
        """Record an execution status change."""
        self.transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    def record_order_attempt(
        self, outcome: str, duration: float, error_type: str | None = None
    ) -> None:
        """Record an Order Placer call."""
        self.order_attempts_total.labels(outcome=outcome, error_type=error_type or "none").inc()
        self.order_placement_duration_seconds.observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GiftingMetrics()
