"""
Metrics Collection with Prometheus.

Exposes receipt validation metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Histogram, Info

from iapledger.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    PLATFORM = "platform"
    SOURCE = "source"
    OUTCOME = "outcome"
    STATUS = "status"


class ValidationMetrics:
    """
    Centralized metrics for receipt validation.

    - Dispatches by source (local, cache, function, http)
    - Outcomes (verified / unverified)
    - Validator call latency and transport failures
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""
        self.service_info = Info(
            "iapledger_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.version,
                "service_name": settings.service_name,
            }
        )

        self.validations_total = Counter(
            "iapledger_validations_total",
            "Receipt validations dispatched, by where the answer came from",
            [MetricLabels.PLATFORM.value, MetricLabels.SOURCE.value],
        )

        self.validation_outcomes_total = Counter(
            "iapledger_validation_outcomes_total",
            "Reconciled validation outcomes",
            [MetricLabels.PLATFORM.value, MetricLabels.OUTCOME.value],
        )

        self.transport_errors_total = Counter(
            "iapledger_validator_transport_errors_total",
            "Failures reaching the receipt validator",
            [MetricLabels.STATUS.value],
        )

        self.validator_call_duration_seconds = Histogram(
            "iapledger_validator_call_duration_seconds",
            "Duration of calls to the receipt validator in seconds",
            [MetricLabels.SOURCE.value],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_dispatch(self, platform: str, source: str) -> None:
        """Record where a validation answer came from."""
        if settings.metrics_enabled:
            self.validations_total.labels(platform=platform, source=source).inc()

    def record_outcome(self, platform: str, verified: bool) -> None:
        if settings.metrics_enabled:
            self.validation_outcomes_total.labels(
                platform=platform, outcome="verified" if verified else "unverified"
            ).inc()

    def record_transport_error(self, status: int) -> None:
        if settings.metrics_enabled:
            self.transport_errors_total.labels(status=str(status)).inc()


# Global metrics instance
metrics = ValidationMetrics()


class track_validator_call:
    """
    Context manager timing a call to the receipt validator.

    Usage:
        with track_validator_call("http"):
            response = await transport.post(...)
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.start_time: float = 0.0

    def __enter__(self) -> "track_validator_call":
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        if settings.metrics_enabled:
            metrics.validator_call_duration_seconds.labels(source=self.source).observe(
                time.time() - self.start_time
            )
