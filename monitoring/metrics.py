"""Prometheus metrics for the stream supervisor."""

import logging
from typing import Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)

STREAM_STATUSES = ("starting", "running", "stopping", "stopped", "error")


class SupervisorMetrics:
    """Prometheus metrics for stream lifecycle.

    Each instance registers its collectors on its own registry unless one is
    passed in, so several supervisors (and tests) can coexist in a process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize Prometheus metrics.

        Args:
            registry: Registry to register on (a private one if not provided)
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        # Counters
        self.stream_starts_total = Counter(
            "supervisor_stream_starts_total",
            "Total number of accepted stream starts",
            registry=self.registry,
        )

        self.encoder_launches_total = Counter(
            "supervisor_encoder_launches_total",
            "Total number of encoder processes spawned",
            registry=self.registry,
        )

        self.stream_failures_total = Counter(
            "supervisor_stream_failures_total",
            "Total number of failed encoder attempts",
            ["category"],
            registry=self.registry,
        )

        self.format_fallbacks_total = Counter(
            "supervisor_format_fallbacks_total",
            "Total number of fallbacks to the next audio format",
            registry=self.registry,
        )

        self.network_retries_total = Counter(
            "supervisor_network_retries_total",
            "Total number of retries after a network failure",
            registry=self.registry,
        )

        # Gauges
        self.streams = Gauge(
            "supervisor_streams",
            "Active streams by status",
            ["status"],
            registry=self.registry,
        )

        logger.info("Prometheus metrics initialized")

    def record_start(self) -> None:
        self.stream_starts_total.inc()

    def record_launch(self) -> None:
        self.encoder_launches_total.inc()

    def record_failure(self, category: str) -> None:
        """Record a failed attempt.

        Args:
            category: Diagnosis category
        """
        self.stream_failures_total.labels(category=category).inc()
        logger.debug(f"Failure recorded with category: {category}")

    def record_format_fallback(self) -> None:
        self.format_fallbacks_total.inc()

    def record_network_retry(self) -> None:
        self.network_retries_total.inc()

    def update_stream_counts(self, counts: Mapping[str, int]) -> None:
        """Set the per-status gauge.

        Args:
            counts: Number of active streams per status value
        """
        for status in STREAM_STATUSES:
            self.streams.labels(status=status).set(counts.get(status, 0))

    def export(self) -> bytes:
        """Render metrics in the Prometheus text format."""
        return generate_latest(self.registry)
