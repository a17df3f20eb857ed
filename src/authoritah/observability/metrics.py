"""Prometheus metrics for authoritah.

Usage:
    from authoritah.observability.metrics import record_acquisition

    record_acquisition("/authoritah/locks/cleanup", "acquired")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, Counter, Gauge, generate_latest

from authoritah.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    acquisitions_total: Any = None
    renewals_total: Any = None
    losses_total: Any = None
    locks_held: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not settings.enable_metrics:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = REGISTRY

        self.acquisitions_total = Counter(
            "authoritah_acquisitions_total",
            "Lock acquisition attempts",
            ["lock", "outcome"],
        )

        self.renewals_total = Counter(
            "authoritah_renewals_total",
            "Lease renewal attempts",
            ["lock", "outcome"],
        )

        self.losses_total = Counter(
            "authoritah_losses_total",
            "Held leases lost",
            ["lock", "reason"],
        )

        self.locks_held = Gauge(
            "authoritah_locks_held",
            "Locks currently held by this process",
            ["lock"],
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_acquisition(lock: str, outcome: str) -> None:
    """Record an acquisition attempt.

    Args:
        lock: Lock key
        outcome: acquired, taken or error
    """
    metrics = get_metrics()
    if metrics.acquisitions_total:
        metrics.acquisitions_total.labels(lock=lock, outcome=outcome).inc()


def record_renewal(lock: str, outcome: str) -> None:
    """Record a renewal attempt (renewed, mismatch or error)."""
    metrics = get_metrics()
    if metrics.renewals_total:
        metrics.renewals_total.labels(lock=lock, outcome=outcome).inc()


def record_loss(lock: str, reason: str) -> None:
    metrics = get_metrics()
    if metrics.losses_total:
        metrics.losses_total.labels(lock=lock, reason=reason).inc()


def set_lock_held(lock: str, held: bool) -> None:
    metrics = get_metrics()
    if metrics.locks_held:
        metrics.locks_held.labels(lock=lock).set(1 if held else 0)
