"""
Metrics collection for the progressive rollout engine.

This module provides Prometheus counters, gauges and histograms describing
rollout progress, per-target operations, health gate verdicts and rollback
failures. Each collector owns its registry unless one is passed in, so
several coordinators can live in one process without clashing.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..logger import get_logger

logger = get_logger(__name__)


class RolloutMetrics:
    """Centralized rollout metrics collector using Prometheus client."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        enabled: bool = True,
    ):
        self.registry = registry or CollectorRegistry()
        self.enabled = enabled

        self.rollouts_started_total = Counter(
            "rollouts_started_total",
            "Total rollouts started",
            ["strategy"],
            registry=self.registry,
        )

        self.rollouts_finished_total = Counter(
            "rollouts_finished_total",
            "Total rollouts that reached a terminal status",
            ["strategy", "status"],
            registry=self.registry,
        )

        self.rollouts_active = Gauge(
            "rollouts_active",
            "Rollouts currently holding a subject lock",
            registry=self.registry,
        )

        self.stage_duration_seconds = Histogram(
            "rollout_stage_duration_seconds",
            "Duration of one rollout stage including its evaluation window",
            ["strategy"],
            buckets=[0.1, 1.0, 10.0, 60.0, 300.0, 900.0, 3600.0],
            registry=self.registry,
        )

        self.target_operations_total = Counter(
            "rollout_target_operations_total",
            "Per-target apply, switch and revert operations",
            ["operation", "outcome"],
            registry=self.registry,
        )

        self.health_gate_total = Counter(
            "rollout_health_gate_total",
            "Health gate verdicts",
            ["verdict"],
            registry=self.registry,
        )

        self.rollback_failures_total = Counter(
            "rollout_rollback_failures_total",
            "Rollbacks that left targets unreverted",
            registry=self.registry,
        )

        logger.debug("Rollout metrics initialized", enabled=enabled)

    def record_started(self, strategy: str) -> None:
        """Record a rollout start."""
        if not self.enabled:
            return
        self.rollouts_started_total.labels(strategy=strategy).inc()

    def record_finished(self, strategy: str, status: str) -> None:
        """Record a rollout reaching a terminal status."""
        if not self.enabled:
            return
        self.rollouts_finished_total.labels(strategy=strategy, status=status).inc()

    def record_attached(self) -> None:
        """A rollout task took its subject lock (started or recovered)."""
        if self.enabled:
            self.rollouts_active.inc()

    def record_detached(self) -> None:
        """A rollout task released its subject lock."""
        if self.enabled:
            self.rollouts_active.dec()

    def record_stage(self, strategy: str, duration: float) -> None:
        """Record the duration of a finished stage."""
        if not self.enabled:
            return
        self.stage_duration_seconds.labels(strategy=strategy).observe(duration)

    def record_target_operation(self, operation: str, success: bool) -> None:
        """Record the outcome of a per-target operation."""
        if not self.enabled:
            return
        self.target_operations_total.labels(
            operation=operation, outcome="success" if success else "failure"
        ).inc()

    def record_gate(self, verdict: str) -> None:
        """Record a health gate verdict."""
        if not self.enabled:
            return
        self.health_gate_total.labels(verdict=verdict).inc()

    def record_rollback_failure(self) -> None:
        """Record a rollback that needs manual intervention."""
        if not self.enabled:
            return
        self.rollback_failures_total.inc()

    def get_sample_value(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Read back a sample value, 0.0 when absent."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0

    def export(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)


__all__ = ["RolloutMetrics"]
