"""
Prometheus metrics emission for Stratum.

All metrics use the 'stratum_' prefix. Each emitter owns its registry so
that several managers (or tests) never collide on metric names.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from stratum import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_migration("up", "applied", duration_seconds=1.2)
        emitter.update_schema_version(3)
        print(emitter.get_metrics())
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        """Initialize MetricsEmitter.

        Args:
            registry: Optional custom registry (a fresh one if not provided)
        """
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "stratum",
            "Stratum migration engine information",
            registry=self._registry,
        )
        self._info.info({"version": __version__})

        self._migrations_total = Counter(
            "stratum_migrations_total",
            "Migration steps executed",
            ["direction", "status"],
            registry=self._registry,
        )

        self._runs_total = Counter(
            "stratum_runs_total",
            "Migration runs (up/down invocations)",
            ["direction", "outcome"],
            registry=self._registry,
        )

        self._lock_contention = Counter(
            "stratum_lock_contention_total",
            "Runs refused because another holder owned the lock",
            registry=self._registry,
        )

        self._schema_version = Gauge(
            "stratum_schema_version",
            "Current applied schema version",
            registry=self._registry,
        )

        # Index builds can take minutes on large collections
        self._migration_duration = Histogram(
            "stratum_migration_duration_seconds",
            "Duration of a single migration step",
            ["direction"],
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_migration(self, direction: str, status: str, duration_seconds: Optional[float] = None) -> None:
        """Record one migration step.

        Args:
            direction: "up" or "down"
            status: "applied", "reverted" or "failed"
            duration_seconds: How long the step took, if it ran
        """
        self._migrations_total.labels(direction=direction, status=status).inc()
        if duration_seconds is not None:
            self._migration_duration.labels(direction=direction).observe(duration_seconds)

    def record_run(self, direction: str, outcome: str) -> None:
        self._runs_total.labels(direction=direction, outcome=outcome).inc()

    def record_lock_contention(self) -> None:
        self._lock_contention.inc()

    def update_schema_version(self, version: int) -> None:
        self._schema_version.set(version)

    def get_metrics(self) -> str:
        """Render the registry in Prometheus text format."""
        return generate_latest(self._registry).decode("utf-8")
