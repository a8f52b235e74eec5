"""Unit tests for MetricsEmitter."""
from prometheus_client import CollectorRegistry

from stratum import __version__
from stratum.services.metrics import MetricsEmitter


class TestMetricsEmitter:
    """Test MetricsEmitter functionality."""

    def test_init_creates_metrics(self, metrics):
        """Verify all expected metrics are created."""
        output = metrics.get_metrics()

        assert f'stratum_info{{version="{__version__}"}} 1.0' in output
        assert "stratum_schema_version" in output
        assert "stratum_lock_contention_total" in output

    def test_record_migration(self, metrics):
        metrics.record_migration("up", "applied", duration_seconds=0.25)

        output = metrics.get_metrics()
        assert 'stratum_migrations_total{direction="up",status="applied"} 1.0' in output
        assert 'stratum_migration_duration_seconds_count{direction="up"} 1.0' in output

    def test_failed_step_has_no_duration(self, metrics):
        metrics.record_migration("down", "failed")

        output = metrics.get_metrics()
        assert 'stratum_migrations_total{direction="down",status="failed"} 1.0' in output
        assert 'stratum_migration_duration_seconds_count{direction="down"}' not in output

    def test_record_run(self, metrics):
        metrics.record_run("up", "completed")
        metrics.record_run("up", "completed")

        assert 'stratum_runs_total{direction="up",outcome="completed"} 2.0' in metrics.get_metrics()

    def test_schema_version_gauge(self, metrics):
        metrics.update_schema_version(3)
        assert "stratum_schema_version 3.0" in metrics.get_metrics()

    def test_isolated_registries(self):
        """Two emitters never collide on metric names."""
        first = MetricsEmitter(registry=CollectorRegistry())
        second = MetricsEmitter()

        first.record_lock_contention()

        assert "stratum_lock_contention_total 1.0" in first.get_metrics()
        assert "stratum_lock_contention_total 0.0" in second.get_metrics()
        assert first.registry is not second.registry
