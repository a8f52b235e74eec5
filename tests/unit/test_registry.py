"""
Unit tests for MigrationRegistry.

Tests cover:
- Duplicate and non-sequential version rejection
- Deprecated versions as the only allowed gaps
- Ordered, restartable iteration
- Lookup by version
"""
import pytest

from stratum.core.errors import (
    DuplicateVersionError,
    MigrationNotFoundError,
    NonSequentialVersionError,
)
from stratum.services.registry import MigrationRegistry


class TestValidation:
    """Tests for construction-time validation."""

    def test_duplicate_version_rejected(self, make_migration):
        """Registering {1, 2, 2} fails with DuplicateVersionError."""
        with pytest.raises(DuplicateVersionError) as exc_info:
            MigrationRegistry([make_migration(1), make_migration(2), make_migration(2)])
        assert exc_info.value.version == 2

    def test_gap_rejected(self, make_migration):
        """Registering {1, 3} fails: gaps are not allowed by default."""
        with pytest.raises(NonSequentialVersionError) as exc_info:
            MigrationRegistry([make_migration(1), make_migration(3)])
        assert "[2]" in str(exc_info.value)
        assert exc_info.value.versions == [1, 3]

    def test_gap_allowed_when_deprecated(self, make_migration):
        """A retired version may be skipped if declared deprecated."""
        registry = MigrationRegistry([make_migration(1), make_migration(3)], deprecated=[2])

        assert registry.versions == [1, 3]
        assert registry.deprecated == frozenset({2})
        assert registry.latest_version == 3

    def test_sequence_must_start_at_one(self, make_migration):
        with pytest.raises(NonSequentialVersionError):
            MigrationRegistry([make_migration(2), make_migration(3)])

    def test_non_positive_version_rejected(self, make_migration):
        with pytest.raises(NonSequentialVersionError):
            MigrationRegistry([make_migration(0), make_migration(1)])

        with pytest.raises(NonSequentialVersionError):
            MigrationRegistry([make_migration(-1)])

    def test_out_of_order_rejected(self, make_migration):
        """Definitions must be supplied in ascending order."""
        with pytest.raises(NonSequentialVersionError):
            MigrationRegistry([make_migration(2), make_migration(1)])

    def test_registered_and_deprecated_conflict(self, make_migration):
        with pytest.raises(NonSequentialVersionError):
            MigrationRegistry([make_migration(1), make_migration(2)], deprecated=[2])

    def test_empty_registry(self):
        registry = MigrationRegistry([])

        assert len(registry) == 0
        assert registry.latest_version == 0
        assert list(registry.since(0)) == []


class TestQueries:
    """Tests for iteration and lookup."""

    @pytest.fixture
    def registry(self, make_migration):
        return MigrationRegistry([make_migration(v) for v in (1, 2, 3)])

    def test_all_is_ascending_and_restartable(self, registry):
        assert [m.version for m in registry.all()] == [1, 2, 3]
        assert [m.version for m in registry.all()] == [1, 2, 3]
        assert [m.version for m in registry] == [1, 2, 3]

    def test_since(self, registry):
        assert [m.version for m in registry.since(0)] == [1, 2, 3]
        assert [m.version for m in registry.since(2)] == [3]
        assert list(registry.since(3)) == []
        assert list(registry.since(10)) == []

    def test_up_to(self, registry):
        assert [m.version for m in registry.up_to(2)] == [1, 2]
        assert list(registry.up_to(0)) == []

    def test_get(self, registry):
        assert registry.get(2).description == "migration 2"
        assert 2 in registry
        assert 4 not in registry

    def test_get_unknown_version(self, registry):
        with pytest.raises(MigrationNotFoundError) as exc_info:
            registry.get(4)
        assert exc_info.value.version == 4

    def test_len_and_latest(self, registry):
        assert len(registry) == 3
        assert registry.latest_version == 3
