"""
Unit tests for the error hierarchy and classification.
"""
import sqlite3
from datetime import datetime, timezone

import pytest

from stratum.core.errors import (
    DatabaseError,
    DuplicateKeyError,
    DuplicateVersionError,
    ErrorCategory,
    InconsistentHistoryError,
    LockBusyError,
    LockLostError,
    MigrationFailedError,
    MigrationInProgressError,
    MigrationNotFoundError,
    NoMigrationsAppliedError,
    NonSequentialVersionError,
    NotFoundError,
    PermanentError,
    StratumError,
    TransientError,
    classify_error,
    is_retryable,
)


class TestErrorHierarchy:
    """Test error type classification."""

    def test_transient_errors_are_retryable(self):
        errors = [
            TransientError("test"),
            DatabaseError("disk busy"),
            LockBusyError("migration_lock"),
            LockLostError("migration_lock", "holder"),
            MigrationInProgressError(LockBusyError("migration_lock")),
        ]
        for error in errors:
            assert error.category == ErrorCategory.TRANSIENT
            assert is_retryable(error) is True

    def test_permanent_errors_are_not_retryable(self):
        errors = [
            PermanentError("test"),
            DuplicateVersionError(2),
            NonSequentialVersionError("gap"),
            MigrationNotFoundError(4),
            DuplicateKeyError("users"),
            NotFoundError(1),
            MigrationFailedError(1, "create indexes", RuntimeError("x")),
            InconsistentHistoryError([1]),
            NoMigrationsAppliedError(),
        ]
        for error in errors:
            assert error.category == ErrorCategory.PERMANENT
            assert is_retryable(error) is False

    def test_all_derive_from_stratum_error(self):
        assert issubclass(MigrationFailedError, StratumError)
        assert issubclass(LockBusyError, StratumError)

    def test_cause_in_message(self):
        error = StratumError("outer", cause=ValueError("inner"))
        assert str(error) == "outer (caused by: inner)"
        assert error.timestamp.tzinfo is not None


class TestErrorDetails:
    def test_lock_busy_details(self):
        expires = datetime(2024, 1, 1, tzinfo=timezone.utc)
        error = LockBusyError("migration_lock", "host:1:abc", expires)

        assert "host:1:abc" in str(error)
        assert expires.isoformat() in str(error)

    def test_in_progress_copies_holder(self):
        expires = datetime(2024, 1, 1, tzinfo=timezone.utc)
        error = MigrationInProgressError(LockBusyError("migration_lock", "other", expires))

        assert error.holder == "other"
        assert error.expires_at == expires
        assert isinstance(error.cause, LockBusyError)

    @pytest.mark.parametrize("direction,verb", [("up", "apply"), ("down", "revert")])
    def test_migration_failed_message(self, direction, verb):
        error = MigrationFailedError(3, "add indexes", RuntimeError("boom"), direction=direction)

        assert str(error) == f"failed to {verb} migration 3 (add indexes) (caused by: boom)"
        assert error.version == 3
        assert error.description == "add indexes"


class TestClassifyError:
    def test_sqlite_busy_is_transient(self):
        assert classify_error(sqlite3.OperationalError("database is locked")) == ErrorCategory.TRANSIENT

    def test_sqlite_syntax_is_permanent(self):
        assert classify_error(sqlite3.OperationalError("near x: syntax error")) == ErrorCategory.PERMANENT
        assert classify_error(sqlite3.IntegrityError("UNIQUE")) == ErrorCategory.PERMANENT

    def test_network_is_transient(self):
        assert classify_error(ConnectionError()) == ErrorCategory.TRANSIENT

    def test_unknown(self):
        assert classify_error(ValueError("x")) == ErrorCategory.UNKNOWN
        assert is_retryable(ValueError("x")) is False
