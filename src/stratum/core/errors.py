"""
Error hierarchy for Stratum.

Every error raised by the engine derives from StratumError and carries a
category so callers can decide whether re-running later makes sense:

- TRANSIENT: another process holds the lock, the database was busy.
  Re-running the same command later may succeed.
- PERMANENT: a broken registry, a failing migration, inconsistent
  history. Someone has to fix something first.

The migration manager itself never retries; classification is for callers.
"""
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class StratumError(Exception):
    """Base exception for all Stratum errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(StratumError):
    """Error that may succeed when the operation is run again later."""

    category = ErrorCategory.TRANSIENT


class PermanentError(StratumError):
    """Error that will NOT succeed on retry without intervention."""

    category = ErrorCategory.PERMANENT


# =============================================================================
# Registry construction
# =============================================================================


class DuplicateVersionError(PermanentError):
    """Two migrations (or two records) share a version number."""

    def __init__(self, version: int, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or f"duplicate migration version {version}", cause)
        self.version = version


class NonSequentialVersionError(PermanentError):
    """Versions are non-positive, out of order, or leave an undeclared gap."""

    def __init__(self, message: str, versions: Optional[list[int]] = None):
        super().__init__(message)
        self.versions = list(versions or [])


class MigrationNotFoundError(PermanentError):
    """A version was requested that the registry does not know about."""

    def __init__(self, version: int):
        super().__init__(f"migration version {version} is not registered")
        self.version = version


# =============================================================================
# Persistence
# =============================================================================


class DatabaseError(TransientError):
    """The document database failed (connection, busy, driver error)."""

    pass


class DuplicateKeyError(PermanentError):
    """A unique index rejected an insert."""

    def __init__(self, collection: str, cause: Optional[BaseException] = None):
        super().__init__(f"duplicate key in collection '{collection}'", cause)
        self.collection = collection


class NotFoundError(PermanentError):
    """A migration record expected to exist is missing."""

    def __init__(self, version: int):
        super().__init__(f"migration record {version} not found")
        self.version = version


# =============================================================================
# Locking
# =============================================================================


class LockBusyError(TransientError):
    """The named lock is currently held by another holder."""

    def __init__(
        self,
        name: str,
        holder: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ):
        detail = f" by '{holder}'" if holder else ""
        until = f" until {expires_at.isoformat()}" if expires_at else ""
        super().__init__(f"lock '{name}' is held{detail}{until}")
        self.name = name
        self.holder = holder
        self.expires_at = expires_at


class LockLostError(TransientError):
    """This holder no longer owns the lock (expired and taken over)."""

    def __init__(self, name: str, holder: str):
        super().__init__(f"lock '{name}' is no longer held by '{holder}'")
        self.name = name
        self.holder = holder


# =============================================================================
# Execution
# =============================================================================


class MigrationInProgressError(TransientError):
    """Another process is running migrations against the same target."""

    def __init__(self, lock_error: LockBusyError):
        super().__init__("migrations are already running elsewhere", cause=lock_error)
        self.holder = lock_error.holder
        self.expires_at = lock_error.expires_at


class MigrationFailedError(PermanentError):
    """A migration's apply or revert raised. The run stopped at this version."""

    def __init__(
        self,
        version: int,
        description: str,
        cause: BaseException,
        direction: str = "up",
    ):
        verb = "apply" if direction == "up" else "revert"
        super().__init__(f"failed to {verb} migration {version} ({description})", cause)
        self.version = version
        self.description = description
        self.direction = direction


class InconsistentHistoryError(PermanentError):
    """Applied records are not a prefix of the registered versions."""

    def __init__(self, missing: list[int]):
        super().__init__(
            f"migration history has holes: versions {missing} are registered "
            "but not recorded below the current version"
        )
        self.missing = list(missing)


class NoMigrationsAppliedError(PermanentError):
    """Rollback was requested but nothing has been applied."""

    def __init__(self) -> None:
        super().__init__("no migrations have been applied; nothing to roll back")


# =============================================================================
# Classification
# =============================================================================


def classify_error(error: BaseException) -> ErrorCategory:
    """Classify an exception into an error category.

    Args:
        error: The exception to classify.

    Returns:
        ErrorCategory for the error.
    """
    if isinstance(error, StratumError):
        return error.category

    if isinstance(error, sqlite3.OperationalError):
        msg = str(error).lower()
        if "locked" in msg or "busy" in msg:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.PERMANENT

    if isinstance(error, sqlite3.IntegrityError):
        return ErrorCategory.PERMANENT

    if isinstance(error, (ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    """Check if running the failed operation again later could help.

    Unknown errors are treated as not retryable: a failing migration must
    be looked at before it is re-run.
    """
    return classify_error(error) == ErrorCategory.TRANSIENT
