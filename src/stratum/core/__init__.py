"""Core framework infrastructure - config, errors, logging, retry."""

from stratum.core.config import ConfigManager
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
from stratum.core.logging import get_logger, setup_logging
from stratum.core.retry import RetryConfig, call_with_deadline

__all__ = [
    # Config
    "ConfigManager",
    # Logging
    "setup_logging",
    "get_logger",
    # Errors - base
    "StratumError",
    "TransientError",
    "PermanentError",
    "ErrorCategory",
    # Errors - registry
    "DuplicateVersionError",
    "NonSequentialVersionError",
    "MigrationNotFoundError",
    # Errors - persistence
    "DatabaseError",
    "DuplicateKeyError",
    "NotFoundError",
    # Errors - locking
    "LockBusyError",
    "LockLostError",
    # Errors - execution
    "MigrationInProgressError",
    "MigrationFailedError",
    "NoMigrationsAppliedError",
    "InconsistentHistoryError",
    # Utilities
    "classify_error",
    "is_retryable",
    "RetryConfig",
    "call_with_deadline",
]
