"""Domain models - migration definitions, records and status snapshots."""

from stratum.domain.migration import (
    Direction,
    DriftReport,
    MigrationDefinition,
    MigrationOperation,
    MigrationRecord,
    MigrationStatus,
    compute_checksum,
)

__all__ = [
    "Direction",
    "DriftReport",
    "MigrationDefinition",
    "MigrationOperation",
    "MigrationRecord",
    "MigrationStatus",
    "compute_checksum",
]
