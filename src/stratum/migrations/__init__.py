"""Schema migrations for the compliance platform database.

Each migration is a Python module with:
- VERSION: int - The migration version number
- DESCRIPTION: str - Human-readable description
- apply(db): coroutine that moves the schema from VERSION-1 to VERSION
- revert(db): coroutine that moves it back
- MIGRATION: the MigrationDefinition built from the above

New migrations are added to the list in ``all_migrations()``; nothing
registers itself on import. Retired versions go in ``DEPRECATED_VERSIONS``.
"""

from stratum.domain.migration import MigrationDefinition
from stratum.migrations import (
    v001_initial_indexes,
    v002_audit_indexes,
    v003_optimize_queries,
)

DEPRECATED_VERSIONS: frozenset[int] = frozenset()


def all_migrations() -> list[MigrationDefinition]:
    """Every known migration, in ascending version order."""
    return [
        v001_initial_indexes.MIGRATION,
        v002_audit_indexes.MIGRATION,
        v003_optimize_queries.MIGRATION,
    ]


__all__ = ["DEPRECATED_VERSIONS", "all_migrations"]
