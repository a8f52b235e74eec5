"""Migration V002: Audit trail indexes.

Compliance reports filter audit logs by organization and action, and
trace a single resource through time. Both read newest first.
"""

from stratum.domain.migration import MigrationDefinition
from stratum.services.database import Database, default_index_name

VERSION = 2
DESCRIPTION = "Add specialized indexes for audit trail and compliance queries"

COLLECTION = "audit_logs"
INDEXES = [
    [("organization_id", 1), ("action", 1), ("timestamp", -1)],
    [("resource_type", 1), ("resource_id", 1), ("timestamp", -1)],
]


async def apply(db: Database) -> None:
    for keys in INDEXES:
        await db.ensure_index(COLLECTION, keys)


async def revert(db: Database) -> None:
    for keys in INDEXES:
        await db.drop_index(COLLECTION, default_index_name(keys))


MIGRATION = MigrationDefinition(VERSION, DESCRIPTION, apply, revert)
