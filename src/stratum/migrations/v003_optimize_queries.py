"""Migration V003: Query pattern indexes.

Dashboards list an organization's controls by last update and its
evidence requests by due date.
"""

from stratum.domain.migration import MigrationDefinition
from stratum.services.database import Database, default_index_name

VERSION = 3
DESCRIPTION = "Add performance optimization indexes based on query patterns"

INDEXES = [
    ("controls", [("organization_id", 1), ("updated_at", -1)]),
    ("evidence_requests", [("organization_id", 1), ("due_date", 1)]),
]


async def apply(db: Database) -> None:
    for collection, keys in INDEXES:
        await db.ensure_index(collection, keys)


async def revert(db: Database) -> None:
    for collection, keys in INDEXES:
        await db.drop_index(collection, default_index_name(keys))


MIGRATION = MigrationDefinition(VERSION, DESCRIPTION, apply, revert)
