"""Migration V001: Initial indexes.

Creates the baseline indexes for the compliance platform collections.
Unique indexes guard the natural keys (user email, organization slug,
per-organization control and testing cycle ids).
"""

from stratum.domain.migration import MigrationDefinition
from stratum.services.database import Database

VERSION = 1
DESCRIPTION = "Create initial database indexes for optimal performance"

# collection -> [(keys, unique)]
INDEXES = {
    "users": [
        ([("email", 1)], True),
        ([("organization_id", 1), ("role", 1)], False),
        ([("created_at", -1)], False),
    ],
    "organizations": [
        ([("slug", 1)], True),
        ([("created_at", -1)], False),
    ],
    "controls": [
        ([("organization_id", 1), ("control_id", 1)], True),
        ([("organization_id", 1), ("status", 1)], False),
        ([("framework", 1), ("category", 1)], False),
        ([("created_at", -1)], False),
    ],
    "testing_cycles": [
        ([("organization_id", 1), ("cycle_id", 1)], True),
        ([("organization_id", 1), ("status", 1)], False),
        ([("start_date", 1), ("end_date", 1)], False),
    ],
    "evidence_requests": [
        ([("organization_id", 1), ("control_id", 1)], False),
        ([("assignee_id", 1), ("status", 1)], False),
        ([("due_date", 1)], False),
        ([("created_at", -1)], False),
    ],
    "audit_logs": [
        ([("user_id", 1), ("timestamp", -1)], False),
        ([("organization_id", 1), ("timestamp", -1)], False),
        ([("action", 1), ("timestamp", -1)], False),
        ([("resource_id", 1), ("timestamp", -1)], False),
        ([("correlation_id", 1)], False),
    ],
}


async def apply(db: Database) -> None:
    for collection, indexes in INDEXES.items():
        for keys, unique in indexes:
            await db.ensure_index(collection, keys, unique=unique)


async def revert(db: Database) -> None:
    """Drop every secondary index on the baseline collections.

    Later migrations add indexes to the same collections; by the time this
    runs they have been reverted already, so this leaves only ``_id_``.
    """
    for collection in INDEXES:
        for index in await db.list_indexes(collection):
            if index["name"] != "_id_":
                await db.drop_index(collection, index["name"])


MIGRATION = MigrationDefinition(VERSION, DESCRIPTION, apply, revert)
