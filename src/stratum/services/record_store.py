"""Migration Record Store - durable audit trail of applied migrations.

One document per applied version in the ``schema_migrations`` collection,
with a unique index on ``version`` so that a concurrent double-apply is
rejected by the database rather than silently recorded twice.

The store does not enforce the "no holes" invariant; the manager does.
"""

from typing import Optional

import structlog

from stratum.core.errors import DuplicateKeyError, DuplicateVersionError, NotFoundError
from stratum.domain.migration import MigrationRecord
from stratum.services.database import Database

log = structlog.get_logger()

RECORDS_COLLECTION = "schema_migrations"
VERSION_INDEX = "version_1"


class MigrationRecordStore:
    """Reads and writes MigrationRecords."""

    def __init__(self, database: Database, collection: str = RECORDS_COLLECTION) -> None:
        self._db = database
        self._collection = database.collection(collection)
        self._log = log.bind(component="record_store")

    @property
    def collection_name(self) -> str:
        return self._collection.name

    async def ensure_schema(self) -> None:
        """Create the collection and its unique version index."""
        await self._db.ensure_index(
            self._collection.name, [("version", 1)], unique=True, name=VERSION_INDEX
        )

    async def current_version(self) -> int:
        """Highest applied version, or 0 when nothing is applied."""
        doc = await self._collection.find_one(sort=[("version", -1)])
        return int(doc["version"]) if doc else 0

    async def append(self, record: MigrationRecord) -> None:
        """Insert the record for a freshly applied migration.

        Raises:
            DuplicateVersionError: The version is already recorded.
        """
        try:
            await self._collection.insert_one(record.to_document())
        except DuplicateKeyError as e:
            raise DuplicateVersionError(
                record.version,
                f"migration {record.version} is already recorded",
                cause=e,
            ) from e
        self._log.debug("migration_recorded", version=record.version)

    async def remove(self, version: int) -> None:
        """Delete the record for a reverted migration.

        Raises:
            NotFoundError: No record exists for the version.
        """
        deleted = await self._collection.delete_one({"version": version})
        if deleted == 0:
            raise NotFoundError(version)
        self._log.debug("migration_record_removed", version=version)

    async def get(self, version: int) -> Optional[MigrationRecord]:
        doc = await self._collection.find_one({"version": version})
        return MigrationRecord.from_document(doc) if doc else None

    async def history(self) -> list[MigrationRecord]:
        """All records, ascending by version."""
        docs = await self._collection.find(sort=[("version", 1)])
        return [MigrationRecord.from_document(doc) for doc in docs]
