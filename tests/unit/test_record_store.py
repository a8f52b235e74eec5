"""
Unit tests for MigrationRecordStore.
"""
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from stratum.core.errors import DuplicateVersionError, NotFoundError
from stratum.domain.migration import MigrationRecord, compute_checksum
from stratum.services.record_store import RECORDS_COLLECTION, VERSION_INDEX, MigrationRecordStore


def _record(version: int, description: str = "") -> MigrationRecord:
    description = description or f"migration {version}"
    return MigrationRecord(
        version=version,
        description=description,
        applied_at=datetime(2024, 1, version, tzinfo=timezone.utc),
        checksum=compute_checksum(version, description),
    )


@pytest_asyncio.fixture
async def store(db):
    record_store = MigrationRecordStore(db)
    await record_store.ensure_schema()
    return record_store


class TestRecordStore:
    """Tests for the audit trail of applied migrations."""

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await store.current_version() == 0
        assert await store.history() == []
        assert await store.get(1) is None

    @pytest.mark.asyncio
    async def test_schema(self, db, store):
        indexes = await db.list_indexes(RECORDS_COLLECTION)
        version_index = next(i for i in indexes if i["name"] == VERSION_INDEX)
        assert version_index["unique"] is True
        assert store.collection_name == RECORDS_COLLECTION

    @pytest.mark.asyncio
    async def test_append_and_history(self, store):
        # Insertion order must not matter for history or current version
        await store.append(_record(2))
        await store.append(_record(1))

        assert await store.current_version() == 2
        history = await store.history()
        assert [r.version for r in history] == [1, 2]
        assert history[0] == _record(1)

    @pytest.mark.asyncio
    async def test_append_duplicate_version(self, store):
        await store.append(_record(1))

        with pytest.raises(DuplicateVersionError) as exc_info:
            await store.append(_record(1, "something else"))
        assert exc_info.value.version == 1

    @pytest.mark.asyncio
    async def test_remove(self, store):
        await store.append(_record(1))
        await store.append(_record(2))

        await store.remove(2)

        assert await store.current_version() == 1
        assert await store.get(2) is None

    @pytest.mark.asyncio
    async def test_remove_missing(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.remove(7)
        assert exc_info.value.version == 7

    @pytest.mark.asyncio
    async def test_round_trips_timestamp(self, store):
        record = _record(3)
        await store.append(record)

        loaded = await store.get(3)
        assert loaded.applied_at == record.applied_at
        assert loaded.applied_at.tzinfo is not None
        assert loaded.checksum == record.checksum

    @pytest.mark.asyncio
    async def test_custom_collection(self, db):
        store = MigrationRecordStore(db, collection="other_migrations")
        await store.ensure_schema()
        await store.append(_record(1))

        assert await db.collection("other_migrations").count_documents() == 1
        assert await db.collection(RECORDS_COLLECTION).count_documents() == 0
