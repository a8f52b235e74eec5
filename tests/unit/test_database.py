"""
Unit tests for the SQLite document Database.

Tests cover:
- Document CRUD and filters
- Index creation, listing and dropping
- Unique index enforcement
- Write transactions (commit, rollback and busy writers)
- Health check
"""
import pytest

from stratum.core.errors import DatabaseError, DuplicateKeyError
from stratum.services.database import (
    Database,
    default_index_name,
    is_busy_error,
    normalize_index_keys,
)


class TestIndexNaming:
    def test_normalize_keys(self):
        assert normalize_index_keys("email") == [("email", 1)]
        assert normalize_index_keys([("a", 1), ("b", -5)]) == [("a", 1), ("b", -1)]

    def test_normalize_rejects_empty(self):
        with pytest.raises(ValueError):
            normalize_index_keys([])

    def test_default_name(self):
        assert default_index_name([("organization_id", 1), ("timestamp", -1)]) == "organization_id_1_timestamp_-1"


class TestDocuments:
    """Tests for collection operations."""

    @pytest.mark.asyncio
    async def test_insert_and_find(self, db):
        users = db.collection("users")
        doc_id = await users.insert_one({"email": "a@example.com", "role": "admin"})

        found = await users.find_one({"email": "a@example.com"})
        assert found["_id"] == doc_id
        assert found["role"] == "admin"

    @pytest.mark.asyncio
    async def test_find_on_missing_collection(self, db):
        """Reads against a collection that was never written return nothing."""
        assert await db.collection("nothing_here").find() == []
        assert await db.collection("nothing_here").count_documents() == 0
        assert await db.collection("nothing_here").delete_many() == 0

    @pytest.mark.asyncio
    async def test_sort_and_limit(self, db):
        items = db.collection("items")
        for n in (3, 1, 2):
            await items.insert_one({"n": n})

        docs = await items.find(sort=[("n", -1)])
        assert [d["n"] for d in docs] == [3, 2, 1]

        docs = await items.find(sort=[("n", 1)], limit=2)
        assert [d["n"] for d in docs] == [1, 2]

    @pytest.mark.asyncio
    async def test_operator_filters(self, db):
        items = db.collection("items")
        for n in range(5):
            await items.insert_one({"n": n, "tag": "even" if n % 2 == 0 else None})

        assert await items.count_documents({"n": {"$gte": 3}}) == 2
        assert await items.count_documents({"n": {"$gt": 1, "$lt": 4}}) == 2
        assert await items.count_documents({"n": {"$in": [0, 4, 9]}}) == 2
        assert await items.count_documents({"n": {"$in": []}}) == 0
        assert await items.count_documents({"tag": None}) == 2
        assert await items.count_documents({"tag": {"$ne": None}}) == 3

    @pytest.mark.asyncio
    async def test_unsupported_operator(self, db):
        await db.collection("items").insert_one({"n": 1})
        with pytest.raises(ValueError):
            await db.collection("items").find({"n": {"$regex": "x"}})

    @pytest.mark.asyncio
    async def test_update_many(self, db):
        items = db.collection("items")
        await items.insert_one({"name": "a", "state": "new"})
        await items.insert_one({"name": "b", "state": "new"})

        updated = await items.update_many({"state": "new"}, {"state": "done", "extra": {"k": 1}})

        assert updated == 2
        doc = await items.find_one({"name": "a"})
        assert doc["state"] == "done"
        assert doc["extra"] == {"k": 1}

    @pytest.mark.asyncio
    async def test_delete_one_deletes_single_match(self, db):
        items = db.collection("items")
        await items.insert_one({"kind": "x"})
        await items.insert_one({"kind": "x"})

        assert await items.delete_one({"kind": "x"}) == 1
        assert await items.count_documents({"kind": "x"}) == 1
        assert await items.delete_one({"kind": "missing"}) == 0

    @pytest.mark.asyncio
    async def test_invalid_names_rejected(self, db):
        with pytest.raises(ValueError):
            db.collection("users; DROP TABLE x")
        with pytest.raises(ValueError):
            await db.collection("users").find({"bad field": 1})


class TestIndexes:
    """Tests for index management."""

    @pytest.mark.asyncio
    async def test_ensure_and_list(self, db):
        name = await db.ensure_index("audit_logs", [("organization_id", 1), ("timestamp", -1)])
        assert name == "organization_id_1_timestamp_-1"

        indexes = await db.list_indexes("audit_logs")
        assert indexes[0]["name"] == "_id_"
        assert indexes[1] == {
            "name": "organization_id_1_timestamp_-1",
            "keys": [("organization_id", 1), ("timestamp", -1)],
            "unique": False,
        }

    @pytest.mark.asyncio
    async def test_ensure_is_idempotent(self, db):
        await db.ensure_index("users", "email", unique=True)
        await db.ensure_index("users", "email", unique=True)

        names = [i["name"] for i in await db.list_indexes("users")]
        assert names == ["_id_", "email_1"]

    @pytest.mark.asyncio
    async def test_unique_index_rejects_duplicates(self, db):
        await db.ensure_index("users", [("email", 1)], unique=True)
        users = db.collection("users")
        await users.insert_one({"email": "a@example.com"})

        with pytest.raises(DuplicateKeyError):
            await users.insert_one({"email": "a@example.com"})

    @pytest.mark.asyncio
    async def test_unique_index_on_existing_duplicates(self, db):
        users = db.collection("users")
        await users.insert_one({"email": "a@example.com"})
        await users.insert_one({"email": "a@example.com"})

        with pytest.raises(DuplicateKeyError):
            await db.ensure_index("users", [("email", 1)], unique=True)

    @pytest.mark.asyncio
    async def test_drop_index(self, db):
        await db.ensure_index("users", "email")

        assert await db.drop_index("users", "email_1") is True
        assert await db.drop_index("users", "email_1") is False
        assert [i["name"] for i in await db.list_indexes("users")] == ["_id_"]

    @pytest.mark.asyncio
    async def test_primary_index_protected(self, db):
        with pytest.raises(ValueError):
            await db.drop_index("users", "_id_")
        with pytest.raises(ValueError):
            await db.ensure_index("users", "email", name="_id_")

    @pytest.mark.asyncio
    async def test_list_indexes_missing_collection(self, db):
        assert await db.list_indexes("ghost") == []

    @pytest.mark.asyncio
    async def test_collections(self, db):
        await db.ensure_collection("b_coll")
        await db.ensure_collection("a_coll")

        assert await db.list_collections() == ["a_coll", "b_coll"]
        await db.drop_collection("a_coll")
        assert await db.collection_exists("a_coll") is False


class TestTransactions:
    """Tests for write transactions."""

    @pytest.mark.asyncio
    async def test_commit(self, db):
        async with db.transaction():
            await db.collection("items").insert_one({"n": 1})

        assert await db.collection("items").count_documents() == 1

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, db):
        await db.ensure_collection("items")

        with pytest.raises(RuntimeError):
            async with db.transaction():
                await db.collection("items").insert_one({"n": 1})
                raise RuntimeError("boom")

        assert await db.collection("items").count_documents() == 0

    @pytest.mark.asyncio
    async def test_nested_transaction_rejected(self, db):
        with pytest.raises(RuntimeError):
            async with db.transaction():
                async with db.transaction():
                    pass

    @pytest.mark.asyncio
    async def test_visible_to_other_connection(self, db, second_db):
        async with db.transaction():
            await db.collection("items").insert_one({"n": 1})

        assert await second_db.collection("items").count_documents() == 1

    @pytest.mark.asyncio
    async def test_busy_writer(self, db, db_path):
        async with Database(db_path, busy_timeout_ms=100) as other:
            async with db.transaction():
                with pytest.raises(DatabaseError) as exc_info:
                    async with other.transaction():
                        pass

            assert is_busy_error(exc_info.value)

    def test_other_errors_are_not_busy(self):
        assert not is_busy_error(DatabaseError("database not connected"))
        assert not is_busy_error(ValueError("database is locked"))


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_health_check(self, db):
        health = await db.health_check()

        assert health["status"] == "healthy"
        assert health["latency_ms"] >= 0
        assert health["db_path"] == db.path

    @pytest.mark.asyncio
    async def test_health_check_disconnected(self, db_path):
        health = await Database(db_path).health_check()
        assert health["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, db_path):
        with pytest.raises(DatabaseError):
            await Database(db_path).collection("items").find()

    @pytest.mark.asyncio
    async def test_context_manager(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "ctx.db"
        async with Database(str(path)) as database:
            assert database.is_connected
        assert not database.is_connected
        assert path.exists()

    def test_path_from_config(self):
        from stratum.core.config import ConfigManager

        config = ConfigManager()
        config.set("database.path", "/tmp/from-config.db")
        assert Database(config=config).path == "/tmp/from-config.db"
