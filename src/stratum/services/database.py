"""Document Database - async SQLite-backed collections and indexes.

This service:
- Stores JSON documents in named collections (one table per collection)
- Maps index keys onto json_extract expression indexes
- Exposes write transactions that serialize across processes
- Is the "execute against collection X" and "ensure index" capability
  that migrations, the record store and the lock coordinator build on
"""

import asyncio
import json
import re
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence, Union

import aiosqlite
import structlog

from stratum.core.config import ConfigManager
from stratum.core.errors import DatabaseError, DuplicateKeyError

log = structlog.get_logger()

PRIMARY_INDEX_NAME = "_id_"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_FIELD = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_INDEX_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")
_INDEX_KEY = re.compile(r"json_extract\(doc, '\$\.([A-Za-z0-9_.]+)'\) (ASC|DESC)")

_OPERATORS = {
    "$lt": "<",
    "$lte": "<=",
    "$gt": ">",
    "$gte": ">=",
    "$ne": "IS NOT",
}

IndexKeys = Union[str, Sequence[tuple[str, int]]]
Filter = Optional[dict[str, Any]]
Sort = Optional[Sequence[tuple[str, int]]]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, separators=(",", ":"))


def _check_identifier(name: str, kind: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid {kind} name: {name!r}")
    return name


def _field_expr(field_name: str) -> str:
    if not _FIELD.match(field_name):
        raise ValueError(f"invalid field name: {field_name!r}")
    if field_name == "_id":
        return "_id"
    return f"json_extract(doc, '$.{field_name}')"


def _bind(value: Any) -> Any:
    """Convert a Python value to what json_extract yields for it."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _where(filter_: Filter) -> tuple[str, list[Any]]:
    """Build a WHERE clause from an equality/operator filter.

    Supports {"field": value}, {"field": None} and
    {"field": {"$lt"|"$lte"|"$gt"|"$gte"|"$ne"|"$in": value}}.
    """
    if not filter_:
        return "", []

    clauses: list[str] = []
    params: list[Any] = []

    for field_name, condition in filter_.items():
        expr = _field_expr(field_name)

        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in":
                    values = list(operand)
                    if not values:
                        clauses.append("0")
                        continue
                    placeholders = ", ".join("?" for _ in values)
                    clauses.append(f"{expr} IN ({placeholders})")
                    params.extend(_bind(v) for v in values)
                elif op in _OPERATORS:
                    clauses.append(f"{expr} {_OPERATORS[op]} ?")
                    params.append(_bind(operand))
                else:
                    raise ValueError(f"unsupported filter operator: {op}")
        elif condition is None:
            clauses.append(f"{expr} IS NULL")
        else:
            clauses.append(f"{expr} = ?")
            params.append(_bind(condition))

    return " WHERE " + " AND ".join(clauses), params


def _order_by(sort: Sort) -> str:
    if not sort:
        return ""
    parts = [
        f"{_field_expr(field_name)} {'DESC' if direction < 0 else 'ASC'}"
        for field_name, direction in sort
    ]
    return " ORDER BY " + ", ".join(parts)


def normalize_index_keys(keys: IndexKeys) -> list[tuple[str, int]]:
    """Accept "field" or [("field", 1), ("other", -1)]."""
    if isinstance(keys, str):
        return [(keys, 1)]
    normalized = [(field_name, -1 if direction < 0 else 1) for field_name, direction in keys]
    if not normalized:
        raise ValueError("an index needs at least one key")
    return normalized


def is_busy_error(error: BaseException) -> bool:
    """True when SQLite gave up waiting for another connection's write lock."""
    cause = error.cause if isinstance(error, DatabaseError) else error
    if not isinstance(cause, sqlite3.OperationalError):
        return False
    message = str(cause).lower()
    return "locked" in message or "busy" in message


def default_index_name(keys: IndexKeys) -> str:
    """Index name in the familiar ``field_1_other_-1`` form."""
    return "_".join(f"{f}_{d}" for f, d in normalize_index_keys(keys))


class Collection:
    """A named set of JSON documents.

    Collections are created on first write; reads against a collection
    that does not exist yet return nothing.
    """

    def __init__(self, database: "Database", name: str) -> None:
        self._db = database
        self._name = _check_identifier(name, "collection")

    @property
    def name(self) -> str:
        return self._name

    async def insert_one(self, document: dict[str, Any]) -> str:
        """Insert a document and return its ``_id``.

        Raises:
            DuplicateKeyError: If a unique index rejects the document.
        """
        doc = dict(document)
        doc_id = str(doc.get("_id") or uuid.uuid4().hex)
        doc["_id"] = doc_id

        async with self._db.connection() as conn:
            await self._db.ensure_collection(self._name, conn=conn)
            try:
                await conn.execute(
                    f'INSERT INTO "{self._name}" (_id, doc) VALUES (?, ?)',
                    (doc_id, _dumps(doc)),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(self._name, cause=e) from e
        return doc_id

    async def find(
        self,
        filter_: Filter = None,
        sort: Sort = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Return matching documents, optionally sorted and limited."""
        where, params = _where(filter_)
        sql = f'SELECT doc FROM "{self._name}"{where}{_order_by(sort)}'
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        async with self._db.connection() as conn:
            if not await self._db.collection_exists(self._name, conn=conn):
                return []
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [json.loads(row["doc"]) for row in rows]

    async def find_one(self, filter_: Filter = None, sort: Sort = None) -> Optional[dict[str, Any]]:
        docs = await self.find(filter_, sort=sort, limit=1)
        return docs[0] if docs else None

    async def count_documents(self, filter_: Filter = None) -> int:
        where, params = _where(filter_)
        async with self._db.connection() as conn:
            if not await self._db.collection_exists(self._name, conn=conn):
                return 0
            async with conn.execute(f'SELECT COUNT(*) FROM "{self._name}"{where}', params) as cursor:
                row = await cursor.fetchone()
        return int(row[0])

    async def update_many(self, filter_: Filter, values: dict[str, Any]) -> int:
        """Set top-level fields on every matching document.

        Returns:
            Number of documents modified.
        """
        if not values:
            return 0
        assignments = []
        params: list[Any] = []
        for field_name, value in values.items():
            if field_name == "_id" or not _FIELD.match(field_name):
                raise ValueError(f"cannot update field {field_name!r}")
            assignments.append(f"'$.{field_name}', json(?)")
            params.append(_dumps(value))

        where, where_params = _where(filter_)
        sql = f'UPDATE "{self._name}" SET doc = json_set(doc, {", ".join(assignments)}){where}'

        async with self._db.connection() as conn:
            if not await self._db.collection_exists(self._name, conn=conn):
                return 0
            try:
                cursor = await conn.execute(sql, params + where_params)
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(self._name, cause=e) from e
            return cursor.rowcount

    async def delete_one(self, filter_: Filter = None) -> int:
        """Delete at most one matching document. Returns 0 or 1."""
        where, params = _where(filter_)
        sql = (
            f'DELETE FROM "{self._name}" WHERE _id IN '
            f'(SELECT _id FROM "{self._name}"{where} LIMIT 1)'
        )
        async with self._db.connection() as conn:
            if not await self._db.collection_exists(self._name, conn=conn):
                return 0
            cursor = await conn.execute(sql, params)
            return cursor.rowcount

    async def delete_many(self, filter_: Filter = None) -> int:
        where, params = _where(filter_)
        async with self._db.connection() as conn:
            if not await self._db.collection_exists(self._name, conn=conn):
                return 0
            cursor = await conn.execute(f'DELETE FROM "{self._name}"{where}', params)
            return cursor.rowcount


class Database:
    """Async SQLite document database.

    One aiosqlite connection per instance, in autocommit mode. An asyncio
    lock serializes use of that connection within the process; write
    transactions use ``BEGIN IMMEDIATE`` so they also serialize against
    other processes sharing the same file.

    Usage:
        db = Database("./data/stratum.db")
        await db.connect()
        await db.ensure_index("users", [("email", 1)], unique=True)
        await db.collection("users").insert_one({"email": "a@example.com"})
        await db.close()
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        busy_timeout_ms: Optional[int] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the database.

        Args:
            db_path: Direct path to database file (takes precedence).
            busy_timeout_ms: How long to wait for another writer.
            config: Configuration manager for default settings.
        """
        if db_path:
            self._db_path = str(db_path)
        elif config:
            self._db_path = str(config.get("database.path", "./data/stratum.db"))
        else:
            self._db_path = "./data/stratum.db"

        if busy_timeout_ms is None:
            busy_timeout_ms = config.get_int("database.busy_timeout_ms", 5000) if config else 5000
        self._busy_timeout_ms = busy_timeout_ms

        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task[Any]] = None
        self._log = log.bind(component="database")

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the connection (idempotent)."""
        if self._connection is not None:
            return

        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as e:
            raise DatabaseError(f"cannot open database at {self._db_path}", cause=e) from e

        self._connection = conn
        self._log.info("database_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._log.info("database_closed")

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise DatabaseError("database not connected")
        return self._connection

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection for one operation.

        Inside ``transaction()`` the owning task reuses the connection
        without re-taking the lock; other tasks wait for the transaction.
        """
        conn = self._require_connection()
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            yield conn
            return

        async with self._lock:
            try:
                yield conn
            except sqlite3.OperationalError as e:
                raise DatabaseError(str(e), cause=e) from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Database"]:
        """Run a block inside a ``BEGIN IMMEDIATE`` write transaction.

        Commits on success and rolls back on any exception, including
        cancellation. Nested use from the same task is not supported.
        """
        conn = self._require_connection()
        current = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is current:
            raise RuntimeError("nested transactions are not supported")

        async with self._lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                raise DatabaseError("could not start write transaction", cause=e) from e

            self._tx_owner = current
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
            finally:
                self._tx_owner = None

    def collection(self, name: str) -> Collection:
        return Collection(self, name)

    async def collection_exists(self, name: str, conn: Optional[aiosqlite.Connection] = None) -> bool:
        _check_identifier(name, "collection")
        sql = "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?"
        if conn is not None:
            async with conn.execute(sql, (name,)) as cursor:
                return await cursor.fetchone() is not None
        async with self.connection() as c:
            async with c.execute(sql, (name,)) as cursor:
                return await cursor.fetchone() is not None

    async def ensure_collection(self, name: str, conn: Optional[aiosqlite.Connection] = None) -> None:
        """Create the backing table for a collection if it is missing."""
        _check_identifier(name, "collection")
        sql = f'CREATE TABLE IF NOT EXISTS "{name}" (_id TEXT PRIMARY KEY, doc TEXT NOT NULL)'
        if conn is not None:
            await conn.execute(sql)
            return
        async with self.connection() as c:
            await c.execute(sql)

    async def list_collections(self) -> list[str]:
        async with self.connection() as conn:
            async with conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            ) as cursor:
                rows = await cursor.fetchall()
        return [row["name"] for row in rows]

    async def drop_collection(self, name: str) -> None:
        _check_identifier(name, "collection")
        async with self.connection() as conn:
            await conn.execute(f'DROP TABLE IF EXISTS "{name}"')

    async def ensure_index(
        self,
        collection: str,
        keys: IndexKeys,
        unique: bool = False,
        name: Optional[str] = None,
    ) -> str:
        """Create an index on document fields if it does not exist.

        Args:
            collection: Collection name.
            keys: "field" or [("field", 1), ("other", -1)].
            unique: Reject documents that duplicate the key.
            name: Index name; defaults to ``field_1_other_-1``.

        Returns:
            The index name.

        Raises:
            DuplicateKeyError: If existing documents violate a unique index.
        """
        normalized = normalize_index_keys(keys)
        index_name = name or default_index_name(normalized)
        if index_name == PRIMARY_INDEX_NAME:
            raise ValueError(f"{PRIMARY_INDEX_NAME} is reserved")
        if not _INDEX_NAME.match(index_name):
            raise ValueError(f"invalid index name: {index_name!r}")
        _check_identifier(collection, "collection")

        columns = ", ".join(
            f"{_field_expr(f)} {'DESC' if d < 0 else 'ASC'}" for f, d in normalized
        )

        sql = (
            f"CREATE {'UNIQUE ' if unique else ''}INDEX IF NOT EXISTS "
            f'"{collection}__{index_name}" ON "{collection}" ({columns})'
        )

        async with self.connection() as conn:
            await self.ensure_collection(collection, conn=conn)
            try:
                await conn.execute(sql)
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(collection, cause=e) from e

        self._log.debug("index_ensured", collection=collection, index=index_name, unique=unique)
        return index_name

    async def drop_index(self, collection: str, name: str) -> bool:
        """Drop a secondary index. Returns False if it did not exist."""
        if name == PRIMARY_INDEX_NAME:
            raise ValueError("cannot drop the primary _id_ index")
        _check_identifier(collection, "collection")

        physical = f"{collection}__{name}"
        async with self.connection() as conn:
            async with conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
                (physical,),
            ) as cursor:
                exists = await cursor.fetchone() is not None
            if exists:
                await conn.execute(f'DROP INDEX "{physical}"')

        if exists:
            self._log.debug("index_dropped", collection=collection, index=name)
        return exists

    async def list_indexes(self, collection: str) -> list[dict[str, Any]]:
        """Describe the indexes of a collection, primary index first."""
        _check_identifier(collection, "collection")
        async with self.connection() as conn:
            if not await self.collection_exists(collection, conn=conn):
                return []
            async with conn.execute(
                "SELECT name, sql FROM sqlite_master "
                "WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL ORDER BY name",
                (collection,),
            ) as cursor:
                rows = await cursor.fetchall()

        indexes: list[dict[str, Any]] = [
            {"name": PRIMARY_INDEX_NAME, "keys": [("_id", 1)], "unique": True}
        ]
        prefix = f"{collection}__"
        for row in rows:
            physical = row["name"]
            if not physical.startswith(prefix):
                continue
            sql = row["sql"]
            keys = [
                (field_name, -1 if direction == "DESC" else 1)
                for field_name, direction in _INDEX_KEY.findall(sql)
            ]
            indexes.append({
                "name": physical[len(prefix):],
                "keys": keys,
                "unique": sql.upper().startswith("CREATE UNIQUE"),
            })
        return indexes

    async def health_check(self) -> dict[str, Any]:
        """Ping the database and report latency."""
        if self._connection is None:
            return {"status": "unhealthy", "message": "not connected", "db_path": self._db_path}

        start = time.perf_counter()
        try:
            async with self.connection() as conn:
                async with conn.execute("SELECT 1") as cursor:
                    await cursor.fetchone()
        except DatabaseError as e:
            return {"status": "unhealthy", "message": str(e), "db_path": self._db_path}

        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - start) * 1000, 3),
            "db_path": self._db_path,
        }
