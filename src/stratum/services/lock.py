"""Lock Coordinator - durable, named mutual exclusion across processes.

A lock is one document ``{name, holder, acquired_at, expires_at}`` in the
``migration_locks`` collection (unique on ``name``). Acquisition is a
conditional insert inside a ``BEGIN IMMEDIATE`` transaction: it succeeds
only if no lock exists or the existing one has expired. Release is a
compare-and-delete on ``(name, holder)``, so a holder whose lock expired
and was taken over cannot delete the new owner's lock.

The TTL only exists to recover from crashed holders. Long runs keep the
lock fresh with ``LockHandle.keep_alive()``.
"""

import asyncio
import os
import socket
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional, Union

import structlog

from stratum.core.errors import DatabaseError, DuplicateKeyError, LockBusyError, LockLostError
from stratum.services.database import Database, is_busy_error

log = structlog.get_logger()

LOCKS_COLLECTION = "migration_locks"
DEFAULT_LOCK_NAME = "migration_lock"
DEFAULT_LOCK_TTL = timedelta(minutes=15)

Clock = Callable[[], datetime]
TTL = Union[timedelta, float, int]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def default_holder_id() -> str:
    """Identify this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _as_timedelta(ttl: TTL) -> timedelta:
    if isinstance(ttl, timedelta):
        delta = ttl
    else:
        delta = timedelta(seconds=float(ttl))
    if delta <= timedelta(0):
        raise ValueError(f"lock ttl must be positive, got {ttl!r}")
    return delta


def _parse_time(value: Any) -> datetime:
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LockHandle:
    """Proof of ownership of a named lock."""

    def __init__(
        self,
        coordinator: "LockCoordinator",
        name: str,
        holder: str,
        acquired_at: datetime,
        expires_at: datetime,
        ttl: timedelta,
    ) -> None:
        self._coordinator = coordinator
        self.name = name
        self.holder = holder
        self.acquired_at = acquired_at
        self.expires_at = expires_at
        self.ttl = ttl
        self._released = False
        self._lost = False

    def __repr__(self) -> str:
        return f"<LockHandle {self.name} holder={self.holder} expires_at={self.expires_at.isoformat()}>"

    @property
    def released(self) -> bool:
        return self._released

    @property
    def lost(self) -> bool:
        """True once renewal discovered that another holder took over."""
        return self._lost

    async def release(self) -> bool:
        """Delete the lock if this handle still owns it.

        Returns:
            True if the lock was deleted, False if it had been taken over
            (or was already released).
        """
        if self._released:
            return False
        deleted = await self._coordinator._release(self)
        self._released = True
        if not deleted:
            self._lost = True
        return deleted

    async def extend(self, ttl: Optional[TTL] = None) -> datetime:
        """Push ``expires_at`` forward by ``ttl`` (default: the original TTL).

        Raises:
            LockLostError: This handle no longer owns the lock.
        """
        if self._released:
            raise LockLostError(self.name, self.holder)
        try:
            self.expires_at = await self._coordinator._extend(self, _as_timedelta(ttl or self.ttl))
        except LockLostError:
            self._lost = True
            raise
        return self.expires_at

    @asynccontextmanager
    async def keep_alive(self, interval: Optional[float] = None) -> AsyncIterator["LockHandle"]:
        """Renew the lock in the background while the block runs.

        Args:
            interval: Seconds between renewals; a third of the TTL by default.
        """
        period = interval if interval is not None else self.ttl.total_seconds() / 3
        task = asyncio.create_task(self._renew_forever(period), name=f"keep-alive:{self.name}")
        try:
            yield self
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _renew_forever(self, period: float) -> None:
        while True:
            await asyncio.sleep(period)
            try:
                await self.extend()
            except LockLostError:
                log.error("lock_lost", lock=self.name, holder=self.holder)
                return
            except DatabaseError as e:
                log.warning("lock_renewal_failed", lock=self.name, error=str(e))
            else:
                log.debug("lock_renewed", lock=self.name, expires_at=self.expires_at.isoformat())


class LockCoordinator:
    """Acquires and releases named locks stored in the database.

    Usage:
        coordinator = LockCoordinator(db)
        handle = await coordinator.acquire("migration_lock", default_holder_id(), ttl=900)
        try:
            ...
        finally:
            await handle.release()
    """

    def __init__(
        self,
        database: Database,
        collection: str = LOCKS_COLLECTION,
        clock: Clock = utc_now,
    ) -> None:
        self._db = database
        self._collection = database.collection(collection)
        self._clock = clock
        self._log = log.bind(component="lock_coordinator")

    async def ensure_schema(self) -> None:
        await self._db.ensure_index(self._collection.name, [("name", 1)], unique=True)

    async def acquire(self, name: str, holder_id: str, ttl: TTL = DEFAULT_LOCK_TTL) -> LockHandle:
        """Take the lock or fail immediately.

        Raises:
            LockBusyError: An unexpired lock with this name exists, or another
                connection kept the database write lock past the busy timeout.
        """
        delta = _as_timedelta(ttl)

        try:
            handle = await self._acquire(name, holder_id, delta)
        except DatabaseError as e:
            if not is_busy_error(e):
                raise
            self._log.warning("lock_write_busy", lock=name, error=str(e))
            raise LockBusyError(name) from e

        self._log.info(
            "lock_acquired", lock=name, holder=holder_id, expires_at=handle.expires_at.isoformat()
        )
        return handle

    async def _acquire(self, name: str, holder_id: str, delta: timedelta) -> LockHandle:
        async with self._db.transaction():
            now = self._clock()
            existing = await self._collection.find_one({"name": name})

            if existing is not None:
                expires_at = _parse_time(existing["expires_at"])
                if expires_at >= now:
                    raise LockBusyError(name, existing.get("holder"), expires_at)

                await self._collection.delete_one({"name": name, "holder": existing.get("holder")})
                self._log.warning(
                    "expired_lock_taken_over",
                    lock=name,
                    previous_holder=existing.get("holder"),
                    expired_at=expires_at.isoformat(),
                )

            expires_at = now + delta
            try:
                await self._collection.insert_one({
                    "name": name,
                    "holder": holder_id,
                    "acquired_at": now.isoformat(),
                    "expires_at": expires_at.isoformat(),
                })
            except DuplicateKeyError as e:
                raise LockBusyError(name) from e

        return LockHandle(self, name, holder_id, now, expires_at, delta)

    async def inspect(self, name: str) -> Optional[dict[str, Any]]:
        """Current lock document (without ``_id``), or None."""
        doc = await self._collection.find_one({"name": name})
        if doc is None:
            return None
        doc.pop("_id", None)
        doc["expired"] = _parse_time(doc["expires_at"]) < self._clock()
        return doc

    async def _release(self, handle: LockHandle) -> bool:
        deleted = await self._collection.delete_one({"name": handle.name, "holder": handle.holder})
        if deleted:
            self._log.info("lock_released", lock=handle.name, holder=handle.holder)
        else:
            self._log.warning("lock_lost", lock=handle.name, holder=handle.holder)
        return bool(deleted)

    async def _extend(self, handle: LockHandle, ttl: timedelta) -> datetime:
        expires_at = self._clock() + ttl
        updated = await self._collection.update_many(
            {"name": handle.name, "holder": handle.holder},
            {"expires_at": expires_at.isoformat()},
        )
        if not updated:
            raise LockLostError(handle.name, handle.holder)
        return expires_at
