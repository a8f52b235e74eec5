"""Migration Manager - runs migrations under the migration lock.

This service:
- Applies every pending migration in ascending order (``up``)
- Reverts exactly one migration, the most recent (``down``)
- Holds the durable migration lock for the whole run and always releases it
- Writes or removes the audit record together with each step
- Reports status and checksum drift without writing to the database

State machine per run:
    IDLE -> LOCK_ACQUIRED -> RUNNING -> COMPLETED
                                     -> FAILED

A failed ``apply`` stops the run at that version. Nothing is rolled back
automatically, and nothing is retried: the next ``up`` resumes at the
failed version.
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import AsyncIterator, Optional, Union

import structlog

from stratum.core.errors import (
    DatabaseError,
    InconsistentHistoryError,
    LockBusyError,
    LockLostError,
    MigrationFailedError,
    MigrationInProgressError,
    NoMigrationsAppliedError,
)
from stratum.domain.migration import (
    Direction,
    DriftReport,
    MigrationDefinition,
    MigrationRecord,
    MigrationStatus,
)
from stratum.services.database import Database, is_busy_error
from stratum.services.lock import (
    DEFAULT_LOCK_NAME,
    DEFAULT_LOCK_TTL,
    LockCoordinator,
    LockHandle,
    default_holder_id,
)
from stratum.services.metrics import MetricsEmitter
from stratum.services.record_store import MigrationRecordStore
from stratum.services.registry import MigrationRegistry

log = structlog.get_logger()


class RunState(str, Enum):
    """Lifecycle of a single up/down run."""
    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationManager:
    """Orchestrates migration runs against one database.

    Not reentrant: callers must not run ``up``/``down`` concurrently on the
    same instance. Separate processes are serialized by the durable lock.

    Usage:
        manager = MigrationManager(db, MigrationRegistry(all_migrations()))
        version = await asyncio.wait_for(manager.up(), timeout=300)
    """

    def __init__(
        self,
        database: Database,
        registry: MigrationRegistry,
        record_store: Optional[MigrationRecordStore] = None,
        lock_coordinator: Optional[LockCoordinator] = None,
        lock_name: str = DEFAULT_LOCK_NAME,
        lock_ttl: Union[timedelta, float] = DEFAULT_LOCK_TTL,
        holder_id: Optional[str] = None,
        keep_alive_interval: Optional[float] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        """Initialize the manager.

        Args:
            database: Handle passed to every migration's apply/revert.
            registry: The validated set of known migrations.
            record_store: Defaults to a store on the same database.
            lock_coordinator: Defaults to a coordinator on the same database.
            lock_name: Name of the lock document shared by all replicas.
            lock_ttl: How long a crashed holder blocks others.
            holder_id: Identity written into the lock; host:pid:random by default.
            keep_alive_interval: Seconds between lock renewals (TTL/3 by default).
            metrics: Optional Prometheus emitter.
        """
        self._db = database
        self._registry = registry
        self._store = record_store or MigrationRecordStore(database)
        self._locks = lock_coordinator or LockCoordinator(database)
        self._lock_name = lock_name
        self._lock_ttl = lock_ttl
        self._holder_id = holder_id or default_holder_id()
        self._keep_alive_interval = keep_alive_interval
        self._metrics = metrics
        self._state = RunState.IDLE
        self._active = False
        self._schema_ready = False
        self._log = log.bind(component="migration_manager")

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def holder_id(self) -> str:
        return self._holder_id

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    async def up(self) -> int:
        """Apply all pending migrations in ascending version order.

        Returns:
            The current version after the run.

        Raises:
            MigrationInProgressError: Another holder owns the lock.
            MigrationFailedError: A migration's apply raised; the version is
                not recorded and later versions did not run.
            InconsistentHistoryError: Recorded versions have holes.
        """
        async with self._run(Direction.UP) as handle:
            current = await self._store.current_version()
            await self._check_history(current)

            self._log.info(
                "migrations_starting",
                current_version=current,
                latest_version=self._registry.latest_version,
            )

            if current > self._registry.latest_version:
                self._log.warning(
                    "database_ahead_of_registry",
                    current_version=current,
                    latest_version=self._registry.latest_version,
                )

            applied = 0
            for migration in self._registry.since(current):
                self._ensure_lock_held(handle)
                await self._apply(migration)
                current = migration.version
                applied += 1

            if applied == 0:
                self._log.info("no_pending_migrations", current_version=current)
            else:
                self._log.info("migrations_completed", applied_count=applied, current_version=current)

            if self._metrics:
                self._metrics.update_schema_version(current)
            return current

    async def down(self) -> int:
        """Revert the most recently applied migration, and only that one.

        Returns:
            The current version after the rollback.

        Raises:
            MigrationInProgressError: Another holder owns the lock.
            NoMigrationsAppliedError: Nothing has been applied.
            MigrationNotFoundError: The applied version is not registered.
            MigrationFailedError: The migration's revert raised.
            NotFoundError: The record vanished between read and delete.
        """
        async with self._run(Direction.DOWN) as handle:
            current = await self._store.current_version()
            if current == 0:
                raise NoMigrationsAppliedError()

            migration = self._registry.get(current)
            self._ensure_lock_held(handle)
            self._log.warning(
                "migration_revert_started",
                version=migration.version,
                description=migration.description,
            )

            start = time.perf_counter()
            try:
                await migration.revert(self._db)
            except Exception as e:
                self._record_step(Direction.DOWN, "failed")
                self._log.error(
                    "migration_failed",
                    version=migration.version,
                    direction=Direction.DOWN.value,
                    error=str(e),
                    exc_info=True,
                )
                raise MigrationFailedError(
                    migration.version, migration.description, e, direction=Direction.DOWN.value
                ) from e

            await self._store.remove(migration.version)
            duration = time.perf_counter() - start
            self._record_step(Direction.DOWN, "reverted", duration)

            new_version = await self._store.current_version()
            self._log.warning(
                "migration_reverted",
                version=migration.version,
                current_version=new_version,
                duration_ms=round(duration * 1000, 2),
            )

            if self._metrics:
                self._metrics.update_schema_version(new_version)
            return new_version

    async def get_version(self) -> int:
        """Current applied version. No locking; fine for display."""
        return await self._store.current_version()

    async def get_migration_history(self) -> list[MigrationRecord]:
        """Applied records, ascending by version."""
        return await self._store.history()

    async def pending(self) -> list[MigrationDefinition]:
        current = await self._store.current_version()
        return list(self._registry.since(current))

    async def status(self) -> MigrationStatus:
        """Where the database stands relative to the registry. Read-only."""
        history = await self._store.history()
        current = history[-1].version if history else 0
        return MigrationStatus(
            current_version=current,
            latest_version=self._registry.latest_version,
            applied=history,
            pending=list(self._registry.since(current)),
            lock=await self._locks.inspect(self._lock_name),
        )

    async def verify(self) -> list[DriftReport]:
        """Compare recorded checksums with the registered definitions.

        Read-only. Returns one report per drifted or unknown record.
        """
        reports: list[DriftReport] = []
        for record in await self._store.history():
            if record.version not in self._registry:
                reports.append(DriftReport(
                    version=record.version,
                    reason="unknown_version",
                    recorded_description=record.description,
                ))
                continue

            migration = self._registry.get(record.version)
            if record.checksum != migration.checksum:
                reports.append(DriftReport(
                    version=record.version,
                    reason="checksum_mismatch",
                    recorded_description=record.description,
                    registered_description=migration.description,
                ))

        for report in reports:
            self._log.warning(
                "migration_drift_detected",
                version=report.version,
                reason=report.reason,
            )
        return reports

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _ensure_schema(self) -> None:
        """Create the record and lock collections on first use.

        Raises:
            LockBusyError: Another connection held the write lock past the
                busy timeout, which only happens while it is migrating.
        """
        if self._schema_ready:
            return
        try:
            await self._store.ensure_schema()
            await self._locks.ensure_schema()
        except DatabaseError as e:
            if not is_busy_error(e):
                raise
            raise LockBusyError(self._lock_name) from e
        self._schema_ready = True

    @asynccontextmanager
    async def _run(self, direction: Direction) -> AsyncIterator[LockHandle]:
        """Hold the lock for one run and release it on every exit path."""
        if self._active:
            raise RuntimeError("MigrationManager is already running; it is not reentrant")
        self._active = True

        run_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(run_id=run_id, direction=direction.value)
        try:
            try:
                await self._ensure_schema()
                handle = await self._locks.acquire(self._lock_name, self._holder_id, self._lock_ttl)
            except LockBusyError as e:
                self._log.warning(
                    "migration_lock_busy",
                    lock=self._lock_name,
                    holder=e.holder,
                    expires_at=e.expires_at.isoformat() if e.expires_at else None,
                )
                if self._metrics:
                    self._metrics.record_lock_contention()
                    self._metrics.record_run(direction.value, "busy")
                raise MigrationInProgressError(e) from e

            self._state = RunState.LOCK_ACQUIRED
            try:
                async with handle.keep_alive(self._keep_alive_interval):
                    self._state = RunState.RUNNING
                    yield handle
            except BaseException:
                self._state = RunState.FAILED
                if self._metrics:
                    self._metrics.record_run(direction.value, "failed")
                raise
            else:
                self._state = RunState.COMPLETED
                if self._metrics:
                    self._metrics.record_run(direction.value, "completed")
            finally:
                await self._release(handle)
        finally:
            self._active = False
            structlog.contextvars.unbind_contextvars("run_id", "direction")

    async def _release(self, handle: LockHandle) -> None:
        """Release the lock; a failure here must not hide the run's outcome."""
        try:
            await handle.release()
        except Exception as e:
            self._log.error(
                "lock_release_failed",
                lock=handle.name,
                holder=handle.holder,
                error=str(e),
                exc_info=True,
            )

    def _ensure_lock_held(self, handle: LockHandle) -> None:
        if handle.lost:
            raise LockLostError(handle.name, handle.holder)

    async def _check_history(self, current: int) -> None:
        """Recorded versions must be a prefix of the registry's sequence."""
        recorded = {record.version for record in await self._store.history()}
        missing = [
            migration.version
            for migration in self._registry.up_to(current)
            if migration.version not in recorded
        ]
        if missing:
            raise InconsistentHistoryError(missing)

    async def _apply(self, migration: MigrationDefinition) -> None:
        self._log.info(
            "migration_started",
            version=migration.version,
            description=migration.description,
        )

        start = time.perf_counter()
        try:
            await migration.apply(self._db)
        except Exception as e:
            self._record_step(Direction.UP, "failed")
            self._log.error(
                "migration_failed",
                version=migration.version,
                direction=Direction.UP.value,
                error=str(e),
                exc_info=True,
            )
            raise MigrationFailedError(migration.version, migration.description, e) from e

        await self._store.append(migration.to_record())
        duration = time.perf_counter() - start
        self._record_step(Direction.UP, "applied", duration)

        self._log.info(
            "migration_applied",
            version=migration.version,
            duration_ms=round(duration * 1000, 2),
        )

    def _record_step(self, direction: Direction, status: str, duration: Optional[float] = None) -> None:
        if self._metrics:
            self._metrics.record_migration(direction.value, status, duration)
