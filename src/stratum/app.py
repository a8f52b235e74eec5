"""
Stratum application wiring.

Builds the collaborators for one process from configuration:

    ConfigManager -> Database -> MigrationRegistry -> MigrationManager
                                                   -> MetricsEmitter

and runs ``up``/``down`` under the configured timeout. Waiting for a lock
held by another process is opt-in (``migrations.lock_wait_seconds``).
"""
import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from stratum import __version__
from stratum.core.config import ConfigManager, find_config_file
from stratum.core.errors import MigrationInProgressError
from stratum.core.logging import get_logger
from stratum.core.retry import RetryConfig, call_with_deadline
from stratum.domain.migration import Direction, MigrationDefinition
from stratum.migrations import DEPRECATED_VERSIONS, all_migrations
from stratum.services.database import Database
from stratum.services.lock import LockCoordinator
from stratum.services.metrics import MetricsEmitter
from stratum.services.migration_manager import MigrationManager
from stratum.services.record_store import MigrationRecordStore
from stratum.services.registry import MigrationRegistry

T = TypeVar("T")

# Polling cadence while another replica holds the lock
LOCK_WAIT_RETRY = RetryConfig(
    min_wait_seconds=1.0,
    max_wait_seconds=15.0,
    retry_on=(MigrationInProgressError,),
)


class StratumApp:
    """One process's view of the migration engine.

    Usage:
        async with StratumApp(ConfigManager(Path("config/default.toml"))) as app:
            version = await app.run(Direction.UP)
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        migrations: Optional[Sequence[MigrationDefinition]] = None,
        deprecated: Optional[Sequence[int]] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        """Initialize the application.

        Args:
            config: Configuration; defaults plus environment when omitted.
            migrations: Definitions to register; the platform catalog by default.
            deprecated: Retired versions allowed to be missing.
            metrics: Metrics emitter; a private one by default.
        """
        self._config = config or ConfigManager()
        self._log = get_logger("app")

        self._registry = MigrationRegistry(
            all_migrations() if migrations is None else migrations,
            deprecated=DEPRECATED_VERSIONS if deprecated is None else deprecated,
        )
        self._metrics = metrics or MetricsEmitter()
        self._database = Database(config=self._config)

        self._manager = MigrationManager(
            self._database,
            self._registry,
            record_store=MigrationRecordStore(self._database),
            lock_coordinator=LockCoordinator(self._database),
            lock_name=self._config.get("migrations.lock_name", "migration_lock"),
            lock_ttl=self._config.get_float("migrations.lock_ttl_seconds", 900.0),
            metrics=self._metrics,
        )

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def database(self) -> Database:
        return self._database

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    @property
    def manager(self) -> MigrationManager:
        return self._manager

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    async def start(self) -> None:
        self._log.info(
            "starting_stratum",
            version=__version__,
            db_path=self._database.path,
            registered=len(self._registry),
            latest_version=self._registry.latest_version,
        )
        await self._database.connect()

    async def stop(self) -> None:
        await self._database.close()

    async def __aenter__(self) -> "StratumApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    async def run(
        self,
        direction: Direction,
        timeout_seconds: Optional[float] = None,
        lock_wait_seconds: Optional[float] = None,
    ) -> int:
        """Run ``up`` or ``down`` and return the resulting version.

        Args:
            direction: UP applies everything pending, DOWN reverts one step.
            timeout_seconds: Bound on a single run; <= 0 disables it.
            lock_wait_seconds: How long to keep retrying while another
                process holds the lock; 0 fails immediately.

        Raises:
            asyncio.TimeoutError: The run exceeded ``timeout_seconds``. The
                lock has been released and the failing step left unrecorded.
            MigrationInProgressError: The lock stayed busy.
        """
        if timeout_seconds is None:
            timeout_seconds = self._config.get_float("migrations.timeout_seconds", 300.0)
        if lock_wait_seconds is None:
            lock_wait_seconds = self._config.get_float("migrations.lock_wait_seconds", 0.0)

        step: Callable[[], Awaitable[int]] = (
            self._manager.up if direction is Direction.UP else self._manager.down
        )

        async def attempt() -> int:
            return await self._bounded(step(), timeout_seconds)

        return await call_with_deadline(
            attempt,
            lock_wait_seconds,
            config=LOCK_WAIT_RETRY,
            log_context={"operation": f"migrate_{direction.value}"},
        )

    @staticmethod
    async def _bounded(coro: Awaitable[T], timeout_seconds: float) -> T:
        if timeout_seconds and timeout_seconds > 0:
            return await asyncio.wait_for(coro, timeout=timeout_seconds)
        return await coro


def load_config(config_path: Optional[Path] = None) -> ConfigManager:
    """Build a ConfigManager from an explicit path or the search paths."""
    return ConfigManager(find_config_file(config_path))
