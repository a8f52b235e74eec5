"""Services - database, registry, record store, locking and the manager."""

from stratum.services.database import Collection, Database
from stratum.services.lock import LockCoordinator, LockHandle
from stratum.services.metrics import MetricsEmitter
from stratum.services.migration_manager import MigrationManager, RunState
from stratum.services.record_store import MigrationRecordStore
from stratum.services.registry import MigrationRegistry

__all__ = [
    "Collection",
    "Database",
    "LockCoordinator",
    "LockHandle",
    "MetricsEmitter",
    "MigrationManager",
    "MigrationRecordStore",
    "MigrationRegistry",
    "RunState",
]
