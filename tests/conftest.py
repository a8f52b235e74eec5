"""
Shared pytest fixtures for Stratum tests.
"""
import asyncio
from typing import Callable, Optional

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from stratum.domain.migration import MigrationDefinition
from stratum.services.database import Database
from stratum.services.metrics import MetricsEmitter


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite file for the test."""
    return str(tmp_path / "stratum_test.db")


@pytest_asyncio.fixture
async def db(db_path):
    """Connected Database on a temporary file."""
    database = Database(db_path)
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def second_db(db_path):
    """Second connection to the same file, standing in for another process."""
    database = Database(db_path)
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def metrics():
    """MetricsEmitter with an isolated registry."""
    return MetricsEmitter(registry=CollectorRegistry())


@pytest.fixture
def calls() -> list[tuple[str, int]]:
    """Log of ("apply"|"revert", version) in call order."""
    return []


@pytest.fixture
def make_migration(calls) -> Callable[..., MigrationDefinition]:
    """Factory for migrations that record their calls.

    Args (of the returned factory):
        version: Migration version.
        description: Defaults to "migration <version>".
        fail_apply: Exception to raise from apply.
        fail_revert: Exception to raise from revert.
        gate: Event apply waits on before finishing.
        started: Event set when apply begins.
    """

    def factory(
        version: int,
        description: Optional[str] = None,
        fail_apply: Optional[BaseException] = None,
        fail_revert: Optional[BaseException] = None,
        gate: Optional[asyncio.Event] = None,
        started: Optional[asyncio.Event] = None,
    ) -> MigrationDefinition:
        async def apply(db):
            calls.append(("apply", version))
            if started is not None:
                started.set()
            if gate is not None:
                await gate.wait()
            if fail_apply is not None:
                raise fail_apply

        async def revert(db):
            calls.append(("revert", version))
            if fail_revert is not None:
                raise fail_revert

        return MigrationDefinition(version, description or f"migration {version}", apply, revert)

    return factory
