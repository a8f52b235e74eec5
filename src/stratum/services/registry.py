"""Migration Registry - the validated, ordered set of known migrations.

The registry is assembled once at process start from an explicit list
(see ``stratum.migrations.all_migrations``) and never changes afterwards.
Nothing registers itself at import time.

Validation on construction:
- versions must be positive integers
- no two definitions may share a version
- definitions must be supplied in strictly ascending order
- the sequence must be contiguous from 1, except for versions that are
  explicitly listed as deprecated (retired migrations whose slot stays empty)
"""

from typing import Iterable, Iterator, Optional, Sequence

import structlog

from stratum.core.errors import (
    DuplicateVersionError,
    MigrationNotFoundError,
    NonSequentialVersionError,
)
from stratum.domain.migration import MigrationDefinition

log = structlog.get_logger()


class MigrationRegistry:
    """Immutable, version-indexed collection of MigrationDefinitions.

    Usage:
        registry = MigrationRegistry(all_migrations())

        for migration in registry.since(current_version):
            ...
    """

    def __init__(
        self,
        definitions: Sequence[MigrationDefinition],
        deprecated: Optional[Iterable[int]] = None,
    ) -> None:
        """Validate and index the definitions.

        Args:
            definitions: Migrations in ascending version order.
            deprecated: Versions intentionally left out of the sequence.

        Raises:
            DuplicateVersionError: Two definitions share a version.
            NonSequentialVersionError: A version is <= 0, the list is out of
                order, or the sequence has an undeclared gap.
        """
        definitions = tuple(definitions)
        self._deprecated = frozenset(deprecated or ())
        self._validate(definitions, self._deprecated)

        self._definitions = definitions
        self._by_version = {d.version: d for d in definitions}

        log.debug(
            "migration_registry_built",
            count=len(definitions),
            latest_version=self.latest_version,
            deprecated=sorted(self._deprecated),
        )

    @staticmethod
    def _validate(definitions: tuple[MigrationDefinition, ...], deprecated: frozenset[int]) -> None:
        versions = [d.version for d in definitions]

        seen: set[int] = set()
        for version in versions:
            if version in seen:
                raise DuplicateVersionError(version)
            seen.add(version)

        for version in versions:
            if version <= 0:
                raise NonSequentialVersionError(
                    f"migration versions must be positive, got {version}", versions
                )

        for previous, current in zip(versions, versions[1:]):
            if current <= previous:
                raise NonSequentialVersionError(
                    f"migration {current} is registered after {previous}; "
                    "register migrations in ascending order",
                    versions,
                )

        overlap = seen & deprecated
        if overlap:
            raise NonSequentialVersionError(
                f"versions {sorted(overlap)} are both registered and deprecated", versions
            )

        if versions:
            expected = set(range(1, versions[-1] + 1))
            missing = sorted(expected - seen - deprecated)
            if missing:
                raise NonSequentialVersionError(
                    f"migration versions {missing} are missing; "
                    "mark retired versions as deprecated",
                    versions,
                )

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, version: object) -> bool:
        return version in self._by_version

    def __iter__(self) -> Iterator[MigrationDefinition]:
        return self.all()

    @property
    def versions(self) -> list[int]:
        return [d.version for d in self._definitions]

    @property
    def latest_version(self) -> int:
        """Highest registered version, 0 for an empty registry."""
        return self._definitions[-1].version if self._definitions else 0

    @property
    def deprecated(self) -> frozenset[int]:
        return self._deprecated

    def all(self) -> Iterator[MigrationDefinition]:
        """All definitions in ascending order. Each call starts over."""
        return iter(self._definitions)

    def since(self, version: int) -> Iterator[MigrationDefinition]:
        """Definitions with version strictly greater than ``version``."""
        return (d for d in self._definitions if d.version > version)

    def up_to(self, version: int) -> Iterator[MigrationDefinition]:
        """Definitions with version less than or equal to ``version``."""
        return (d for d in self._definitions if d.version <= version)

    def get(self, version: int) -> MigrationDefinition:
        """Look up one definition.

        Raises:
            MigrationNotFoundError: If the version is not registered.
        """
        try:
            return self._by_version[version]
        except KeyError:
            raise MigrationNotFoundError(version) from None
