"""
Migration domain models.

A MigrationDefinition is code: a version, a description and two async
operations. A MigrationRecord is data: the audit row written when a
definition was applied.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from stratum.services.database import Database

MigrationOperation = Callable[["Database"], Awaitable[None]]


def compute_checksum(version: int, description: str) -> str:
    """Fingerprint of a migration's identity.

    This is a drift indicator (someone edited a published description or
    reused a version number), not a tamper-proof seal.
    """
    return hashlib.sha256(f"{version}-{description}".encode("utf-8")).hexdigest()


class Direction(str, Enum):
    """Direction of a migration run."""
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class MigrationDefinition:
    """One schema change: forward and backward operations for a version."""

    version: int
    description: str
    apply: MigrationOperation = field(repr=False, compare=False)
    revert: MigrationOperation = field(repr=False, compare=False)

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int):
            raise TypeError(f"version must be an int, got {self.version!r}")
        if not self.description or not self.description.strip():
            raise ValueError(f"migration {self.version} needs a description")
        if not callable(self.apply) or not callable(self.revert):
            raise TypeError(f"migration {self.version} apply/revert must be callable")

    @property
    def checksum(self) -> str:
        return compute_checksum(self.version, self.description)

    def to_record(self, applied_at: Optional[datetime] = None) -> "MigrationRecord":
        """Build the audit record written after a successful apply."""
        return MigrationRecord(
            version=self.version,
            description=self.description,
            applied_at=applied_at or datetime.now(timezone.utc),
            checksum=self.checksum,
        )


@dataclass(frozen=True)
class MigrationRecord:
    """A migration that has been applied to the database."""

    version: int
    description: str
    applied_at: datetime
    checksum: str

    def to_document(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "description": self.description,
            "applied_at": self.applied_at.isoformat(),
            "checksum": self.checksum,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "MigrationRecord":
        applied_at = doc["applied_at"]
        if isinstance(applied_at, str):
            applied_at = datetime.fromisoformat(applied_at)
        if applied_at.tzinfo is None:
            applied_at = applied_at.replace(tzinfo=timezone.utc)
        return cls(
            version=int(doc["version"]),
            description=doc["description"],
            applied_at=applied_at,
            checksum=doc.get("checksum", ""),
        )


@dataclass(frozen=True)
class DriftReport:
    """A mismatch between an applied record and the registry."""

    version: int
    reason: str  # "checksum_mismatch" or "unknown_version"
    recorded_description: str
    registered_description: Optional[str] = None


@dataclass
class MigrationStatus:
    """Snapshot of where the database stands relative to the registry."""

    current_version: int
    latest_version: int
    applied: list[MigrationRecord] = field(default_factory=list)
    pending: list[MigrationDefinition] = field(default_factory=list)
    lock: Optional[dict[str, Any]] = None

    @property
    def is_up_to_date(self) -> bool:
        return not self.pending
