"""
Shared types for jmapc.

All harmonization dataclasses live here. These are the shared vocabulary
between the correlation store, the chronicle, the delta detector, the
reconciler and the orchestrator.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string. Returns None for empty or malformed input."""
    if not s:
        return None
    if isinstance(s, datetime):
        return s
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Enums ===


class EntityType(str, Enum):
    """Kind of entity held by a collection."""

    CONTACT = "contact"
    EVENT = "event"
    TASK = "task"


VALID_ENTITY_TYPE_VALUES = frozenset(t.value for t in EntityType)


class SyncMode(str, Enum):
    """Per-entity-type synchronization mode of an account."""

    OFF = "off"  # Not synchronized at all
    CACHED = "cached"  # Harmonized into the local store
    LIVE = "live"  # Served straight from the remote, never cached


class ConflictPolicy(str, Enum):
    """Which side wins when both local and remote changed since last sync."""

    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    NEWEST_WINS = "newest-wins"

    @classmethod
    def parse(cls, value: Any) -> "ConflictPolicy":
        """Accept enum values as well as the legacy prevalence codes L/R/N."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid conflict policy: {value!r}")
        text = value.strip()
        legacy = PREVALENCE_CODES.get(text.upper())
        if legacy is not None:
            return legacy
        try:
            return cls(text.lower())
        except ValueError:
            raise ValueError(f"Invalid conflict policy: {value!r}")


PREVALENCE_CODES = {
    "L": ConflictPolicy.LOCAL_WINS,
    "R": ConflictPolicy.REMOTE_WINS,
    "N": ConflictPolicy.NEWEST_WINS,
}


class ChronicleOperation(str, Enum):
    """Operation tag of a chronicle record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class RunState(str, Enum):
    """Orchestrator state of one account."""

    IDLE = "idle"
    LEASING = "leasing"
    RUNNING = "running"
    COMMITTING = "committing"
    ABORTED = "aborted"


class RunOutcome(str, Enum):
    """End state of a harmonization run, recorded on the account."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some entities or collections were skipped
    ABORTED = "aborted"  # Lease lost, cancelled, auth rejected or storage failure
    SKIPPED = "skipped"  # Account disabled/disconnected or lease held elsewhere


class Classification(str, Enum):
    """Reconciler classification of one entity key."""

    UNCHANGED = "unchanged"
    LOCAL_ONLY = "local-only"
    REMOTE_ONLY = "remote-only"
    REMOTE_DELETED = "remote-deleted"
    LOCAL_DELETED = "local-deleted"
    BOTH_DELETED = "both-deleted"
    CONFLICT = "conflict"
    CONFLICT_LOCAL_EDIT_REMOTE_DELETE = "conflict-edit-delete"
    CONFLICT_LOCAL_DELETE_REMOTE_EDIT = "conflict-delete-edit"


# === Records ===


@dataclass
class ServiceAccount:
    """One remote connection of one user."""

    id: Optional[int]
    user_id: str
    uuid: Optional[str] = None
    label: Optional[str] = None
    connection: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    connected: bool = True
    modes: Dict[EntityType, SyncMode] = field(default_factory=dict)
    policies: Dict[EntityType, ConflictPolicy] = field(default_factory=dict)
    # Lease fields
    locked: bool = False
    lease_holder: Optional[str] = None
    lease_heartbeat: Optional[float] = None
    # Run bookkeeping
    harmonization_state: RunState = RunState.IDLE
    harmonization_start: Optional[datetime] = None
    harmonization_end: Optional[datetime] = None
    last_outcome: Optional[RunOutcome] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None

    def mode_for(self, entity_type: EntityType) -> SyncMode:
        return self.modes.get(EntityType(entity_type), SyncMode.OFF)

    def policy_for(self, entity_type: EntityType) -> ConflictPolicy:
        return self.policies.get(EntityType(entity_type), ConflictPolicy.LOCAL_WINS)


@dataclass
class Collection:
    """A local container of entities of exactly one type."""

    id: Optional[int]
    account_id: int
    entity_type: EntityType
    uuid: Optional[str] = None
    label: Optional[str] = None
    remote_id: Optional[str] = None
    local_state: Optional[str] = None  # Chronicle token at the last commit
    remote_state: Optional[str] = None  # Server-issued state token
    enabled: bool = True
    harmonized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Entity:
    """One synchronized item and its correlation to the remote copy."""

    id: Optional[int]
    collection_id: int
    uuid: str
    content: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None
    remote_id: Optional[str] = None
    # Only ever written by a successful reconciler commit
    last_remote_signature: Optional[str] = None
    modified_at: Optional[datetime] = None
    deleted: bool = False  # Tombstone for a local deletion not yet pushed
    pinned: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class ChronicleRecord:
    """An append-only record of one committed local mutation."""

    id: Optional[int]
    account_id: int
    collection_id: int
    entity_id: Optional[int]
    entity_uuid: str
    operation: ChronicleOperation
    stamp: int = 0  # Microseconds since epoch, strictly monotonic


@dataclass
class ChronicleEntry:
    """Entity reference returned by ChronicleLog.since()."""

    entity_id: Optional[int]
    entity_uuid: str
    stamp: int


@dataclass
class ChronicleDelta:
    """Records after a token, partitioned by operation."""

    additions: List[ChronicleEntry] = field(default_factory=list)
    modifications: List[ChronicleEntry] = field(default_factory=list)
    deletions: List[ChronicleEntry] = field(default_factory=list)
    token: str = ""
    truncated: bool = False

    @property
    def count(self) -> int:
        return len(self.additions) + len(self.modifications) + len(self.deletions)


@dataclass
class ConflictRecord:
    """A conflict resolved by policy during reconciliation."""

    id: Optional[int]
    collection_id: int
    entity_id: Optional[int]
    remote_id: Optional[str]
    classification: Classification
    policy: ConflictPolicy
    winner: str  # "local" or "remote"
    local_signature: Optional[str] = None
    remote_signature: Optional[str] = None
    resolved_at: Optional[datetime] = None


# === Reports ===


@dataclass
class HarmonizationStatistics:
    """Counts of actions performed for one collection or one run."""

    local_created: int = 0
    local_updated: int = 0
    local_deleted: int = 0
    remote_created: int = 0
    remote_updated: int = 0
    remote_deleted: int = 0
    conflicts: int = 0
    skipped: int = 0
    deferred: int = 0  # Changed locally mid-run; re-evaluated next run

    def total(self) -> int:
        """Number of writes performed on either side."""
        return (
            self.local_created
            + self.local_updated
            + self.local_deleted
            + self.remote_created
            + self.remote_updated
            + self.remote_deleted
        )

    def merge(self, other: "HarmonizationStatistics") -> None:
        self.local_created += other.local_created
        self.local_updated += other.local_updated
        self.local_deleted += other.local_deleted
        self.remote_created += other.remote_created
        self.remote_updated += other.remote_updated
        self.remote_deleted += other.remote_deleted
        self.conflicts += other.conflicts
        self.skipped += other.skipped
        self.deferred += other.deferred

    def to_dict(self) -> Dict[str, int]:
        return {
            "local_created": self.local_created,
            "local_updated": self.local_updated,
            "local_deleted": self.local_deleted,
            "remote_created": self.remote_created,
            "remote_updated": self.remote_updated,
            "remote_deleted": self.remote_deleted,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
            "deferred": self.deferred,
        }


@dataclass
class CollectionReport:
    """Result of harmonizing one collection."""

    collection_id: int
    entity_type: EntityType
    statistics: HarmonizationStatistics = field(default_factory=HarmonizationStatistics)
    completed: bool = False
    full_resync: bool = False
    error: Optional[str] = None


@dataclass
class RunReport:
    """Result of one harmonization run of an account."""

    account_id: int
    outcome: RunOutcome = RunOutcome.SUCCESS
    collections: List[CollectionReport] = field(default_factory=list)
    statistics: HarmonizationStatistics = field(default_factory=HarmonizationStatistics)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def collections_failed(self) -> int:
        return sum(1 for c in self.collections if not c.completed)

    @property
    def entities_skipped(self) -> int:
        return self.statistics.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "outcome": self.outcome.value,
            "error": self.error,
            "collections_failed": self.collections_failed,
            "entities_skipped": self.entities_skipped,
            "statistics": self.statistics.to_dict(),
            "collections": [
                {
                    "collection_id": c.collection_id,
                    "entity_type": c.entity_type.value,
                    "completed": c.completed,
                    "full_resync": c.full_resync,
                    "error": c.error,
                    "statistics": c.statistics.to_dict(),
                }
                for c in self.collections
            ],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
