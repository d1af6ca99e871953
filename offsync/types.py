"""Data model for the offline sync engine.

Plain dataclasses and str-valued enums shared by every component. Nothing in
this module performs I/O.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_operation_id() -> str:
    return str(uuid.uuid4())


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, assuming UTC for naive values."""
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


# === Enums ===


class OperationKind(str, Enum):
    """What a queued operation does to its entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"  # Refresh request with no local mutation


class Priority(str, Enum):
    """Dequeue tier. Higher tiers are always sent first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: Dict[Priority, int] = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class OperationStatus(str, Enum):
    """Lifecycle state of a queued operation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


# States in which an operation still counts as outstanding work
ACTIVE_STATUSES = frozenset(
    {OperationStatus.PENDING, OperationStatus.IN_PROGRESS, OperationStatus.RETRYING}
)


class ConnectionQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    OFFLINE = "offline"


class BatteryStatus(str, Enum):
    CHARGING = "charging"
    DISCHARGING = "discharging"
    CRITICAL = "critical"


class StorageStatus(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"


class SyncHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ResolutionAction(str, Enum):
    """What the sync engine must do with the operation behind a conflict."""

    APPLY_LOCAL = "apply_local"  # Re-queue with resolved payload against the remote version
    DISCARD_LOCAL = "discard_local"  # Mark completed, superseded by the remote state
    DEFER = "defer"  # Hold until a collaborator resolves it


# Error recorded on operations cancelled by a collaborator
CANCELLED_ERROR = "cancelled"


# === Operation ===


@dataclass
class Operation:
    """A single client-side mutation awaiting synchronization."""

    kind: OperationKind
    entity_type: str
    entity_id: str
    payload: Optional[Dict[str, Any]] = None  # Opaque to the engine
    id: str = field(default_factory=new_operation_id)
    created_at: datetime = field(default_factory=utc_now)
    priority: Priority = Priority.MEDIUM
    retry_count: int = 0
    max_retries: int = 3
    status: OperationStatus = OperationStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    error: Optional[str] = None  # Last failure, only while failed or retrying
    base_version: Optional[Any] = None  # Remote version the payload was computed against
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Scheduling bookkeeping
    next_retry_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    cancel_requested: bool = False
    awaiting_resolution: Optional[str] = None  # Conflict id holding this operation
    superseded_by: Optional[str] = None
    seq: int = 0
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.kind = OperationKind(self.kind)
        self.priority = Priority(self.priority)
        self.status = OperationStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status in (OperationStatus.COMPLETED, OperationStatus.FAILED)

    def sort_key(self):
        """Dequeue order: priority desc, then created_at asc, then insert order."""
        return (-self.priority.rank, self.created_at, self.seq)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["priority"] = self.priority.value
        data["status"] = self.status.value
        for key in ("created_at", "next_retry_at", "last_attempt_at", "updated_at"):
            data[key] = format_datetime(getattr(self, key))
        return data


# === Conflicts ===


@dataclass
class RemoteState:
    """The origin's current view of an entity, as returned with a conflict."""

    data: Optional[Dict[str, Any]]
    version: Optional[Any] = None
    updated_at: Optional[datetime] = None


@dataclass
class Conflict:
    """A divergence between a local operation and the origin's entity state."""

    id: str  # Deterministic hash of the divergence
    operation_id: str
    entity_type: str
    entity_id: str
    kind: OperationKind
    local_data: Optional[Dict[str, Any]]
    remote_data: Optional[Dict[str, Any]]
    local_version: Optional[Any]
    remote_version: Optional[Any]
    local_timestamp: datetime
    remote_timestamp: Optional[datetime]
    fields: List[str] = field(default_factory=list)  # Conflicting field names
    severity: str = "low"  # low, medium, high, critical
    description: str = ""
    base_state: Optional[Dict[str, Any]] = None  # Snapshot for 3-way merges
    detected_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["local_timestamp"] = format_datetime(self.local_timestamp)
        data["remote_timestamp"] = format_datetime(self.remote_timestamp)
        data["detected_at"] = format_datetime(self.detected_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conflict":
        return cls(
            id=data["id"],
            operation_id=data["operation_id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            kind=OperationKind(data["kind"]),
            local_data=data.get("local_data"),
            remote_data=data.get("remote_data"),
            local_version=data.get("local_version"),
            remote_version=data.get("remote_version"),
            local_timestamp=parse_datetime(data.get("local_timestamp")) or utc_now(),
            remote_timestamp=parse_datetime(data.get("remote_timestamp")),
            fields=list(data.get("fields") or []),
            severity=data.get("severity", "low"),
            description=data.get("description", ""),
            base_state=data.get("base_state"),
            detected_at=parse_datetime(data.get("detected_at")) or utc_now(),
        )


@dataclass
class ResolutionOutcome:
    """Decision returned by the conflict resolver."""

    conflict_id: str
    operation_id: str
    strategy: str
    action: ResolutionAction
    resolved_data: Optional[Dict[str, Any]] = None
    remote_version: Optional[Any] = None  # New base version when re-queued
    superseded_by: Optional[str] = None
    policy_decision: Optional[str] = None  # e.g. "local_wins_tie_hash"
    resolved_by: str = "auto"  # auto or user
    resolved_at: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        """Whether the operation is finished once this outcome is applied."""
        return self.action == ResolutionAction.DISCARD_LOCAL

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["resolved_at"] = format_datetime(self.resolved_at)
        return data


# === Sync results ===


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    operations_synced: int = 0
    operations_failed: int = 0
    operations_retried: int = 0
    operations_requeued: int = 0
    conflicts: List[Conflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    bytes_synced: int = 0
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)
    skipped: bool = False  # Another cycle held the lock, or nothing was eligible

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)

    def merge(self, other: "SyncResult") -> None:
        """Fold another batch's counts into this result."""
        self.operations_synced += other.operations_synced
        self.operations_failed += other.operations_failed
        self.operations_retried += other.operations_retried
        self.operations_requeued += other.operations_requeued
        self.conflicts.extend(other.conflicts)
        self.errors.extend(other.errors)
        self.bytes_synced += other.bytes_synced


@dataclass
class SyncHistoryEntry:
    """Summary of a completed sync cycle, kept for the last 100 cycles."""

    id: str
    timestamp: datetime
    duration_ms: float
    operations_synced: int
    operations_failed: int
    bytes_synced: int
    success: bool
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncHistoryEntry":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=result.timestamp,
            duration_ms=result.duration_ms,
            operations_synced=result.operations_synced,
            operations_failed=result.operations_failed,
            bytes_synced=result.bytes_synced,
            success=result.success,
            errors=list(result.errors),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = format_datetime(self.timestamp)
        return data


@dataclass
class HealthIssue:
    kind: str  # failed_operations, large_queue, stale_sync, repeated_failures, offline
    severity: str  # low, medium, high
    message: str


@dataclass
class HealthReport:
    """Sync health with the issues that produced it."""

    health: SyncHealth
    issues: List[HealthIssue] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    last_check_time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "health": self.health.value,
            "issues": [asdict(issue) for issue in self.issues],
            "recommendations": list(self.recommendations),
            "last_check_time": format_datetime(self.last_check_time),
        }


@dataclass
class StorageInfo:
    """Space used by the operation log and what remains available to it."""

    used: int
    available: int
    quota: Optional[int] = None  # Configured maximum, when one applies

    @property
    def total(self) -> int:
        return self.used + self.available

    @property
    def usage(self) -> float:
        """Fraction of the total in use (0.0-1.0)."""
        return self.used / self.total if self.total else 0.0


# === Manager state ===


@dataclass
class OfflineStatus:
    """Process-wide status, written only by the offline manager."""

    is_online: bool = False
    is_syncing: bool = False
    has_pending_changes: bool = False
    has_conflicts: bool = False
    last_sync_time: Optional[datetime] = None
    next_sync_time: Optional[datetime] = None
    connection_quality: ConnectionQuality = ConnectionQuality.EXCELLENT
    battery_status: BatteryStatus = BatteryStatus.DISCHARGING
    storage_status: StorageStatus = StorageStatus.NORMAL
    sync_health: SyncHealth = SyncHealth.HEALTHY
    offline_mode_enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("connection_quality", "battery_status", "storage_status", "sync_health"):
            data[key] = getattr(self, key).value
        data["last_sync_time"] = format_datetime(self.last_sync_time)
        data["next_sync_time"] = format_datetime(self.next_sync_time)
        return data


@dataclass
class OfflineStats:
    """Accumulating counters plus instantaneous gauges."""

    # Counters
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    conflicts_resolved: int = 0
    data_synced: int = 0  # bytes
    sync_cycles: int = 0
    # Gauges
    pending_operations: int = 0
    average_sync_time: float = 0.0  # ms
    last_sync_duration: float = 0.0  # ms
    storage_used: int = 0
    storage_available: int = 0
    network_latency: float = -1.0  # ms, -1 when unknown
    battery_level: float = 1.0  # 0.0-1.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
