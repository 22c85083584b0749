"""Data model for sync operations, conflicts, and resolutions."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Bookkeeping fields that never count as a user change
META_FIELDS = frozenset(
    {"id", "createdAt", "created_at", "updatedAt", "updated_at", "deletedAt", "deleted_at"}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO string or datetime into an aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def format_timestamp(ts: datetime | None) -> str | None:
    return ts.isoformat() if ts else None


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    CONFLICT = "conflict"  # Blocked by an open conflict


class ConflictType(str, Enum):
    CONCURRENT_UPDATE = "concurrent-update"
    DELETE_UPDATE = "delete-update"
    CREATE_CREATE = "create-create"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Resolution(str, Enum):
    """Strategy used to reconcile a conflict."""

    MERGE = "merge"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    AUTO = "auto"


# Strategies each conflict type accepts; "auto" is checked by the resolver policy
ALLOWED_RESOLUTIONS: dict[ConflictType, frozenset[Resolution]] = {
    ConflictType.CONCURRENT_UPDATE: frozenset(Resolution),
    ConflictType.CREATE_CREATE: frozenset(Resolution),
    ConflictType.DELETE_UPDATE: frozenset(
        {Resolution.LOCAL_WINS, Resolution.REMOTE_WINS}
    ),
}


@dataclass(frozen=True)
class SyncOperation:
    """A local mutation awaiting synchronization.

    Instances are snapshots read from the operation log; status changes
    go through the log and produce new instances.
    """

    id: str
    sequence: int
    operation: OperationKind
    entity_type: str
    entity_id: str
    payload: dict[str, Any]
    status: OperationStatus
    timestamp: datetime  # When the mutation happened locally
    created_at: datetime
    retry_count: int = 0
    max_retries: int = 3
    error: str | None = None
    completed_at: datetime | None = None

    @property
    def changed_fields(self) -> frozenset[str]:
        """Fields the mutation touched, excluding bookkeeping fields."""
        return frozenset(self.payload) - META_FIELDS

    def to_dict(self) -> dict[str, Any]:
        """Summary used by the dashboard API."""
        return {
            "id": self.id,
            "operation": self.operation.value,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "status": self.status.value,
            "payload": self.payload,
            "timestamp": format_timestamp(self.timestamp),
            "createdAt": format_timestamp(self.created_at),
            "completedAt": format_timestamp(self.completed_at),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "error": self.error,
        }


@dataclass
class RemoteEntity:
    """State of an entity in the remote system of record."""

    entity_type: str
    entity_id: str
    data: dict[str, Any]
    updated_at: datetime | None = None
    deleted: bool = False
    changed_fields: frozenset[str] | None = None

    @property
    def exists(self) -> bool:
        return not self.deleted

    def fields_changed(self) -> frozenset[str]:
        """Fields touched by the latest remote revision.

        Without a report from the remote, every data field counts as changed.
        """
        if self.changed_fields is not None:
            return self.changed_fields - META_FIELDS
        return frozenset(self.data) - META_FIELDS

    @classmethod
    def from_dict(cls, entity_type: str, data: dict[str, Any]) -> "RemoteEntity":
        """Build from a remote API record (camelCase or snake_case)."""
        deleted_at = data.get("deletedAt") or data.get("deleted_at")
        changed = data.get("changedFields", data.get("changed_fields"))
        updated_at = parse_timestamp(data.get("updatedAt") or data.get("updated_at"))
        return cls(
            entity_type=entity_type,
            entity_id=str(data.get("id", "")),
            data={k: v for k, v in data.items() if k not in ("changedFields", "changed_fields")},
            updated_at=updated_at,
            deleted=bool(data.get("deleted")) or deleted_at is not None,
            changed_fields=frozenset(changed) if changed is not None else None,
        )


@dataclass
class SyncConflict:
    """Detected incompatibility between local and remote versions of one entity."""

    id: str
    operation_id: str
    entity_type: str
    entity_id: str
    conflict_type: ConflictType
    local_version: dict[str, Any] | None  # None when deleted locally
    remote_version: dict[str, Any] | None  # None when deleted remotely
    local_timestamp: datetime | None
    remote_timestamp: datetime | None
    detected_at: datetime
    remote_id: str | None = None
    conflicting_fields: list[str] = field(default_factory=list)
    status: ConflictStatus = ConflictStatus.OPEN
    resolution: Resolution | None = None
    resolved_version: dict[str, Any] | None = None
    resolved_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status == ConflictStatus.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operationId": self.operation_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "remoteId": self.remote_id,
            "conflictType": self.conflict_type.value,
            "localData": self.local_version,
            "remoteData": self.remote_version,
            "localTimestamp": format_timestamp(self.local_timestamp),
            "remoteTimestamp": format_timestamp(self.remote_timestamp),
            "conflictingFields": self.conflicting_fields,
            "detectedAt": format_timestamp(self.detected_at),
            "status": self.status.value,
            "resolution": self.resolution.value if self.resolution else None,
            "resolvedData": self.resolved_version,
            "resolvedAt": format_timestamp(self.resolved_at),
        }


@dataclass(frozen=True)
class ReconciledEntity:
    """Outcome of resolving a conflict; data is None when the entity is deleted."""

    entity_type: str
    entity_id: str
    remote_id: str | None
    data: dict[str, Any] | None
    strategy: Resolution

    @property
    def deleted(self) -> bool:
        return self.data is None


@dataclass
class SyncStats:
    """Aggregate counters for the dashboard."""

    in_progress: bool
    pending: int
    conflicts: int
    last_sync: datetime | None
    completed: int = 0
    failed: int = 0
    total_operations: int = 0
    auto_sync: bool = False
    success_rate: float = 1.0  # completed / total, 1.0 for an empty log
    average_sync_time: float = 0.0  # milliseconds
    next_sync_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "inProgress": self.in_progress,
            "pending": self.pending,
            "conflicts": self.conflicts,
            "lastSync": format_timestamp(self.last_sync),
            "completed": self.completed,
            "failed": self.failed,
            "totalOperations": self.total_operations,
            "autoSync": self.auto_sync,
            "successRate": self.success_rate,
            "averageSyncTime": self.average_sync_time,
            "nextSyncTime": format_timestamp(self.next_sync_time),
        }
