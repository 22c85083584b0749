"""SQLite-backed set of detected sync conflicts."""

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from .errors import ConflictNotFoundError
from .models import (
    ConflictStatus,
    ConflictType,
    Resolution,
    SyncConflict,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

CONFLICT_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    operation_id TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    remote_id TEXT,
    conflict_type TEXT NOT NULL,
    local_version TEXT,
    remote_version TEXT,
    local_timestamp TEXT,
    remote_timestamp TEXT,
    conflicting_fields TEXT NOT NULL,
    detected_at TEXT NOT NULL,
    status TEXT NOT NULL,
    resolution TEXT,
    resolved_version TEXT,
    resolved_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_conflicts_status ON sync_conflicts(status, detected_at);
CREATE INDEX IF NOT EXISTS idx_conflicts_entity ON sync_conflicts(entity_type, entity_id);
"""


def _dump(value: Any) -> str | None:
    return None if value is None else json.dumps(value, sort_keys=True, default=str)


def _load(value: str | None) -> Any:
    return None if value is None else json.loads(value)


class ConflictStore:
    """Open and resolved conflicts, keyed by conflict id."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(CONFLICT_SCHEMA)
        self._conn.commit()

        logger.info(f"ConflictStore connected to {self.db_path}")

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> SyncConflict:
        return SyncConflict(
            id=row["id"],
            operation_id=row["operation_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            remote_id=row["remote_id"],
            conflict_type=ConflictType(row["conflict_type"]),
            local_version=_load(row["local_version"]),
            remote_version=_load(row["remote_version"]),
            local_timestamp=parse_timestamp(row["local_timestamp"]),
            remote_timestamp=parse_timestamp(row["remote_timestamp"]),
            conflicting_fields=json.loads(row["conflicting_fields"]),
            detected_at=parse_timestamp(row["detected_at"]),
            status=ConflictStatus(row["status"]),
            resolution=Resolution(row["resolution"]) if row["resolution"] else None,
            resolved_version=_load(row["resolved_version"]),
            resolved_at=parse_timestamp(row["resolved_at"]),
        )

    def add(self, conflict: SyncConflict) -> SyncConflict:
        """Record a newly detected conflict."""
        conn = self._ensure_connected()

        conn.execute(
            """
            INSERT INTO sync_conflicts (
                id, operation_id, entity_type, entity_id, remote_id,
                conflict_type, local_version, remote_version,
                local_timestamp, remote_timestamp, conflicting_fields,
                detected_at, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conflict.id,
                conflict.operation_id,
                conflict.entity_type,
                conflict.entity_id,
                conflict.remote_id,
                conflict.conflict_type.value,
                _dump(conflict.local_version),
                _dump(conflict.remote_version),
                format_timestamp(conflict.local_timestamp),
                format_timestamp(conflict.remote_timestamp),
                json.dumps(conflict.conflicting_fields),
                format_timestamp(conflict.detected_at),
                conflict.status.value,
            ),
        )
        conn.commit()

        logger.info(
            f"Conflict {conflict.id} ({conflict.conflict_type.value}) recorded "
            f"for {conflict.entity_type}/{conflict.entity_id}"
        )
        return conflict

    def get(self, conflict_id: str) -> SyncConflict:
        """Get a conflict by id.

        Raises:
            ConflictNotFoundError: If no such conflict exists.
        """
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)
        ).fetchone()
        if row is None:
            raise ConflictNotFoundError(f"Unknown conflict: {conflict_id}")
        return self._row_to_conflict(row)

    def list_open(self, limit: int = 100) -> list[SyncConflict]:
        """Open conflicts, oldest first."""
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            SELECT * FROM sync_conflicts WHERE status = ?
            ORDER BY detected_at ASC LIMIT ?
            """,
            (ConflictStatus.OPEN.value, limit),
        )
        return [self._row_to_conflict(row) for row in cursor]

    def count_open(self) -> int:
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT COUNT(*) FROM sync_conflicts WHERE status = ?",
            (ConflictStatus.OPEN.value,),
        ).fetchone()
        return row[0]

    def mark_resolved(
        self,
        conflict_id: str,
        resolution: Resolution,
        resolved_version: dict[str, Any] | None,
    ) -> bool:
        """Close an open conflict.

        The update only applies while the conflict is still open, so two
        concurrent resolutions cannot both succeed.

        Returns:
            True if this call resolved the conflict, False if it was
            already resolved.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE sync_conflicts
            SET status = ?, resolution = ?, resolved_version = ?, resolved_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                ConflictStatus.RESOLVED.value,
                resolution.value,
                _dump(resolved_version),
                utcnow().isoformat(),
                conflict_id,
                ConflictStatus.OPEN.value,
            ),
        )
        conn.commit()
        return cursor.rowcount == 1
