"""SQLite-backed operation log of local mutations awaiting sync.

Operations are appended in mutation order and drained oldest first. An
operation is held back while an earlier operation for the same entity is
still in flight, blocked by a conflict, or failed, so replays against the
remote always follow local mutation order.
"""

import json
import logging
import sqlite3
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from .errors import OperationNotFoundError
from .models import (
    OperationKind,
    OperationStatus,
    SyncOperation,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

OPERATION_LOG_SCHEMA = """
CREATE TABLE IF NOT EXISTS sync_operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    operation TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_ops_status ON sync_operations(status, seq);
CREATE INDEX IF NOT EXISTS idx_ops_entity ON sync_operations(entity_type, entity_id, seq);

CREATE TABLE IF NOT EXISTS sync_watermarks (
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    remote_updated_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, entity_id)
);
"""

# Statuses that hold back later operations for the same entity
_BLOCKING_STATUSES = (
    OperationStatus.SYNCING.value,
    OperationStatus.CONFLICT.value,
    OperationStatus.FAILED.value,
)


class OperationLog:
    """Durable, ordered record of local mutations not yet confirmed remotely."""

    def __init__(self, db_path: str | Path, max_retries: int = 3):
        """Initialize the operation log.

        Args:
            db_path: Path to SQLite database file (":memory:" for tests).
            max_retries: Retry budget given to newly appended operations.
        """
        self.db_path = Path(db_path).expanduser()
        self.max_retries = max_retries
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(OPERATION_LOG_SCHEMA)
        self._conn.commit()

        logger.info(f"OperationLog connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            sequence=row["seq"],
            operation=OperationKind(row["operation"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"]),
            status=OperationStatus(row["status"]),
            timestamp=parse_timestamp(row["timestamp"]),
            created_at=parse_timestamp(row["created_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            error=row["error"],
        )

    def append(
        self,
        operation: OperationKind | str,
        entity_type: str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | str | None = None,
    ) -> SyncOperation:
        """Append a new pending operation.

        The payload is copied at append time and never rewritten afterwards.

        Args:
            operation: Kind of mutation ("create", "update", "delete").
            entity_type: Type of the target entity (e.g. "employee").
            entity_id: Identifier of the target entity.
            payload: Entity fields as set by the mutation.
            timestamp: When the mutation happened. Defaults to the payload's
                updatedAt field, then to now.

        Returns:
            The created SyncOperation.
        """
        conn = self._ensure_connected()

        kind = OperationKind(operation)
        payload_json = json.dumps(payload or {}, sort_keys=True, default=str)
        now = utcnow()

        if timestamp is None and payload:
            timestamp = payload.get("updatedAt") or payload.get("updated_at")
        mutation_ts = parse_timestamp(timestamp) or now

        op_id = str(uuid.uuid4())
        cursor = conn.execute(
            """
            INSERT INTO sync_operations (
                id, operation, entity_type, entity_id, payload, status,
                timestamp, created_at, max_retries
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op_id,
                kind.value,
                entity_type,
                str(entity_id),
                payload_json,
                OperationStatus.PENDING.value,
                mutation_ts.isoformat(),
                now.isoformat(),
                self.max_retries,
            ),
        )
        conn.commit()

        logger.debug(
            f"Appended {kind.value} {entity_type}/{entity_id} as {op_id} "
            f"(seq={cursor.lastrowid})"
        )
        return SyncOperation(
            id=op_id,
            sequence=cursor.lastrowid,
            operation=kind,
            entity_type=entity_type,
            entity_id=str(entity_id),
            payload=json.loads(payload_json),
            status=OperationStatus.PENDING,
            timestamp=mutation_ts,
            created_at=now,
            max_retries=self.max_retries,
        )

    def get(self, operation_id: str) -> SyncOperation:
        """Get an operation by id.

        Raises:
            OperationNotFoundError: If no such operation exists.
        """
        conn = self._ensure_connected()
        row = conn.execute(
            "SELECT * FROM sync_operations WHERE id = ?", (operation_id,)
        ).fetchone()
        if row is None:
            raise OperationNotFoundError(f"Unknown operation: {operation_id}")
        return self._row_to_operation(row)

    def drain(self, batch_size: int) -> list[SyncOperation]:
        """Claim up to batch_size pending operations, oldest first.

        Claimed operations move to "syncing" and stay in the log until the
        caller marks them completed, failed, or releases them.

        Args:
            batch_size: Maximum operations to claim.

        Returns:
            Claimed operations in append order.
        """
        if batch_size <= 0:
            return []

        conn = self._ensure_connected()
        placeholders = ",".join("?" * len(_BLOCKING_STATUSES))

        rows = conn.execute(
            f"""
            SELECT * FROM sync_operations AS o
            WHERE o.status = ?
              AND NOT EXISTS (
                SELECT 1 FROM sync_operations AS p
                WHERE p.entity_type = o.entity_type
                  AND p.entity_id = o.entity_id
                  AND p.seq < o.seq
                  AND p.status IN ({placeholders})
              )
            ORDER BY o.seq ASC
            LIMIT ?
            """,
            (OperationStatus.PENDING.value, *_BLOCKING_STATUSES, batch_size),
        ).fetchall()

        if not rows:
            return []

        ids = [row["id"] for row in rows]
        id_placeholders = ",".join("?" * len(ids))
        conn.execute(
            f"UPDATE sync_operations SET status = ? WHERE id IN ({id_placeholders})",
            (OperationStatus.SYNCING.value, *ids),
        )
        conn.commit()

        operations = [
            replace(self._row_to_operation(row), status=OperationStatus.SYNCING)
            for row in rows
        ]
        logger.debug(f"Drained {len(operations)} operations")
        return operations

    def _update(self, operation_id: str, sql: str, params: tuple) -> None:
        conn = self._ensure_connected()
        cursor = conn.execute(sql, (*params, operation_id))
        conn.commit()
        if cursor.rowcount == 0:
            raise OperationNotFoundError(f"Unknown operation: {operation_id}")

    def mark_completed(self, operation_id: str) -> None:
        """Mark an operation as confirmed by the remote."""
        self._update(
            operation_id,
            "UPDATE sync_operations SET status = ?, completed_at = ?, error = NULL "
            "WHERE id = ?",
            (OperationStatus.COMPLETED.value, utcnow().isoformat()),
        )

    def mark_failed(self, operation_id: str, reason: str) -> None:
        """Mark an operation as failed, keeping it visible for inspection."""
        self._update(
            operation_id,
            "UPDATE sync_operations SET status = ?, error = ?, "
            "retry_count = retry_count + 1 WHERE id = ?",
            (OperationStatus.FAILED.value, reason),
        )
        logger.warning(f"Operation {operation_id} failed: {reason}")

    def mark_conflict(self, operation_id: str) -> None:
        """Block an operation until its conflict is resolved."""
        self._update(
            operation_id,
            "UPDATE sync_operations SET status = ? WHERE id = ?",
            (OperationStatus.CONFLICT.value,),
        )

    def release(self, operation_id: str) -> None:
        """Return a claimed but unprocessed operation to pending."""
        self._update(
            operation_id,
            "UPDATE sync_operations SET status = ? WHERE id = ?",
            (OperationStatus.PENDING.value,),
        )

    def retry(self, operation_id: str) -> SyncOperation:
        """Move a failed operation back to pending on explicit request."""
        op = self.get(operation_id)
        if op.status != OperationStatus.FAILED:
            return op
        self.release(operation_id)
        logger.info(f"Operation {operation_id} queued for retry")
        return self.get(operation_id)

    def release_stale(self) -> int:
        """Return every "syncing" operation to pending.

        Only valid when no cycle is running, e.g. after a crash mid-cycle.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            "UPDATE sync_operations SET status = ? WHERE status = ?",
            (OperationStatus.PENDING.value, OperationStatus.SYNCING.value),
        )
        conn.commit()

        if cursor.rowcount:
            logger.warning(f"Released {cursor.rowcount} stale syncing operations")
        return cursor.rowcount

    def requeue_failed(self) -> int:
        """Move failed operations with retry budget left back to pending.

        Returns:
            Number of operations requeued.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            """
            UPDATE sync_operations SET status = ?
            WHERE status = ? AND retry_count < max_retries
            """,
            (OperationStatus.PENDING.value, OperationStatus.FAILED.value),
        )
        conn.commit()

        if cursor.rowcount:
            logger.info(f"Requeued {cursor.rowcount} failed operations")
        return cursor.rowcount

    def get_watermark(self, entity_type: str, entity_id: str) -> datetime | None:
        """Remote modification time of the last version this side wrote or accepted."""
        conn = self._ensure_connected()
        row = conn.execute(
            """
            SELECT remote_updated_at FROM sync_watermarks
            WHERE entity_type = ? AND entity_id = ?
            """,
            (entity_type, str(entity_id)),
        ).fetchone()
        return parse_timestamp(row[0]) if row else None

    def set_watermark(
        self, entity_type: str, entity_id: str, remote_updated_at: datetime
    ) -> None:
        """Advance an entity's watermark; it never moves backwards."""
        current = self.get_watermark(entity_type, entity_id)
        remote_updated_at = parse_timestamp(remote_updated_at)
        if current is not None and current >= remote_updated_at:
            return

        conn = self._ensure_connected()
        conn.execute(
            """
            INSERT OR REPLACE INTO sync_watermarks (entity_type, entity_id, remote_updated_at)
            VALUES (?, ?, ?)
            """,
            (entity_type, str(entity_id), remote_updated_at.isoformat()),
        )
        conn.commit()

    def list_operations(
        self,
        limit: int = 100,
        status: OperationStatus | str | None = None,
        entity_type: str | None = None,
    ) -> list[SyncOperation]:
        """List operations in append order.

        Args:
            limit: Maximum operations to return.
            status: Optional status filter.
            entity_type: Optional entity type filter.
        """
        conn = self._ensure_connected()

        conditions = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(OperationStatus(status).value)
        if entity_type is not None:
            conditions.append("entity_type = ?")
            params.append(entity_type)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        cursor = conn.execute(
            f"SELECT * FROM sync_operations {where} ORDER BY seq ASC LIMIT ?",
            (*params, limit),
        )

        return [self._row_to_operation(row) for row in cursor]

    def count_by_status(self) -> dict[str, int]:
        """Count operations per status (every status present, zero if none)."""
        conn = self._ensure_connected()

        counts = {status.value: 0 for status in OperationStatus}
        cursor = conn.execute(
            "SELECT status, COUNT(*) FROM sync_operations GROUP BY status"
        )
        for row in cursor:
            counts[row[0]] = row[1]
        return counts

    def cleanup_completed(self, days: int = 30) -> int:
        """Delete completed operations older than the retention window.

        Args:
            days: Delete completed operations finished more than this many days ago.

        Returns:
            Number of operations deleted.
        """
        conn = self._ensure_connected()

        cutoff = (utcnow() - timedelta(days=days)).isoformat()
        cursor = conn.execute(
            """
            DELETE FROM sync_operations
            WHERE status = ? AND completed_at < ?
            """,
            (OperationStatus.COMPLETED.value, cutoff),
        )
        conn.commit()

        if cursor.rowcount:
            logger.info(f"Cleaned up {cursor.rowcount} completed operations")
        return cursor.rowcount

    def clear_completed(self) -> int:
        """Delete every completed operation regardless of age.

        Returns:
            Number of operations deleted.
        """
        conn = self._ensure_connected()
        cursor = conn.execute(
            "DELETE FROM sync_operations WHERE status = ?",
            (OperationStatus.COMPLETED.value,),
        )
        conn.commit()

        logger.info(f"Cleared {cursor.rowcount} completed operations")
        return cursor.rowcount

    def __repr__(self) -> str:
        return f"OperationLog({self.db_path})"
