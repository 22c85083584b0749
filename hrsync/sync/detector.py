"""Conflict detection between a local operation and the remote entity state."""

import uuid
from datetime import datetime

from .models import (
    ConflictType,
    OperationKind,
    RemoteEntity,
    SyncConflict,
    SyncOperation,
    utcnow,
)


def _conflict(
    operation: SyncOperation,
    remote: RemoteEntity | None,
    conflict_type: ConflictType,
    fields: set[str] | frozenset[str],
    detected_at: datetime | None,
) -> SyncConflict:
    live_remote = remote is not None and remote.exists
    local_deleted = operation.operation == OperationKind.DELETE
    return SyncConflict(
        id=str(uuid.uuid4()),
        operation_id=operation.id,
        entity_type=operation.entity_type,
        entity_id=operation.entity_id,
        remote_id=remote.entity_id if remote is not None and remote.entity_id else operation.entity_id,
        conflict_type=conflict_type,
        local_version=None if local_deleted else dict(operation.payload),
        remote_version=dict(remote.data) if live_remote else None,
        local_timestamp=operation.timestamp,
        remote_timestamp=remote.updated_at if remote is not None else None,
        conflicting_fields=sorted(fields),
        detected_at=detected_at or utcnow(),
    )


def _remote_is_newer(
    operation: SyncOperation, remote: RemoteEntity, watermark: datetime | None
) -> bool:
    # A remote without a modification marker cannot prove it is newer
    if remote.updated_at is None:
        return False
    since = operation.timestamp if watermark is None else max(operation.timestamp, watermark)
    return remote.updated_at > since


def detect(
    operation: SyncOperation,
    remote: RemoteEntity | None,
    detected_at: datetime | None = None,
    watermark: datetime | None = None,
) -> SyncConflict | None:
    """Decide whether a local operation can be applied to the remote state.

    Args:
        operation: Local operation being synchronized.
        remote: Current remote state of the target entity, or None if the
            remote has no such record. For creates this is the record found
            by id or by natural key.
        detected_at: Detection time recorded on the conflict.
        watermark: Remote modification time of the version this side last
            wrote or accepted. Remote changes at or before it are not
            concurrent with the operation.

    Returns:
        A SyncConflict if the two sides diverge incompatibly, else None.
    """
    live_remote = remote is not None and remote.exists

    if operation.operation == OperationKind.CREATE:
        if not live_remote:
            return None
        differing = {
            name
            for name in (operation.changed_fields | remote.fields_changed())
            if operation.payload.get(name) != remote.data.get(name)
        }
        return _conflict(
            operation, remote, ConflictType.CREATE_CREATE, differing, detected_at
        )

    if operation.operation == OperationKind.UPDATE:
        if not live_remote:
            # Remote deleted the record the local side updated
            return _conflict(
                operation,
                remote,
                ConflictType.DELETE_UPDATE,
                operation.changed_fields,
                detected_at,
            )
        if not _remote_is_newer(operation, remote, watermark):
            return None
        overlap = operation.changed_fields & remote.fields_changed()
        if not overlap:
            return None
        return _conflict(
            operation, remote, ConflictType.CONCURRENT_UPDATE, overlap, detected_at
        )

    # Delete: already gone remotely is not a conflict
    if not live_remote or not _remote_is_newer(operation, remote, watermark):
        return None
    return _conflict(
        operation,
        remote,
        ConflictType.DELETE_UPDATE,
        remote.fields_changed(),
        detected_at,
    )
