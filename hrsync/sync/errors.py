"""Exceptions raised by the sync subsystem."""


class SyncError(Exception):
    """Base class for sync errors."""


class ConflictPolicyError(SyncError):
    """Resolution strategy is not allowed for the conflict."""


class SyncOperationFailure(SyncError):
    """A single operation failed during a sync cycle."""

    def __init__(self, operation_id: str, reason: str):
        super().__init__(f"Operation {operation_id} failed: {reason}")
        self.operation_id = operation_id
        self.reason = reason


class RemoteError(SyncError):
    """The remote system of record was unreachable or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SyncAlreadyRunningError(SyncError):
    """A sync cycle is already in progress."""


class ConflictNotFoundError(SyncError):
    """No conflict with the given id."""


class OperationNotFoundError(SyncError):
    """No operation with the given id."""
