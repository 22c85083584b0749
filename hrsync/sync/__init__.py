"""Sync engine for HR records.

Provides an append-only operation log of local mutations, conflict
detection and resolution against a remote system of record, and an
orchestrator that runs sync cycles manually or on a timer.
"""

from .conflict_store import ConflictStore
from .detector import detect
from .errors import (
    ConflictNotFoundError,
    ConflictPolicyError,
    OperationNotFoundError,
    RemoteError,
    SyncAlreadyRunningError,
    SyncError,
    SyncOperationFailure,
)
from .models import (
    ConflictType,
    OperationKind,
    OperationStatus,
    ReconciledEntity,
    RemoteEntity,
    Resolution,
    SyncConflict,
    SyncOperation,
    SyncStats,
)
from .operation_log import OperationLog
from .orchestrator import CycleStatus, SyncCycleResult, SyncOrchestrator, SyncState
from .remote import HttpRemoteSystem, InMemoryRemoteSystem, RemoteSystem
from .resolver import ConflictResolver
from .status import SyncStatusReporter

__all__ = [
    "ConflictNotFoundError",
    "ConflictPolicyError",
    "ConflictResolver",
    "ConflictStore",
    "ConflictType",
    "CycleStatus",
    "HttpRemoteSystem",
    "InMemoryRemoteSystem",
    "OperationKind",
    "OperationLog",
    "OperationNotFoundError",
    "OperationStatus",
    "ReconciledEntity",
    "RemoteEntity",
    "RemoteError",
    "RemoteSystem",
    "Resolution",
    "SyncAlreadyRunningError",
    "SyncConflict",
    "SyncCycleResult",
    "SyncError",
    "SyncOperation",
    "SyncOperationFailure",
    "SyncOrchestrator",
    "SyncState",
    "SyncStats",
    "SyncStatusReporter",
    "detect",
]
