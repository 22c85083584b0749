"""Read-only aggregation of sync state for the dashboard."""

from .conflict_store import ConflictStore
from .models import OperationStatus, SyncStats
from .operation_log import OperationLog
from .orchestrator import SyncOrchestrator


class SyncStatusReporter:
    """Computes SyncStats from the live log, conflict set and orchestrator.

    Nothing is cached; every call reads current state.
    """

    def __init__(
        self,
        log: OperationLog,
        conflicts: ConflictStore,
        orchestrator: SyncOrchestrator,
    ):
        self.log = log
        self.conflicts = conflicts
        self.orchestrator = orchestrator

    def get_stats(self) -> SyncStats:
        counts = self.log.count_by_status()
        completed = counts[OperationStatus.COMPLETED.value]
        failed = counts[OperationStatus.FAILED.value]
        total = sum(counts.values())

        return SyncStats(
            in_progress=self.orchestrator.in_progress,
            pending=total - completed - failed,
            conflicts=self.conflicts.count_open(),
            last_sync=self.orchestrator.last_sync,
            completed=completed,
            failed=failed,
            total_operations=total,
            auto_sync=self.orchestrator.auto_sync_enabled,
            success_rate=completed / total if total else 1.0,
            average_sync_time=self.orchestrator.average_sync_time,
            next_sync_time=self.orchestrator.next_sync_time,
        )
