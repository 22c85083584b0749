"""Sync orchestrator: drives sync cycles against the remote system of record.

At most one cycle runs at a time per orchestrator. The running state is
claimed before the first suspension point, so concurrent triggers on the
same event loop are rejected rather than queued. Running several processes
against the same database needs an external lock; that is a deployment
concern.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .conflict_store import ConflictStore
from .detector import detect
from .errors import (
    ConflictPolicyError,
    OperationNotFoundError,
    RemoteError,
    SyncAlreadyRunningError,
    SyncOperationFailure,
)
from .models import (
    META_FIELDS,
    OperationKind,
    ReconciledEntity,
    RemoteEntity,
    Resolution,
    SyncConflict,
    SyncOperation,
    format_timestamp,
    utcnow,
)
from .operation_log import OperationLog
from .remote import RemoteSystem
from .resolver import ConflictResolver

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CycleStatus(str, Enum):
    """Outcome of one sync cycle."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some operations failed
    FAILED = "failed"  # Cycle aborted


@dataclass
class SyncCycleResult:
    """Result of a sync cycle."""

    status: CycleStatus = CycleStatus.SUCCESS
    processed: int = 0
    completed: int = 0
    failed: int = 0
    conflicts: int = 0
    auto_resolved: int = 0
    requeued: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "autoResolved": self.auto_resolved,
            "requeued": self.requeued,
            "startedAt": format_timestamp(self.started_at),
            "finishedAt": format_timestamp(self.finished_at),
            "error": self.error,
        }


class SyncOrchestrator:
    """Drains the operation log, detects conflicts, and commits results.

    Supports manual triggers (run_cycle, start_sync) and a timer-driven
    auto-sync loop (start/stop) gated by a process-wide auto-sync flag.
    """

    def __init__(
        self,
        log: OperationLog,
        conflicts: ConflictStore,
        remote: RemoteSystem,
        resolver: ConflictResolver | None = None,
        batch_size: int = 50,
        auto_sync: bool = False,
        interval_seconds: float = 60,
        operation_timeout: float = 30.0,
        natural_keys: dict[str, str] | None = None,
        retention_days: int = 30,
    ):
        """Initialize the orchestrator.

        Args:
            log: Operation log to drain.
            conflicts: Store for detected conflicts.
            remote: Remote system of record.
            resolver: Conflict resolver (default ConflictResolver()).
            batch_size: Operations drained per batch.
            auto_sync: Initial state of the auto-sync flag.
            interval_seconds: Seconds between auto-sync ticks.
            operation_timeout: Per-operation timeout in seconds.
            natural_keys: Entity type to natural key field, used to match
                independently created records.
            retention_days: Days to keep completed operations.
        """
        self.log = log
        self.conflicts = conflicts
        self.remote = remote
        self.resolver = resolver or ConflictResolver()
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self.operation_timeout = operation_timeout
        self.natural_keys = natural_keys or {}
        self.retention_days = retention_days

        self._auto_sync = auto_sync
        self._state = SyncState.IDLE
        self._last_sync: datetime | None = None
        self._last_result: SyncCycleResult | None = None
        self._cycle_count = 0
        self._cycle_time_total = 0.0  # milliseconds
        self._resolve_lock = asyncio.Lock()
        self._cycle_task: asyncio.Task | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._next_tick: datetime | None = None

    # ==================== State ====================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._state == SyncState.RUNNING

    @property
    def last_sync(self) -> datetime | None:
        """Finish time of the last cycle that was not aborted."""
        return self._last_sync

    @property
    def last_result(self) -> SyncCycleResult | None:
        return self._last_result

    @property
    def average_sync_time(self) -> float:
        """Mean duration in milliseconds of cycles that were not aborted."""
        if not self._cycle_count:
            return 0.0
        return self._cycle_time_total / self._cycle_count

    @property
    def next_sync_time(self) -> datetime | None:
        """When the timer fires next, or None if no unattended cycle is due."""
        if not (self._running and self._auto_sync):
            return None
        return self._next_tick

    @property
    def auto_sync_enabled(self) -> bool:
        return self._auto_sync

    def enable_auto_sync(self) -> None:
        self._auto_sync = True
        logger.info("Auto-sync enabled")

    def disable_auto_sync(self) -> None:
        """Stop future unattended cycles; a running cycle still completes."""
        self._auto_sync = False
        logger.info("Auto-sync disabled")

    # ==================== Sync cycle ====================

    async def run_cycle(self) -> SyncCycleResult:
        """Run one full sync cycle to completion.

        Raises:
            SyncAlreadyRunningError: If a cycle is already running.
        """
        if self._state == SyncState.RUNNING:
            raise SyncAlreadyRunningError("A sync cycle is already running")
        self._state = SyncState.RUNNING
        return await self._run_claimed_cycle()

    async def start_sync(self) -> bool:
        """Trigger a cycle in the background.

        A trigger while a cycle is running is a no-op.

        Returns:
            True if a new cycle was started.
        """
        if self.in_progress:
            logger.debug("Sync already running, trigger ignored")
            return False

        # Claimed before the task exists so a second trigger sees it
        self._state = SyncState.RUNNING
        self._cycle_task = asyncio.create_task(self._run_claimed_cycle())
        return True

    async def _run_claimed_cycle(self) -> SyncCycleResult:
        """Cycle body; the caller has already moved the state to RUNNING."""
        result = SyncCycleResult(started_at=utcnow())
        logger.info("Sync cycle started")

        try:
            # Operations left "syncing" by an interrupted cycle
            self.log.release_stale()
            result.requeued = self.log.requeue_failed()

            while batch := self.log.drain(self.batch_size):
                await self._process_batch(batch, result)

            self.log.cleanup_completed(self.retention_days)

            self._last_sync = utcnow()
            self._record_duration(self._last_sync - result.started_at)
            result.status = CycleStatus.PARTIAL if result.failed else CycleStatus.SUCCESS
            self._state = SyncState.COMPLETED
        except Exception as e:
            logger.error(f"Sync cycle aborted: {e}", exc_info=True)
            result.status = CycleStatus.FAILED
            result.error = str(e)
            self._state = SyncState.FAILED
        finally:
            result.finished_at = utcnow()
            self._last_result = result
            logger.info(
                f"Sync cycle {result.status.value}: processed={result.processed}, "
                f"completed={result.completed}, failed={result.failed}, "
                f"conflicts={result.conflicts}, auto_resolved={result.auto_resolved}"
            )
            self._state = SyncState.IDLE

        return result

    def _record_duration(self, duration: timedelta) -> None:
        self._cycle_count += 1
        self._cycle_time_total += duration.total_seconds() * 1000

    async def _process_batch(
        self, batch: list[SyncOperation], result: SyncCycleResult
    ) -> None:
        # Entities whose earlier operation did not complete in this batch
        blocked: set[tuple[str, str]] = set()

        for op in batch:
            key = (op.entity_type, op.entity_id)
            if key in blocked:
                self.log.release(op.id)
                continue

            result.processed += 1
            if not await self._sync_operation(op, result):
                blocked.add(key)

    async def _sync_operation(
        self, op: SyncOperation, result: SyncCycleResult
    ) -> bool:
        """Sync one operation; failures are recorded, not raised.

        Returns:
            True if the operation completed.
        """
        try:
            conflict = await asyncio.wait_for(
                self._apply_operation(op), timeout=self.operation_timeout
            )
        except asyncio.TimeoutError:
            failure = SyncOperationFailure(
                op.id, f"Timed out after {self.operation_timeout}s"
            )
        except RemoteError as e:
            failure = SyncOperationFailure(op.id, str(e))
        except SyncOperationFailure as e:
            failure = e
        except Exception as e:
            # Any other error fails this operation only
            logger.error(
                f"Unexpected error syncing {op.entity_type}/{op.entity_id}: {e}",
                exc_info=True,
            )
            failure = SyncOperationFailure(op.id, f"{type(e).__name__}: {e}")
        else:
            if conflict is None:
                result.completed += 1
                return True
            result.conflicts += 1
            return await self._auto_resolve(conflict, result)

        self.log.mark_failed(op.id, failure.reason)
        result.failed += 1
        return False

    async def _apply_operation(self, op: SyncOperation) -> SyncConflict | None:
        """Apply an operation, or record the conflict that prevents it."""
        remote = await self._fetch_remote(op)
        watermark = self.log.get_watermark(op.entity_type, op.entity_id)
        conflict = detect(op, remote, watermark=watermark)

        if conflict is None:
            written = await self._apply_to_remote(op, remote)
            if written is not None:
                self._advance_watermark(op.entity_type, op.entity_id, written)
            self.log.mark_completed(op.id)
            logger.debug(f"Synced {op.operation.value} {op.entity_type}/{op.entity_id}")
            return None

        self.conflicts.add(conflict)
        self.log.mark_conflict(op.id)
        return conflict

    async def _auto_resolve(
        self, conflict: SyncConflict, result: SyncCycleResult
    ) -> bool:
        if not self._auto_sync:
            return False

        try:
            await asyncio.wait_for(
                self._resolve(conflict.id, Resolution.AUTO),
                timeout=self.operation_timeout,
            )
        except (ConflictPolicyError, RemoteError, asyncio.TimeoutError) as e:
            logger.info(f"Conflict {conflict.id} left for manual resolution: {e}")
            return False

        result.auto_resolved += 1
        result.completed += 1
        return True

    async def _fetch_remote(self, op: SyncOperation) -> RemoteEntity | None:
        remote = await self.remote.fetch(op.entity_type, op.entity_id)
        if op.operation != OperationKind.CREATE or (remote is not None and remote.exists):
            return remote

        key = self.natural_keys.get(op.entity_type)
        if key and op.payload.get(key) is not None:
            match = await self.remote.find_by_key(op.entity_type, key, op.payload[key])
            if match is not None:
                return match
        return remote

    async def _apply_to_remote(
        self, op: SyncOperation, remote: RemoteEntity | None
    ) -> RemoteEntity | None:
        """Replay an operation on the remote; returns the written record."""
        if op.operation == OperationKind.CREATE:
            data = dict(op.payload)
            data.setdefault("id", op.entity_id)
            return await self.remote.create(op.entity_type, data)
        if op.operation == OperationKind.UPDATE:
            return await self.remote.update(
                op.entity_type, op.entity_id, _body(op.payload)
            )
        if remote is not None and remote.exists:
            await self.remote.delete(op.entity_type, op.entity_id)
        return None

    def _advance_watermark(
        self, entity_type: str, entity_id: str, written: RemoteEntity
    ) -> None:
        # Our own write must not look like a concurrent remote change later on
        self.log.set_watermark(entity_type, entity_id, written.updated_at or utcnow())

    # ==================== Conflict resolution ====================

    async def resolve_conflict(
        self, conflict_id: str, strategy: Resolution | str
    ) -> ReconciledEntity:
        """Resolve a conflict on user request and commit the result.

        Resolving an already-resolved conflict with the same strategy is a
        no-op returning the stored result.

        Raises:
            ConflictNotFoundError: If the conflict does not exist.
            ConflictPolicyError: If the strategy is not allowed.
            RemoteError: If committing the result to the remote fails; the
                conflict stays open.
        """
        return await self._resolve(conflict_id, strategy)

    async def _resolve(
        self, conflict_id: str, strategy: Resolution | str
    ) -> ReconciledEntity:
        async with self._resolve_lock:
            # Re-read inside the lock so a second resolver sees the first one's result
            conflict = self.conflicts.get(conflict_id)
            reconciled = self.resolver.resolve(conflict, strategy)
            if conflict.is_resolved:
                return reconciled

            await self._commit(conflict, reconciled)

            if not self.conflicts.mark_resolved(
                conflict.id, Resolution(strategy), reconciled.data
            ):
                return self.resolver.resolve(self.conflicts.get(conflict.id), strategy)

            try:
                self.log.mark_completed(conflict.operation_id)
            except OperationNotFoundError:
                logger.warning(
                    f"Operation {conflict.operation_id} for conflict {conflict.id} "
                    f"no longer in the log"
                )

        logger.info(
            f"Conflict {conflict.id} resolved with {Resolution(strategy).value} "
            f"({reconciled.strategy.value})"
        )
        return reconciled

    async def _commit(
        self, conflict: SyncConflict, reconciled: ReconciledEntity
    ) -> None:
        """Make the remote match the reconciled entity."""
        remote_id = reconciled.remote_id or reconciled.entity_id
        remote_live = conflict.remote_version is not None

        if reconciled.deleted:
            if remote_live:
                await self.remote.delete(reconciled.entity_type, remote_id)
            return

        if not remote_live:
            data = dict(reconciled.data)
            data.setdefault("id", reconciled.entity_id)
            written = await self.remote.create(reconciled.entity_type, data)
        elif reconciled.data != conflict.remote_version:
            written = await self.remote.update(
                reconciled.entity_type, remote_id, _body(reconciled.data)
            )
        else:
            # Remote already holds the outcome; accept its version as seen
            if conflict.remote_timestamp is not None:
                self.log.set_watermark(
                    reconciled.entity_type, reconciled.entity_id, conflict.remote_timestamp
                )
            return

        self._advance_watermark(reconciled.entity_type, reconciled.entity_id, written)

    # ==================== Auto-sync loop ====================

    async def start(self) -> None:
        """Start the auto-sync timer as a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Auto-sync timer started (interval={self.interval_seconds}s, "
            f"enabled={self._auto_sync})"
        )

    async def stop(self) -> None:
        """Stop the auto-sync timer; wait for a background cycle to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._next_tick = None

        if self._cycle_task and not self._cycle_task.done():
            await self._cycle_task
        self._cycle_task = None
        logger.info("Auto-sync timer stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self._next_tick = utcnow() + timedelta(seconds=self.interval_seconds)
            await asyncio.sleep(self.interval_seconds)
            await self.tick()

    async def tick(self) -> SyncCycleResult | None:
        """One timer tick: run a cycle if auto-sync is on and none is running."""
        if not self._auto_sync:
            return None
        if self.in_progress:
            logger.debug("Auto-sync tick skipped, cycle in progress")
            return None
        try:
            return await self.run_cycle()
        except SyncAlreadyRunningError:
            return None


def _body(data: dict[str, Any]) -> dict[str, Any]:
    """Request body for an update: entity fields without bookkeeping fields."""
    return {k: v for k, v in data.items() if k not in META_FIELDS}
