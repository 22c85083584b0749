"""FastAPI application serving the sync dashboard API."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from ..config import Config
from ..sync import (
    ConflictNotFoundError,
    ConflictPolicyError,
    ConflictStore,
    OperationKind,
    OperationLog,
    OperationNotFoundError,
    OperationStatus,
    RemoteError,
    Resolution,
    SyncAlreadyRunningError,
    SyncError,
    SyncOrchestrator,
    SyncStatusReporter,
)
from ..sync.models import utcnow

logger = logging.getLogger(__name__)


class QueueOperationRequest(BaseModel):
    """Body for queueing a local mutation."""

    model_config = ConfigDict(populate_by_name=True)

    operation: OperationKind
    entity_type: str = Field(alias="entityType", min_length=1)
    entity_id: str = Field(alias="entityId", min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime | None = None


class ResolveConflictRequest(BaseModel):
    resolution: Resolution


class SyncConfigUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auto_sync: bool = Field(alias="autoSync")


def _http_error(status_code: int, error: SyncError) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": type(error).__name__, "message": str(error)},
    )


def create_app(
    config: Config,
    log: OperationLog,
    conflicts: ConflictStore,
    orchestrator: SyncOrchestrator,
) -> FastAPI:
    """Create the FastAPI dashboard application.

    Args:
        config: Application configuration.
        log: Operation log.
        conflicts: Conflict store.
        orchestrator: Sync orchestrator driving cycles.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="hrsync Dashboard",
        description="Data synchronization and conflict resolution for HR records",
        version="0.1.0",
    )

    reporter = SyncStatusReporter(log, conflicts, orchestrator)

    # Store references for route handlers
    app.state.config = config
    app.state.log = log
    app.state.conflicts = conflicts
    app.state.orchestrator = orchestrator
    app.state.reporter = reporter

    # ==================== Stats & triggers ====================

    @app.get("/sync/stats")
    async def sync_stats() -> dict[str, Any]:
        """Aggregate sync counters."""
        return reporter.get_stats().to_dict()

    @app.post("/sync/start")
    async def sync_start(wait: bool = False) -> dict[str, Any]:
        """Trigger a sync cycle; a no-op while one is running.

        With wait=true the response is sent after the cycle finishes.
        """
        cycle = None
        if wait:
            try:
                cycle = (await orchestrator.run_cycle()).to_dict()
                started = True
            except SyncAlreadyRunningError:
                started = False
        else:
            started = await orchestrator.start_sync()

        response = reporter.get_stats().to_dict()
        response["started"] = started
        if cycle is not None:
            response["result"] = cycle
        return response

    @app.get("/sync/config")
    async def sync_config() -> dict[str, Any]:
        return {
            "autoSync": orchestrator.auto_sync_enabled,
            "intervalSeconds": orchestrator.interval_seconds,
            "batchSize": orchestrator.batch_size,
        }

    @app.put("/sync/config")
    async def update_sync_config(update: SyncConfigUpdate) -> dict[str, Any]:
        """Toggle the process-wide auto-sync flag."""
        if update.auto_sync:
            orchestrator.enable_auto_sync()
        else:
            orchestrator.disable_auto_sync()
        return await sync_config()

    # ==================== Operations ====================

    @app.get("/sync/operations")
    async def list_operations(
        status: str | None = None,
        entity_type: str | None = Query(None, alias="entityType"),
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Operations in append order, optionally filtered by status and entity type."""
        if status is not None and status not in {s.value for s in OperationStatus}:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

        operations = log.list_operations(limit=limit, status=status, entity_type=entity_type)
        return [op.to_dict() for op in operations]

    @app.delete("/sync/operations/completed")
    async def clear_completed() -> dict[str, Any]:
        """Drop completed operations from the log."""
        return {"deleted": log.clear_completed()}

    @app.post("/sync/operations", status_code=201)
    async def queue_operation(request: QueueOperationRequest) -> dict[str, Any]:
        """Append a local mutation to the operation log."""
        op = log.append(
            request.operation,
            request.entity_type,
            request.entity_id,
            request.payload,
            timestamp=request.timestamp,
        )
        return op.to_dict()

    @app.post("/sync/operations/{operation_id}/retry")
    async def retry_operation(operation_id: str) -> dict[str, Any]:
        try:
            return log.retry(operation_id).to_dict()
        except OperationNotFoundError as e:
            raise _http_error(404, e)

    # ==================== Conflicts ====================

    @app.get("/sync/conflicts")
    async def list_conflicts(limit: int = 100) -> list[dict[str, Any]]:
        """Open conflicts, oldest first."""
        return [c.to_dict() for c in conflicts.list_open(limit=limit)]

    @app.post("/sync/conflicts/{conflict_id}/resolve")
    async def resolve_conflict(
        conflict_id: str, request: ResolveConflictRequest
    ) -> dict[str, Any]:
        try:
            reconciled = await orchestrator.resolve_conflict(
                conflict_id, request.resolution
            )
        except ConflictNotFoundError as e:
            raise _http_error(404, e)
        except ConflictPolicyError as e:
            raise _http_error(409, e)
        except RemoteError as e:
            logger.error(f"Committing resolution of {conflict_id} failed: {e}")
            raise _http_error(502, e)

        return {
            "conflictId": conflict_id,
            "resolution": request.resolution.value,
            "appliedStrategy": reconciled.strategy.value,
            "entityType": reconciled.entity_type,
            "entityId": reconciled.entity_id,
            "deleted": reconciled.deleted,
            "data": reconciled.data,
        }

    # ==================== Health ====================

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        health = {
            "status": "ok",
            "timestamp": utcnow().isoformat(),
            "service": config.service.name,
            "sync_state": orchestrator.state.value,
        }

        try:
            health["pending"] = reporter.get_stats().pending
        except Exception as e:
            health["status"] = "degraded"
            health["error"] = str(e)

        return health

    return app
