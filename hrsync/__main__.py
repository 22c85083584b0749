"""CLI entry point for hrsync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path

from .config import Config, load_config
from .sync import (
    ConflictNotFoundError,
    ConflictPolicyError,
    ConflictStore,
    CycleStatus,
    HttpRemoteSystem,
    InMemoryRemoteSystem,
    OperationLog,
    RemoteError,
    RemoteSystem,
    Resolution,
    SyncOrchestrator,
    SyncStatusReporter,
)

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers.

    Timestamps are UTC like every other timestamp hrsync emits.
    """

    def __init__(self, service: str = "hrsync"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Payload values in messages may not be JSON-serializable
        return json.dumps(log_data, default=str)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    service: str = "hrsync",
) -> None:
    """Configure logging.

    httpx logs every remote request at INFO; it is kept at WARNING unless
    debug logging is on.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
        service: Service name stamped on JSON log lines.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter(service))
    else:
        handler.setFormatter(logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))

    logging.basicConfig(level=level, handlers=[handler])
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def build_remote(config: Config, allow_in_memory: bool = False) -> RemoteSystem | None:
    """Remote client for the configured system of record.

    Without a remote URL, an in-memory remote is returned when
    allow_in_memory is set (development server), otherwise None.
    """
    if config.remote.base_url:
        return HttpRemoteSystem(config.remote)

    if not allow_in_memory:
        print(
            "Error: no remote URL configured (set remote.base_url or HRSYNC_REMOTE_URL)",
            file=sys.stderr,
        )
        return None

    logger.warning("No remote URL configured, using in-memory remote (development mode)")
    return InMemoryRemoteSystem()


def build_orchestrator(
    config: Config, log: OperationLog, conflicts: ConflictStore, remote: RemoteSystem
) -> SyncOrchestrator:
    return SyncOrchestrator(
        log,
        conflicts,
        remote,
        batch_size=config.sync.batch_size,
        auto_sync=config.sync.auto_sync,
        interval_seconds=config.sync.auto_sync_interval_seconds,
        operation_timeout=config.sync.operation_timeout_seconds,
        natural_keys=config.remote.natural_keys,
        retention_days=config.sync.retention_days,
    )


def _open_stores(config: Config) -> tuple[OperationLog, ConflictStore]:
    log = OperationLog(config.sync.db_path, max_retries=config.sync.max_retries)
    log.connect()
    conflicts = ConflictStore(config.sync.db_path)
    conflicts.connect()
    return log, conflicts


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the dashboard API with the auto-sync timer."""
    config = load_config(args.config)

    import uvicorn

    from .dashboard import create_app

    host = args.host or config.dashboard.host
    port = args.port or config.dashboard.port

    remote = build_remote(config, allow_in_memory=args.dev)
    if remote is None:
        return 1

    log, conflicts = _open_stores(config)
    orchestrator = build_orchestrator(config, log, conflicts, remote)

    print(f"Starting hrsync dashboard: {config.service.name}")
    print(f"Remote: {config.remote.base_url or 'in-memory'}")
    print(f"Auto-sync: {'on' if orchestrator.auto_sync_enabled else 'off'} "
          f"(every {config.sync.auto_sync_interval_seconds}s)")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, log, conflicts, orchestrator)

    await orchestrator.start()
    try:
        uvicorn_config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
        server = uvicorn.Server(uvicorn_config)
        await server.serve()
    finally:
        await orchestrator.stop()
        await remote.close()
        conflicts.close()
        log.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single sync cycle."""
    config = load_config(args.config)

    remote = build_remote(config)
    if remote is None:
        return 1

    log, conflicts = _open_stores(config)
    orchestrator = build_orchestrator(config, log, conflicts, remote)
    if args.auto_resolve:
        orchestrator.enable_auto_sync()

    try:
        result = await orchestrator.run_cycle()
    finally:
        await remote.close()
        conflicts.close()
        log.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Sync {result.status.value}")
        print(f"  Processed: {result.processed}")
        print(f"  Completed: {result.completed}")
        print(f"  Failed: {result.failed}")
        print(f"  Conflicts: {result.conflicts} ({result.auto_resolved} auto-resolved)")
        if result.error:
            print(f"  Error: {result.error}")

    return 1 if result.status == CycleStatus.FAILED else 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show sync counters."""
    config = load_config(args.config)

    log, conflicts = _open_stores(config)
    try:
        orchestrator = build_orchestrator(config, log, conflicts, InMemoryRemoteSystem())
        stats = SyncStatusReporter(log, conflicts, orchestrator).get_stats()
        failed_ops = log.list_operations(status="failed") if stats.failed else []
    finally:
        conflicts.close()
        log.close()

    if args.json:
        print(json.dumps(stats.to_dict(), indent=2))
        return 0

    print("hrsync Status")
    print("=============")
    print(f"Database: {config.sync.db_path}")
    print(f"Remote: {config.remote.base_url or 'not configured'}")
    print()
    print(f"Pending operations: {stats.pending}")
    print(f"Completed operations: {stats.completed}")
    print(f"Failed operations: {stats.failed}")
    for op in failed_ops:
        print(f"  - {op.id} {op.operation.value} {op.entity_type}/{op.entity_id}: {op.error}")
    print(f"Open conflicts: {stats.conflicts}")

    return 0


def cmd_conflicts(args: argparse.Namespace) -> int:
    """List open conflicts."""
    config = load_config(args.config)

    conflicts = ConflictStore(config.sync.db_path)
    conflicts.connect()
    try:
        open_conflicts = conflicts.list_open(limit=args.limit)
    finally:
        conflicts.close()

    if args.json:
        print(json.dumps([c.to_dict() for c in open_conflicts], indent=2))
        return 0

    if not open_conflicts:
        print("No open conflicts")
        return 0

    for conflict in open_conflicts:
        fields = ", ".join(conflict.conflicting_fields) or "-"
        print(
            f"{conflict.id}  {conflict.conflict_type.value:<17} "
            f"{conflict.entity_type}/{conflict.entity_id}  fields: {fields}"
        )
    return 0


async def cmd_resolve(args: argparse.Namespace) -> int:
    """Resolve a conflict with the given strategy."""
    config = load_config(args.config)

    remote = build_remote(config)
    if remote is None:
        return 1

    log, conflicts = _open_stores(config)
    orchestrator = build_orchestrator(config, log, conflicts, remote)

    try:
        reconciled = await orchestrator.resolve_conflict(args.conflict_id, args.strategy)
    except ConflictNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (ConflictPolicyError, RemoteError) as e:
        print(f"Cannot resolve: {e}", file=sys.stderr)
        return 1
    finally:
        await remote.close()
        conflicts.close()
        log.close()

    outcome = "deleted" if reconciled.deleted else json.dumps(reconciled.data)
    print(f"Resolved with {reconciled.strategy.value}: {outcome}")
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    """Append an operation to the log."""
    config = load_config(args.config)

    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        print(f"Invalid payload JSON: {e}", file=sys.stderr)
        return 1

    log = OperationLog(config.sync.db_path, max_retries=config.sync.max_retries)
    log.connect()
    try:
        op = log.append(args.operation, args.entity_type, args.entity_id, payload)
    finally:
        log.close()

    print(f"Queued {op.operation.value} {op.entity_type}/{op.entity_id} as {op.id}")
    return 0


def cmd_clear_completed(args: argparse.Namespace) -> int:
    """Delete completed operations from the log."""
    config = load_config(args.config)

    log = OperationLog(config.sync.db_path, max_retries=config.sync.max_retries)
    log.connect()
    try:
        deleted = log.clear_completed()
    finally:
        log.close()

    print(f"Cleared {deleted} completed operations")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="hrsync",
        description="Data synchronization and conflict resolution for HR records",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the dashboard API")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    serve_parser.add_argument(
        "--dev",
        action="store_true",
        help="Use an in-memory remote when no remote URL is configured",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument(
        "--auto-resolve",
        action="store_true",
        help="Apply automatic resolution to detected conflicts",
    )
    sync_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync counters")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Conflicts command
    conflicts_parser = subparsers.add_parser("conflicts", help="List open conflicts")
    conflicts_parser.add_argument("--limit", type=int, default=100)
    conflicts_parser.add_argument("--json", action="store_true", help="Output as JSON")
    conflicts_parser.set_defaults(func=cmd_conflicts)

    # Resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a conflict")
    resolve_parser.add_argument("conflict_id")
    resolve_parser.add_argument("strategy", choices=[r.value for r in Resolution])
    resolve_parser.set_defaults(func=cmd_resolve)

    # Queue command
    queue_parser = subparsers.add_parser("queue", help="Queue a local mutation")
    queue_parser.add_argument("operation", choices=["create", "update", "delete"])
    queue_parser.add_argument("entity_type")
    queue_parser.add_argument("entity_id")
    queue_parser.add_argument("payload", nargs="?", default=None, help="Payload as JSON")
    queue_parser.set_defaults(func=cmd_queue)

    # Clear-completed command
    clear_parser = subparsers.add_parser(
        "clear-completed", help="Delete completed operations from the log"
    )
    clear_parser.set_defaults(func=cmd_clear_completed)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
