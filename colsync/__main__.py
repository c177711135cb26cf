"""CLI entry point for colsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .hlc import HybridLogicalClock
from .records import RecordStore
from .sync import ChangeLog


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            # Fallback for non-serializable objects
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
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

    # Configure handler with appropriate formatter
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def open_stores(config: Config) -> tuple[ChangeLog, RecordStore]:
    """Open the change log and record store sharing one clock."""
    clock = HybridLogicalClock(config.node.name, max_drift_ms=config.clock.max_drift_ms)
    change_log = ChangeLog(
        config.storage.change_log_path,
        node_id=config.node.name,
        clock=clock,
        max_page_size=config.server.max_page_size,
    )
    change_log.connect()
    records = RecordStore(
        config.storage.records_path,
        node_id=config.node.name,
        change_log=change_log,
        clock=clock,
    )
    records.connect()
    return change_log, records


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    change_log, records = open_stores(config)

    print("Starting colsync server")
    print(f"Node: {config.node.name}")
    print(f"URL: http://{host}:{port}/api/sync")

    app = create_app(config, change_log, records)

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        records.close()
        change_log.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Synchronize the local stores with the server."""
    config = load_config(args.config)

    from .sync.sync_client import SyncClient, SyncStatus

    if not config.sync.remote_url:
        print("Error: sync.remote_url is not configured", file=sys.stderr)
        return 1
    if not config.sync.user_id:
        print("Error: sync.user_id is not configured", file=sys.stderr)
        return 1

    change_log, records = open_stores(config)
    client = SyncClient(
        change_log,
        records,
        user_id=config.sync.user_id,
        remote_url=config.sync.remote_url,
        batch_size=config.sync.batch_size,
        max_retries=config.sync.retry_max_attempts,
        timeout=config.sync.timeout_seconds,
        compress=config.sync.compress,
    )

    try:
        if args.loop:
            try:
                await client.sync_loop(config.sync.sync_interval_minutes * 60)
            except KeyboardInterrupt:
                print("\nShutting down...")
            return 0

        result = await client.full_sync()
        print(
            f"Sync {result.status.value}: pushed={result.entries_pushed}, "
            f"pulled={result.entries_pulled}, rows={result.rows_replayed}"
        )
        if result.error:
            print(f"Error: {result.error}", file=sys.stderr)
        return 0 if result.status == SyncStatus.SUCCESS else 1
    finally:
        records.close()
        change_log.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Show local change log and record store status."""
    config = load_config(args.config)

    change_log, records = open_stores(config)
    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "node": {"name": config.node.name},
            "change_log": change_log.get_stats(),
            "records": records.get_stats()["records_by_table"],
            "sync": {
                "enabled": config.sync.enabled,
                "remote_url": config.sync.remote_url,
                "user_id": config.sync.user_id,
                "pull_cursor": change_log.get_cursor(),
            },
        }
    finally:
        records.close()
        change_log.close()

    if args.status_json:
        print(json.dumps(status_data, indent=2))
        return 0

    log_stats = status_data["change_log"]
    print(f"Node: {config.node.name}")
    print(
        f"Change log: {log_stats['total_entries']} entries, "
        f"{log_stats['unsynced_entries']} unsynced"
    )
    for table, count in log_stats["entries_by_table"].items():
        print(f"  {table}: {count}")
    print(f"Records: {sum(status_data['records'].values())}")
    sync_data = status_data["sync"]
    print(f"Remote: {sync_data['remote_url'] or '(not configured)'}")
    print(f"Pull cursor: {sync_data['pull_cursor'] or '(none)'}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="colsync",
        description="Offline-first column-level sync with last-write-wins merging",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: config.yaml)",
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
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port, 8080)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Push and pull changes")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing every sync.sync_interval_minutes",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show local sync status")
    status_parser.add_argument(
        "--json",
        dest="status_json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, getattr(args, 'json', False))

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    else:
        return func(args)


if __name__ == "__main__":
    sys.exit(main())
