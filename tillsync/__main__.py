"""CLI entry point for tillsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime, timedelta
from pathlib import Path

from .config import Config, load_config
from .sync.change_log import ChangeLog
from .sync.scheduler import SyncScheduler
from .sync.sync_client import SyncClient
from .terminal.local_store import LocalStore


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

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data, default=str)


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

    # httpx logs every request at info
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_terminal(config: Config) -> tuple[ChangeLog, LocalStore, SyncClient]:
    """Open the terminal's queue and local store and wire a sync client to them."""
    change_log = ChangeLog(config.sync.queue_db_path)
    change_log.connect()

    local_store = LocalStore(
        db_path=config.sync.local_db_path,
        store_id=config.terminal.store_id,
        change_log=change_log,
    )
    local_store.connect()

    client = SyncClient(
        change_log=change_log,
        local_store=local_store,
        server_url=config.sync.server_url,
        api_key=config.sync.api_key or None,
        store_id=config.terminal.store_id,
        batch_size=config.sync.batch_size,
        max_retries=config.sync.max_retries,
        timeout=config.sync.timeout_seconds,
        cycle_timeout=config.sync.cycle_timeout_seconds,
    )
    return change_log, local_store, client


def _require_store_id(config: Config) -> bool:
    if not config.terminal.store_id:
        print("Error: terminal.store_id is not configured (or set TILLSYNC_STORE_ID)", file=sys.stderr)
        return False
    return True


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the sync gateway and relay."""
    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    import uvicorn

    from .server.app import create_app

    app = create_app(config)

    print("Starting tillsync gateway")
    print(f"Database: {config.server.db_path}")
    print(f"URL: http://{config.server.host}:{config.server.port}")
    if not config.server.api_key:
        print("Warning: no server API key configured, sync endpoints are open")

    try:
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        app.state.store.close()

    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Run a terminal's background sync until interrupted."""
    config = load_config(args.config)
    if not _require_store_id(config):
        return 1
    if not config.sync.enabled:
        print("Sync is disabled in configuration")
        return 0

    change_log, local_store, client = _build_terminal(config)
    change_log.cleanup_processed(config.sync.processed_retention_days)

    scheduler = SyncScheduler(
        client,
        interval_seconds=config.sync.sync_interval_seconds,
        connectivity_check_seconds=config.sync.connectivity_check_seconds,
    )
    local_store.add_change_listener(scheduler.on_local_change)

    print(f"Starting terminal {config.terminal.terminal_id} (store {config.terminal.store_id})")
    print(f"Sync server: {config.sync.server_url or 'not configured'}")

    try:
        await scheduler.start()
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await scheduler.stop()
        local_store.close()
        change_log.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle now."""
    config = load_config(args.config)
    if not _require_store_id(config):
        return 1

    change_log, local_store, client = _build_terminal(config)
    try:
        result = await client.sync_now()
    finally:
        local_store.close()
        change_log.close()

    result_data = {
        "status": result.status.value,
        "pushed": result.changes_pushed,
        "failed": result.changes_failed,
        "pulled": result.changes_pulled,
        "error": result.error,
        "timestamp": result.timestamp.isoformat() if result.timestamp else None,
    }

    if args.json:
        print(json.dumps(result_data, indent=2))
    else:
        print(f"Sync: {result_data['status']}")
        print(f"  Pushed: {result_data['pushed']}")
        print(f"  Rejected: {result_data['failed']}")
        print(f"  Pulled: {result_data['pulled']}")
        if result.error:
            print(f"  Error: {result.error}")

    return 0 if result.status.value in ("success", "partial") else 1


async def cmd_status(args: argparse.Namespace) -> int:
    """Show queue state, watermark and server reachability."""
    config = load_config(args.config)
    if not _require_store_id(config):
        return 1

    change_log, local_store, client = _build_terminal(config)
    try:
        reachable = await client.check_connection()
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "terminal": {
                "terminal_id": config.terminal.terminal_id,
                "store_id": config.terminal.store_id,
            },
            "server": {
                "url": config.sync.server_url,
                "reachable": reachable,
            },
            "queue": change_log.get_stats(),
            "local_store": local_store.get_stats(),
        }
    finally:
        local_store.close()
        change_log.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
    else:
        queue = status_data["queue"]
        print("tillsync Status Check")
        print("=====================")
        print(f"Terminal: {config.terminal.terminal_id} (store {config.terminal.store_id})")
        print()

        print(f"Server ({config.sync.server_url or 'not configured'}):")
        print(f"  Status: {'Reachable' if reachable else 'Not reachable'}")
        print()

        print("Queue:")
        print(f"  Pending: {queue['pending_changes']}")
        print(f"  Failed: {queue['failed_changes']}")
        for entity_type, count in sorted(queue["pending_by_type"].items()):
            print(f"    - {entity_type}: {count}")
        print()

        print(f"Watermark: {status_data['local_store']['watermark'] or 'never synced'}")

    return 0


def cmd_queue_requeue(args: argparse.Namespace) -> int:
    """Move failed changes back to pending."""
    config = load_config(args.config)
    change_log = ChangeLog(config.sync.queue_db_path)
    change_log.connect()
    try:
        count = change_log.requeue_failed()
    finally:
        change_log.close()

    print(f"Requeued {count} failed changes")
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    """Mint a relay token for a terminal or display."""
    from .relay.auth import create_relay_token

    config = load_config(args.config)
    store_id = args.store_id or config.terminal.store_id
    if not store_id:
        print("Error: --store-id is required when terminal.store_id is not configured", file=sys.stderr)
        return 1

    token = create_relay_token(
        config.relay.jwt_secret,
        store_id=store_id,
        terminal_id=args.terminal_id,
        user_id=args.user_id,
        algorithm=config.relay.jwt_algorithm,
        expires_delta=timedelta(minutes=config.relay.token_ttl_minutes),
    )
    print(token)
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="tillsync",
        description="Offline-first sync and customer display relay for point-of-sale terminals",
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
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the sync gateway and relay")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Run command
    run_parser = subparsers.add_parser("run", help="Run terminal background sync")
    run_parser.set_defaults(func=cmd_run)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle now")
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show queue and connectivity status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Manage the local change queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_requeue = queue_subparsers.add_parser("requeue", help="Retry changes the server rejected")
    queue_requeue.set_defaults(func=cmd_queue_requeue)

    # Token command
    token_parser = subparsers.add_parser("token", help="Mint a relay token")
    token_parser.add_argument(
        "--terminal-id",
        required=True,
        help="Terminal the token is issued for",
    )
    token_parser.add_argument(
        "--store-id",
        default=None,
        help="Store the token is valid for (default: terminal.store_id)",
    )
    token_parser.add_argument(
        "--user-id",
        default=None,
        help="Optional user id stored in the token subject",
    )
    token_parser.set_defaults(func=cmd_token)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "queue" and not args.queue_command:
        queue_parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
