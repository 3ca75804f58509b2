"""CLI entry point for crdtrelay."""

import argparse
import asyncio
import inspect
import json
import logging
import sqlite3
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .exceptions import StorageError
from .sync import MessageLog, SyncClient, SyncStatus


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

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

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


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the relay server."""
    config = load_config(args.config)

    from .server import create_app

    import uvicorn

    host = args.host or config.server.host
    port = args.port or config.server.port

    print("Starting crdtrelay")
    print(f"Database: {config.storage.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config)

    uvicorn_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if args.verbose else "warning",
    )
    server = uvicorn.Server(uvicorn_config)
    await server.serve()

    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the database schema."""
    config = load_config(args.config)

    log = MessageLog(
        config.storage.db_path,
        busy_timeout=config.storage.busy_timeout_seconds,
    )
    try:
        log.connect()
    except (OSError, sqlite3.Error) as e:
        print(f"Error: could not initialize {config.storage.db_path}: {e}", file=sys.stderr)
        return 1
    finally:
        log.close()

    print(f"Initialized {config.storage.db_path}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show message counts."""
    config = load_config(args.config)

    log = MessageLog(
        config.storage.db_path,
        busy_timeout=config.storage.busy_timeout_seconds,
    )
    try:
        stats = log.get_stats()
        if args.group:
            stats = {
                "group_id": args.group,
                "messages": log.count_messages(args.group),
                "merkle_hash": log.get_index(args.group).get("hash", 0),
            }
    except (StorageError, sqlite3.Error) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        log.close()

    if args.json:
        print(json.dumps(stats, indent=2))
    elif args.group:
        print(f"Group: {stats['group_id']}")
        print(f"  Messages: {stats['messages']}")
        print(f"  Merkle hash: {stats['merkle_hash']}")
    else:
        print("crdtrelay Stats")
        print("===============")
        print(f"Database: {stats['db_path']}")
        if "db_size_mb" in stats:
            print(f"Size: {stats['db_size_mb']} MB")
        print(f"Total messages: {stats['total_messages']}")
        print(f"Groups: {stats['groups']}")
        for group_id, count in stats["messages_by_group"].items():
            print(f"  - {group_id}: {count}")

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync round against a relay and show what it returned."""
    config = load_config(args.config)
    if args.group:
        config.client.group_id = args.group
    if args.server:
        config.client.server_url = args.server

    try:
        client = SyncClient.from_config(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = await client.sync()
    messages = sorted(client.messages.values(), key=lambda m: m.timestamp)

    if args.json:
        output = {
            "status": result.status.value,
            "replica_id": client.replica_id,
            "received": result.messages_received,
            "error": result.error,
            "messages": [m.to_dict() for m in messages],
        }
        print(json.dumps(output, indent=2))
    else:
        print(f"Sync: {result.status.value}")
        if result.error:
            print(f"  Error: {result.error}")
        print(f"  Replica: {client.replica_id}")
        print(f"  Received: {result.messages_received}")
        for m in messages:
            print(f"  {m.timestamp} {m.dataset}/{m.row}/{m.column} = {m.value!r}")

    return 0 if result.status == SyncStatus.SUCCESS else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="crdtrelay",
        description="Sync relay for replicated append-only message logs",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none)",
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
    serve_parser = subparsers.add_parser("serve", help="Start the relay server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 8006)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Init-db command
    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show message counts")
    stats_parser.add_argument(
        "-g", "--group",
        type=str,
        default=None,
        help="Show a single group",
    )
    stats_parser.add_argument(
        "--json",
        action="store_true",
        help="Output stats as JSON",
    )
    stats_parser.set_defaults(func=cmd_stats)

    # Sync command
    sync_parser = subparsers.add_parser(
        "sync", help="Sync once as a replica and print the group's messages"
    )
    sync_parser.add_argument(
        "-g", "--group",
        type=str,
        default=None,
        help="Group to sync (default: from config)",
    )
    sync_parser.add_argument(
        "-s", "--server",
        type=str,
        default=None,
        help="Relay URL (default: from config)",
    )
    sync_parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON",
    )
    sync_parser.set_defaults(func=cmd_sync)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
