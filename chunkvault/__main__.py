"""CLI entry point for chunkvault."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from .collection_index import list_collections
from .config import Config, load_config
from .errors import ChunkVaultError
from .store import ChunkStore, format_timestamp

LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line, timestamped in the wire format."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": format_timestamp(
                datetime.fromtimestamp(record.created, timezone.utc)
            ),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # Context values in messages may not be JSON types
        return json.dumps(entry, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging for the CLI.

    Args:
        verbose: Log at DEBUG instead of INFO.
        log_level: One of ``LOG_LEVELS``; wins over ``verbose``.
        json_output: Emit JSON lines instead of plain text.
    """
    if log_level:
        level = LOG_LEVELS[log_level]
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        JSONFormatter()
        if json_output
        else logging.Formatter(
            fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logging.basicConfig(level=level, handlers=[handler])


def _open_store(config: Config) -> ChunkStore:
    store = ChunkStore(
        config.storage.db_path,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    store.connect()
    return store


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP API."""
    config = load_config(args.config)

    import uvicorn

    from .api import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    try:
        app = create_app(config)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Starting chunkvault on http://{host}:{port}")
    print(f"Environment: {config.server.environment}")
    print(f"Database: {config.storage.db_path}")

    verbose = getattr(args, "verbose", False)
    config_uvicorn = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show configuration and storage statistics."""
    config = load_config(args.config)

    status_data = {
        "timestamp": format_timestamp(datetime.now(timezone.utc)),
        "server": {
            "host": config.server.host,
            "port": config.server.port,
            "environment": config.server.environment,
        },
        "auth": {"api_key_configured": bool(config.auth.api_key)},
        "storage": {"db_path": config.storage.db_path, "reachable": False},
    }

    try:
        store = _open_store(config)
    except ChunkVaultError as e:
        status_data["storage"]["error"] = str(e)
    else:
        try:
            status_data["storage"]["reachable"] = store.ping()
            status_data["storage"].update(store.get_stats())
        finally:
            store.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("chunkvault Status")
    print("=================")
    print(f"Server: {config.server.host}:{config.server.port} ({config.server.environment})")
    print(f"API key: {'configured' if config.auth.api_key else 'MISSING'}")
    print()

    storage = status_data["storage"]
    print(f"Storage ({storage['db_path']}):")
    if storage["reachable"]:
        print("  Status: Reachable")
        print(f"  Chunks: {storage['chunk_count']}")
        print(f"  Users: {storage['user_count']}")
        print(f"  Collections: {storage['collection_count']}")
        if storage.get("latest_updated"):
            print(f"  Latest write: {storage['latest_updated']}")
        if "db_size_mb" in storage:
            print(f"  Size: {storage['db_size_mb']} MB")
    else:
        print("  Status: Not reachable")
        if "error" in storage:
            print(f"  Error: {storage['error']}")

    return 0


def cmd_collections(args: argparse.Namespace) -> int:
    """Print the collection index for a user."""
    config = load_config(args.config)

    try:
        store = _open_store(config)
    except ChunkVaultError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        collections = list_collections(store, args.user)
    finally:
        store.close()

    if args.json:
        print(json.dumps({"collections": [c.to_dict() for c in collections]}, indent=2))
        return 0

    if not collections:
        print(f"No collections for user '{args.user}'")
        return 0

    for stats in sorted(collections, key=lambda c: c.name):
        data = stats.to_dict()
        print(f"  {data['name']}: {data['chunk_count']} chunks, latest {data['latest_updated']}")

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="chunkvault",
        description="Storage and incremental sync for client-encrypted chunks",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
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
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config, 3000)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config, 0.0.0.0)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show storage status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Collections command
    collections_parser = subparsers.add_parser(
        "collections", help="List a user's collections"
    )
    collections_parser.add_argument("user", help="User id")
    collections_parser.add_argument(
        "--json",
        action="store_true",
        help="Output collections as JSON",
    )
    collections_parser.set_defaults(func=cmd_collections)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    # Check if function is async
    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
