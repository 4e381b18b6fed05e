"""CLI entry point for datapoll."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
import uuid
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .sync import ChangeEnvelope, PollClient, PollService


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


def _local_service(config: Config) -> PollService:
    """Build a service over the configured store, warning if it is private."""
    if config.store.backend == "memory":
        print(
            "Note: the memory backend lives inside the server process; "
            "use --url to reach a running server.",
            file=sys.stderr,
        )
    return PollService.from_config(config)


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the poll API server."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .server import create_app
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install datapoll[server]", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port

    print(f"Starting datapoll server ({config.server.environment})")
    print(f"Cache: {config.cache_prefix} via {config.store.backend} store")
    print(f"URL: http://{host}:{port}")

    app = create_app(config)

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


async def cmd_inspect(args: argparse.Namespace) -> int:
    """Print the reassembled change cache."""
    if args.url:
        client = PollClient(args.url, session_id="cli")
        try:
            data = await client.inspect()
        finally:
            await client.close()
    else:
        config = load_config(args.config)
        data = _local_service(config).inspect()

    print(json.dumps(data, indent=2))
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    """Drop every recorded change."""
    config = load_config(args.config)
    _local_service(config).clear()
    print("Change cache cleared")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show configuration and cache summary."""
    config = load_config(args.config)
    service = _local_service(config)
    stats = service.cache.get_stats()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "environment": config.server.environment,
        "store": {
            "backend": config.store.backend,
            "db_path": config.store.db_path if config.store.backend == "sqlite" else None,
            "max_value_size": config.store.max_value_size,
        },
        "cache": stats,
        "poll": {
            "long_poll_seconds": config.poll.long_poll_seconds,
            "sleep_seconds": config.poll.sleep_seconds,
            "stale_scope": config.poll.stale_scope,
        },
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("datapoll Status")
    print("===============")
    print(f"Environment: {status_data['environment']}")
    print()

    print(f"Store ({config.store.backend}):")
    if config.store.backend == "sqlite":
        print(f"  Database: {config.store.db_path}")
    print(f"  Max value size: {config.store.max_value_size}")
    print()

    print(f"Change cache ({stats['key']}):")
    print(f"  Shards: {stats['shards']}")
    print(f"  Size: {stats['size_chars']} chars")
    print(f"  Retention: {stats['retention_seconds']}s")
    if stats["envelopes_by_model"]:
        for model, count in stats["envelopes_by_model"].items():
            print(f"    - {model}: {count}")
    else:
        print("  No recorded changes")
    print()

    print("Polling:")
    print(f"  Long poll window: {config.poll.long_poll_seconds}s")
    print(f"  Check interval: {config.poll.sleep_seconds}s")
    print(f"  Stale scope: {config.poll.stale_scope}")

    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Poll a server and print changes as they arrive."""
    config = load_config(args.config)
    url = args.url or config.client.server_url
    session_id = args.session or uuid.uuid4().hex

    client = PollClient(url, session_id)

    def on_changes(envelopes: list[ChangeEnvelope]) -> None:
        for envelope in envelopes:
            print(json.dumps(envelope.to_dict()))

    def on_refresh() -> None:
        print(json.dumps({"refresh": True, "session": session_id}))

    request = client.scheduler(
        on_changes,
        on_refresh=on_refresh,
        long=config.client.long,
        interval=config.client.interval_seconds,
        max_errors=config.client.max_errors,
    )

    done = asyncio.Event()

    def on_message(status: dict) -> None:
        if status["state"] == "cancelled":
            done.set()

    request.on_message(on_message)

    print(f"Watching {url} as session {session_id}", file=sys.stderr)
    await client.mark_synced()
    request.scheduler.start(immediate=True)

    try:
        await done.wait()
        await request.wait_handlers()
    finally:
        await client.close()

    print("Polling stopped", file=sys.stderr)
    return 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="datapoll",
        description="Incremental change polling for multi-session web apps",
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
    serve_parser = subparsers.add_parser("serve", help="Start the poll API server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: from config)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Inspect command
    inspect_parser = subparsers.add_parser("inspect", help="Print the change cache")
    inspect_parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Read from a running server instead of the local store",
    )
    inspect_parser.set_defaults(func=cmd_inspect)

    # Clear command
    clear_parser = subparsers.add_parser("clear", help="Drop all recorded changes")
    clear_parser.set_defaults(func=cmd_clear)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show cache status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Print changes from a server")
    watch_parser.add_argument(
        "--url",
        type=str,
        default=None,
        help="Server URL (default: client.server_url from config)",
    )
    watch_parser.add_argument(
        "--session",
        type=str,
        default=None,
        help="Session id to poll as (default: random)",
    )
    watch_parser.set_defaults(func=cmd_watch)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.log_json)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    try:
        if asyncio.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
