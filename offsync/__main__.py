"""CLI entry point for offsync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .connectivity import ConnectivityProbe
from .engine import SyncEngine
from .errors import QueueFull, QueuePersistenceError
from .mutation_queue import Method, Priority, QueuedOperation


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
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _open_engine(args: argparse.Namespace, auto_sync: bool = False) -> SyncEngine:
    config = load_config(args.config)
    config.sync.auto_sync = auto_sync
    return SyncEngine.from_config(config)


def _format_op(op: QueuedOperation) -> str:
    line = (
        f"  {op.id}  [{op.priority.value:<6}] {op.method.value:<6} {op.target}"
        f"  attempt {op.attempt}/{op.max_retries}"
        f"  queued {op.created_at.strftime('%Y-%m-%d %H:%M:%S')}"
    )
    if op.last_error:
        line += f"\n      last error: {op.last_error}"
    return line


async def cmd_status(args: argparse.Namespace) -> int:
    """Show connectivity, queue and cache status."""
    config = load_config(args.config)
    engine = SyncEngine.from_config(config)

    try:
        reachable = None
        if config.probe_url:
            probe = ConnectivityProbe(
                engine.monitor,
                config.probe_url,
                timeout=config.connectivity.probe_timeout_seconds,
            )
            try:
                reachable = await probe.sample()
            finally:
                await probe.stop()

        status_data = {
            "timestamp": datetime.now().isoformat(),
            "db_path": config.store.db_path,
            "backend": {
                "base_url": config.transport.base_url,
                "probe_url": config.probe_url,
                "reachable": reachable,
            },
            "queue": engine.queue.stats(),
            "cache": engine.cache.stats(),
        }
    finally:
        await engine.aclose()

    if args.json:
        print(json.dumps(status_data, indent=2, default=str))
        return 0

    print("offsync Status")
    print("==============")
    print(f"Store: {status_data['db_path']}")
    print()

    backend = status_data["backend"]
    print(f"Backend ({backend['base_url'] or 'not configured'}):")
    if backend["reachable"] is None:
        print("  Status: Unknown (no probe URL)")
    elif backend["reachable"]:
        print("  Status: Reachable")
    else:
        print("  Status: Not reachable")
    print()

    queue = status_data["queue"]
    print("Queue:")
    print(f"  Pending: {queue['pending']}")
    for priority, count in queue["by_priority"].items():
        print(f"    - {priority}: {count}")
    print(f"  Dead letters: {queue['dead_letters']}")
    print()

    cache = status_data["cache"]
    print("Cache:")
    print(f"  Entries: {cache['total_entries']} ({cache['stale_entries']} stale)")
    if cache["oldest"]:
        print(f"  Oldest: {cache['oldest'].isoformat()}")

    return 0


async def cmd_queue_list(args: argparse.Namespace) -> int:
    """List pending operations in drain order."""
    engine = _open_engine(args)
    try:
        ops = engine.pending()
    finally:
        await engine.aclose()

    if not ops:
        print("Queue is empty")
        return 0

    print(f"{len(ops)} pending operations:")
    for op in ops:
        print(_format_op(op))
    return 0


async def cmd_queue_dead(args: argparse.Namespace) -> int:
    """List dead-lettered operations."""
    engine = _open_engine(args)
    try:
        ops = engine.dead_letters()
        if args.clear:
            engine.queue.clear_dead_letters()
    finally:
        await engine.aclose()

    if not ops:
        print("No failed operations")
        return 0

    print(f"{len(ops)} failed operations:")
    for op in ops:
        print(_format_op(op))
    if args.clear:
        print("Dead letters cleared")
    return 0


async def cmd_queue_clear(args: argparse.Namespace) -> int:
    """Drop all pending operations."""
    engine = _open_engine(args)
    try:
        removed = engine.queue.clear()
    finally:
        await engine.aclose()

    print(f"Removed {removed} pending operations")
    return 0


async def cmd_enqueue(args: argparse.Namespace) -> int:
    """Queue a write for the next sync."""
    body = None
    if args.body:
        try:
            body = json.loads(args.body)
        except json.JSONDecodeError as e:
            print(f"Error: --body is not valid JSON: {e}", file=sys.stderr)
            return 1

    engine = _open_engine(args)
    try:
        options = {
            "priority": Priority(args.priority),
            "invalidates": args.invalidates or [],
        }
        if args.max_retries is not None:
            options["max_retries"] = args.max_retries
        draft = engine.draft(args.method.upper(), args.target, body, **options)
        op_id = engine.queue.enqueue(draft)
    except (QueueFull, QueuePersistenceError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await engine.aclose()

    print(op_id)
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one drain pass against the configured backend."""
    engine = _open_engine(args)
    try:
        await engine.start()
        if not engine.monitor.is_online:
            print("Backend not reachable, nothing synced", file=sys.stderr)
            return 1
        result = await engine.sync_now()
    finally:
        await engine.aclose()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(f"Succeeded: {len(result.succeeded)}")
        print(f"Failed: {len(result.failed)}")
        for op_id, reason in result.errors.items():
            print(f"  - {op_id}: {reason}")
        print(f"Remaining: {result.remaining}")

    return 1 if result.failed else 0


async def cmd_cache_list(args: argparse.Namespace) -> int:
    """List cached keys with their age."""
    engine = _open_engine(args)
    try:
        entries = [engine.cache.get_entry(key) for key in engine.cache.keys()]
    finally:
        await engine.aclose()

    entries = [e for e in entries if e is not None]
    if not entries:
        print("Cache is empty")
        return 0

    now = datetime.now()
    for entry in entries:
        age = int((now - entry.stored_at).total_seconds())
        stale = " (stale)" if entry.stale else ""
        print(f"  {entry.key}  stored {age}s ago{stale}")
    return 0


async def cmd_cache_clear(args: argparse.Namespace) -> int:
    """Remove all cache entries."""
    engine = _open_engine(args)
    try:
        removed = engine.cache.clear()
    finally:
        await engine.aclose()

    print(f"Removed {removed} cache entries")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="offsync",
        description="Inspect and drive an offline-first sync store",
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
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Inspect the mutation queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_list = queue_subparsers.add_parser("list", help="List pending operations")
    queue_list.set_defaults(func=cmd_queue_list)

    queue_dead = queue_subparsers.add_parser("dead", help="List failed operations")
    queue_dead.add_argument("--clear", action="store_true", help="Clear after listing")
    queue_dead.set_defaults(func=cmd_queue_dead)

    queue_clear = queue_subparsers.add_parser("clear", help="Drop all pending operations")
    queue_clear.set_defaults(func=cmd_queue_clear)

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a write for the next sync")
    enqueue_parser.add_argument("method", choices=[m.value for m in Method], type=str.upper)
    enqueue_parser.add_argument("target", help="URL or resource path")
    enqueue_parser.add_argument("--body", default=None, help="JSON request body")
    enqueue_parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.MEDIUM.value,
    )
    enqueue_parser.add_argument("--max-retries", type=int, default=None)
    enqueue_parser.add_argument(
        "--invalidates",
        nargs="*",
        metavar="KEY",
        help="Cache keys to invalidate once the write succeeds",
    )
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Drain the queue now")
    sync_parser.add_argument("--json", action="store_true", help="Output result as JSON")
    sync_parser.set_defaults(func=cmd_sync)

    # Cache commands
    cache_parser = subparsers.add_parser("cache", help="Inspect the read cache")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", help="Cache commands")

    cache_list = cache_subparsers.add_parser("list", help="List cached keys")
    cache_list.set_defaults(func=cmd_cache_list)

    cache_clear = cache_subparsers.add_parser("clear", help="Remove all cache entries")
    cache_clear.set_defaults(func=cmd_cache_clear)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "queue" and not args.queue_command:
        queue_parser.print_help()
        return 1

    if args.command == "cache" and not args.cache_command:
        cache_parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
