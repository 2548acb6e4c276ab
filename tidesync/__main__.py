"""CLI entry point for tidesync."""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .idempotency import generate_id
from .remote import HttpSyncClient
from .store import LogLevel, QueueStatus, SyncStore
from .sync import (
    AsyncioScheduler,
    SyncWorker,
    enqueue_mutation,
    quarantine_item,
    register_background_sync,
    requeue_item,
    resolve_conflict,
    unregister_background_sync,
)


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

# Loggers that narrate every HTTP request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def _audit_meta(record: logging.LogRecord) -> dict | None:
    return getattr(record, "audit_meta", None) or None


class JSONFormatter(logging.Formatter):
    """One JSON object per line; audit entries carry their ``meta``."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        meta = _audit_meta(record)
        if meta is not None:
            entry["meta"] = meta
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class AuditTextFormatter(logging.Formatter):
    """Human-readable lines with audit ``meta`` appended as compact JSON."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        meta = _audit_meta(record)
        if meta is not None:
            line = f"{line} {json.dumps(meta, default=str, separators=(',', ':'))}"
        return line


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure process logging for the CLI.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level = LOG_LEVELS.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            AuditTextFormatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])

    # Request-level chatter only when debugging
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)


def _open_store(config: Config) -> SyncStore:
    store = SyncStore(config.store.db_path)
    store.connect()
    return store


def _build_worker(config: Config, store: SyncStore) -> SyncWorker:
    remote = HttpSyncClient(
        base_url=config.remote.base_url,
        auth_token=config.remote.auth_token,
        timeout=config.remote.request_timeout_seconds,
    )
    return SyncWorker(
        store,
        remote,
        config=config.sync,
        request_timeout=config.remote.request_timeout_seconds,
        # One lease holder per process, even when nodes share a name
        holder_id=f"{config.node.name}-{generate_id()}",
    )


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_run(args: argparse.Namespace) -> int:
    """Run periodic background sync until interrupted."""
    config = load_config(args.config)

    if not config.scheduler.enabled:
        print("Scheduler is disabled in config", file=sys.stderr)
        return 1

    interval = config.scheduler.minimum_interval_minutes * 60
    print(f"Starting tidesync node: {config.node.name}")
    print(f"Remote: {config.remote.base_url}")
    print(f"Store: {config.store.db_path}")
    print(f"Interval: {config.scheduler.minimum_interval_minutes} min")

    store = _open_store(config)
    worker = _build_worker(config, store)
    scheduler = AsyncioScheduler(initial_delay_seconds=config.scheduler.initial_delay_seconds)

    try:
        await register_background_sync(
            scheduler, worker, minimum_interval_seconds=interval, scope_id=config.sync.scope_id
        )
        store.clear_old_logs(config.store.log_retention_days)
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        await unregister_background_sync(scheduler)
        await worker.remote.aclose()
        store.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle."""
    config = load_config(args.config)
    store = _open_store(config)
    worker = _build_worker(config, store)

    try:
        result = await worker.run_sync(args.project)
    finally:
        await worker.remote.aclose()
        store.close()

    drain, pull = result.drain, result.pull
    print(f"Sync: {result.status.value}")
    if drain:
        print(
            f"  Queue: selected={drain.selected} done={drain.succeeded} "
            f"conflicts={drain.conflicted} retrying={drain.retried} "
            f"poisoned={drain.poisoned} deferred={drain.deferred}"
        )
    if pull:
        print(f"  Pull ({pull.cursor_key}): {pull.status.value}, changes={pull.changes_pulled}")
        if pull.error:
            print(f"  Pull error: {pull.error}")

    return 0 if result.status.value in ("success", "partial") else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Show queue and cursor status."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        stats = store.get_stats()
    finally:
        store.close()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": config.node.name,
        "remote": config.remote.base_url,
        **stats,
    }

    if args.json:
        _print_json(status_data)
        return 0

    print(f"Node: {config.node.name}")
    print(f"Remote: {config.remote.base_url}")
    print("Queue:")
    for status, count in stats["queue_by_status"].items():
        print(f"  {status:<10} {count}")
    print(f"Conflicts: {stats['conflicts']}")
    print("Cursors:")
    if stats["cursors"]:
        for key, value in stats["cursors"].items():
            print(f"  {key} = {value}")
    else:
        print("  (none)")
    return 0


def cmd_enqueue(args: argparse.Namespace) -> int:
    """Queue a local mutation."""
    config = load_config(args.config)

    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"Invalid payload JSON: {e}", file=sys.stderr)
        return 1

    store = _open_store(config)
    try:
        item = enqueue_mutation(
            store, args.op, args.target_type, args.target_id, payload, args.base_version
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(item.id)
    return 0


def cmd_queue_list(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        status = QueueStatus(args.status) if args.status else None
        items = store.list_items(status=status, limit=args.limit)
    finally:
        store.close()

    if args.json:
        _print_json([item.to_dict() for item in items])
        return 0

    for item in items:
        print(
            f"{item.id}  {item.status.value:<9} {item.op.value:<7} "
            f"{item.target_type}/{item.target_id}  retries={item.retries}"
        )
    return 0


def cmd_queue_requeue(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        fresh = requeue_item(store, args.id)
    except (KeyError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(fresh.id)
    return 0


def cmd_queue_quarantine(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        quarantine_item(store, args.id)
    except (KeyError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(f"Quarantined {args.id}")
    return 0


def cmd_queue_purge(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    days = args.days if args.days is not None else config.store.purge_done_after_days
    try:
        deleted = store.purge_terminal(days, include_poison=args.include_poison)
        logs_deleted = store.clear_old_logs(config.store.log_retention_days)
    finally:
        store.close()

    print(f"Purged {deleted} queue items and {logs_deleted} log entries")
    return 0


def cmd_conflicts_list(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        conflicts = store.list_conflicts(project_id=args.project)
    finally:
        store.close()

    if args.json:
        _print_json([c.to_dict() for c in conflicts])
        return 0

    for c in conflicts:
        print(f"{c.id}  item={c.queue_id}  node={c.node_id}  policy={c.policy}")
    return 0


def cmd_conflicts_resolve(args: argparse.Namespace) -> int:
    config = load_config(args.config)

    if args.payload is not None:
        try:
            resolution = json.loads(args.payload)
        except json.JSONDecodeError as e:
            print(f"Invalid payload JSON: {e}", file=sys.stderr)
            return 1
    else:
        resolution = args.take

    store = _open_store(config)
    try:
        item = resolve_conflict(store, args.id, resolution, args.base_version)
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    print(item.id)
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        level = LogLevel(args.level) if args.level else None
        entries = store.get_logs(limit=args.limit, level=level)
    finally:
        store.close()

    for entry in reversed(entries):
        ts = datetime.fromtimestamp(entry.created_at / 1000).isoformat(timespec="seconds")
        print(f"{ts}  {entry.level.value:<5} {entry.message}  {json.dumps(entry.meta)}")
    return 0


def _show_help(sub_parser: argparse.ArgumentParser):
    """Handler for a command group invoked without a sub-command."""

    def show(args: argparse.Namespace) -> int:
        sub_parser.print_help()
        return 1

    return show


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tidesync",
        description="Offline mutation queue and delta sync engine",
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
        "--json-logs",
        dest="json_logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run background sync until interrupted")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync", help="Run one sync cycle")
    sync_parser.add_argument("--project", default=None, help="Project scope to pull")
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show queue and cursor status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a local mutation")
    enqueue_parser.add_argument("op", choices=["create", "update", "delete"])
    enqueue_parser.add_argument("target_type")
    enqueue_parser.add_argument("target_id")
    enqueue_parser.add_argument("--payload", default="{}", help="Payload as JSON")
    enqueue_parser.add_argument("--base-version", type=int, default=0)
    enqueue_parser.set_defaults(func=cmd_enqueue)

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage the queue")
    queue_parser.set_defaults(func=_show_help(queue_parser))
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_list = queue_subparsers.add_parser("list", help="List queue items")
    queue_list.add_argument("--status", choices=[s.value for s in QueueStatus], default=None)
    queue_list.add_argument("--limit", type=int, default=100)
    queue_list.add_argument("--json", action="store_true")
    queue_list.set_defaults(func=cmd_queue_list)

    queue_requeue = queue_subparsers.add_parser("requeue", help="Requeue a poisoned item")
    queue_requeue.add_argument("id")
    queue_requeue.set_defaults(func=cmd_queue_requeue)

    queue_quarantine = queue_subparsers.add_parser("quarantine", help="Poison a pending item")
    queue_quarantine.add_argument("id")
    queue_quarantine.set_defaults(func=cmd_queue_quarantine)

    queue_purge = queue_subparsers.add_parser("purge", help="Delete old terminal items")
    queue_purge.add_argument("--days", type=int, default=None)
    queue_purge.add_argument("--include-poison", action="store_true")
    queue_purge.set_defaults(func=cmd_queue_purge)

    # Conflict commands
    conflicts_parser = subparsers.add_parser("conflicts", help="Inspect and resolve conflicts")
    conflicts_parser.set_defaults(func=_show_help(conflicts_parser))
    conflicts_subparsers = conflicts_parser.add_subparsers(
        dest="conflicts_command", help="Conflict commands"
    )

    conflicts_list = conflicts_subparsers.add_parser("list", help="List conflicts")
    conflicts_list.add_argument("--project", default=None)
    conflicts_list.add_argument("--json", action="store_true")
    conflicts_list.set_defaults(func=cmd_conflicts_list)

    conflicts_resolve = conflicts_subparsers.add_parser("resolve", help="Resolve a conflict")
    conflicts_resolve.add_argument("id")
    conflicts_resolve.add_argument("--take", choices=["local", "remote"], default="local")
    conflicts_resolve.add_argument("--payload", default=None, help="Replacement payload JSON")
    conflicts_resolve.add_argument("--base-version", type=int, required=True)
    conflicts_resolve.set_defaults(func=cmd_conflicts_resolve)

    logs_parser = subparsers.add_parser("logs", help="Show the audit log")
    logs_parser.add_argument("--limit", type=int, default=50)
    logs_parser.add_argument("--level", choices=[level.value for level in LogLevel], default=None)
    logs_parser.set_defaults(func=cmd_logs)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            return 0
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
