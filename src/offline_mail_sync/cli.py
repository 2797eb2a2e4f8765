"""Command-line interface for Offline Mail Sync.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import structlog

from offline_mail_sync import __version__
from offline_mail_sync.cache import CacheStore
from offline_mail_sync.config import Settings, get_settings
from offline_mail_sync.connectivity import ConnectivityMonitor
from offline_mail_sync.engine import SyncEngine
from offline_mail_sync.exceptions import MailSyncError
from offline_mail_sync.remote import GmailRemoteService
from offline_mail_sync.utils import configure_logging

logger = structlog.get_logger()


def _add_db_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite cache database (default: settings cache_db_path)",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mail-sync", description="Offline Mail Sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the sync engine until interrupted")
    _add_db_argument(run_parser)

    sync_parser = subparsers.add_parser(
        "sync", help="Flush offline queues and run a single sync cycle"
    )
    _add_db_argument(sync_parser)

    stats_parser = subparsers.add_parser("stats", help="Show cache and queue statistics")
    _add_db_argument(stats_parser)

    outbox_parser = subparsers.add_parser("outbox", help="Inspect and manage the outbox")
    outbox_sub = outbox_parser.add_subparsers(dest="outbox_command", required=True)
    outbox_list = outbox_sub.add_parser("list", help="List unsent messages")
    _add_db_argument(outbox_list)
    outbox_retry = outbox_sub.add_parser("retry", help="Retry sending one message now")
    outbox_retry.add_argument("item_id", type=int, help="Outbox item ID")
    _add_db_argument(outbox_retry)
    outbox_cancel = outbox_sub.add_parser("cancel", help="Drop one unsent message")
    outbox_cancel.add_argument("item_id", type=int, help="Outbox item ID")
    _add_db_argument(outbox_cancel)

    snoozed_parser = subparsers.add_parser("snoozed", help="List snoozed threads")
    _add_db_argument(snoozed_parser)

    search_parser = subparsers.add_parser("search", help="Search the local cache")
    search_parser.add_argument("query", help="Search terms")
    search_parser.add_argument("--limit", type=int, default=25, help="Max results")
    _add_db_argument(search_parser)

    clear_parser = subparsers.add_parser(
        "clear-cache", help="Drop cached mail and the sync cursor (queues are kept)"
    )
    _add_db_argument(clear_parser)

    return parser


def _open_cache(settings: Settings, db_path: Path | None) -> CacheStore:
    cache = CacheStore(db_path or settings.cache_db_path, max_replay_attempts=settings.max_replay_attempts)
    cache.initialize()
    return cache


async def _build_engine(settings: Settings, db_path: Path | None) -> SyncEngine:
    cache = _open_cache(settings, db_path)
    remote = GmailRemoteService(settings)
    await remote.authenticate()
    return SyncEngine(cache, remote, ConnectivityMonitor(online=True), settings)


def _print_notification(title: str, body: str) -> None:
    print(f"[{title}] {body}")


async def _cmd_run(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = await _build_engine(settings, args.db)
    engine.events.on("notification", _print_notification)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass

    await engine.actions.flush_queues()
    await engine.start()
    try:
        await stop.wait()
    finally:
        engine.stop()
        await engine.wait_closed()
    return 0


async def _cmd_sync(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = await _build_engine(settings, args.db)

    flush = await engine.actions.flush_queues()
    ok = await engine.sync()
    await engine.events.drain()

    stats = engine.cache.get_stats()
    print(
        f"Flushed {flush.actions_synced} actions and {flush.outbox_sent} messages; "
        f"cache holds {stats.thread_count} threads ({stats.size_bytes / 1024 / 1024:.1f} MiB)"
    )
    if not ok:
        print(f"Sync did not complete: {engine.last_error or 'offline'}", file=sys.stderr)
        return 1
    return 0


async def _cmd_outbox_retry(args: argparse.Namespace) -> int:
    settings = get_settings()
    engine = await _build_engine(settings, args.db)

    outcome = await engine.actions.retry_outbox_item(args.item_id)
    if outcome is None:
        print(f"No unsent outbox item {args.item_id}", file=sys.stderr)
        return 1
    if outcome.queued:
        print(f"Outbox item {args.item_id} is still queued (offline)")
        return 1
    print(f"Outbox item {args.item_id} sent")
    return 0


def _cmd_stats(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)

    stats = cache.get_stats()
    print(f"Threads: {stats.thread_count}")
    print(f"Messages: {stats.message_count}")
    print(f"Cache size: {stats.size_bytes / 1024 / 1024:.1f} MiB of {settings.cache_max_size_mb} MiB")
    print(f"Database file: {stats.db_file_bytes / 1024 / 1024:.1f} MiB")
    last = stats.last_synced_at.isoformat() if stats.last_synced_at else "never"
    print(f"Last synced: {last}")
    print(f"Pending actions: {stats.pending_actions}")
    print(f"Outbox: {stats.outbox_count}")

    failed = cache.get_failed_actions()
    if failed:
        print(f"\nActions needing attention ({len(failed)}):")
        for action in failed:
            print(f"- #{action.id} {action.type.value} {action.thread_id}: {action.last_error or ''}")

    return 0


def _cmd_outbox_list(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)

    for item in cache.get_outbox_items():
        error = f"\t{item.error}" if item.error else ""
        print(
            f"{item.id}\t{item.status.value}\t{item.attempts}\t{item.created_at.isoformat()}\t"
            f"{item.payload.to}\t{item.payload.subject}{error}"
        )
    return 0


def _cmd_outbox_cancel(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)

    if cache.get_outbox_item(args.item_id) is None:
        print(f"No outbox item {args.item_id}", file=sys.stderr)
        return 1
    cache.cancel_outbox_item(args.item_id)
    print(f"Outbox item {args.item_id} cancelled")
    return 0


def _cmd_snoozed(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)

    for record in cache.get_all_snoozed():
        thread = cache.get_thread(record.thread_id)
        subject = thread.subject if thread is not None else "(not cached)"
        print(f"{record.snooze_until.isoformat()}\t{record.thread_id}\t{subject}")
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)

    for t in cache.search_local(args.query, limit=args.limit):
        unread = "UNREAD" if t.is_unread else "READ"
        from_part = t.sender.email or t.sender.name or "(unknown sender)"
        date_part = t.last_date.isoformat() if t.last_date else "(no date)"
        print(f"{unread}\t{date_part}\t{from_part}\t{t.subject}")
    return 0


def _cmd_clear_cache(args: argparse.Namespace) -> int:
    settings = get_settings()
    cache = _open_cache(settings, args.db)
    cache.clear_cache()
    print("Cache cleared; the next sync will be a full sync")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Offline Mail Sync CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    settings = get_settings()
    configure_logging(settings.log_level, settings.debug)

    logger.info("offline_mail_sync_started", version=__version__, debug=settings.debug)

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        if parsed.command == "run":
            return asyncio.run(_cmd_run(parsed))
        if parsed.command == "sync":
            return asyncio.run(_cmd_sync(parsed))
        if parsed.command == "stats":
            return _cmd_stats(parsed)
        if parsed.command == "outbox":
            if parsed.outbox_command == "list":
                return _cmd_outbox_list(parsed)
            if parsed.outbox_command == "retry":
                return asyncio.run(_cmd_outbox_retry(parsed))
            if parsed.outbox_command == "cancel":
                return _cmd_outbox_cancel(parsed)
        if parsed.command == "snoozed":
            return _cmd_snoozed(parsed)
        if parsed.command == "search":
            return _cmd_search(parsed)
        if parsed.command == "clear-cache":
            return _cmd_clear_cache(parsed)
    except MailSyncError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
