# =============================================================================
# mailsync Command Line
# =============================================================================
# Thin command-line front end over the SyncOrchestrator.
#
#   mailsync list personal --limit 20       newest messages (cache-aware)
#   mailsync show personal imap-4127        one message, fetched if needed
#   mailsync search personal invoice        cache + server subject search
#   mailsync watch personal                 IDLE until Ctrl-C, print events
#   mailsync stats personal                 cache counters
#   mailsync clean                          drop messages past retention
#
# Output goes to stdout; logging goes to stderr (and optionally a file).
# =============================================================================

import argparse
import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from mailsync import __app_name__, __version__
from mailsync.config import Config, ConfigError, print_paths
from mailsync.core import MessageSummary
from mailsync.credentials import KeyringCredentialProvider
from mailsync.errors import MailSyncError
from mailsync.events import CallbackSink, NotificationSink, SyncEvent
from mailsync.logging_config import setup_logging
from mailsync.storage import CacheRepository, Database
from mailsync.sync import SyncOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=__app_name__,
        description="mailsync: a cache-aware IMAP sync engine",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--paths",
        action="store_true",
        help="Print configuration paths and exit",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Path to config file (default: XDG config location)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (verbose logging)",
    )

    commands = parser.add_subparsers(dest="command")

    list_cmd = commands.add_parser("list", help="List the newest messages")
    list_cmd.add_argument("account")
    list_cmd.add_argument("--limit", type=int, default=None, help="How many messages")
    list_cmd.add_argument("--refresh", action="store_true", help="Bypass the cache")

    show_cmd = commands.add_parser("show", help="Show one message")
    show_cmd.add_argument("account")
    show_cmd.add_argument("id", help="Message id, e.g. imap-4127")

    search_cmd = commands.add_parser("search", help="Search cache and server")
    search_cmd.add_argument("account")
    search_cmd.add_argument("query")

    watch_cmd = commands.add_parser("watch", help="Watch for new mail until Ctrl-C")
    watch_cmd.add_argument("account")

    stats_cmd = commands.add_parser("stats", help="Show cache statistics")
    stats_cmd.add_argument("account")

    commands.add_parser("clean", help="Remove cached messages past retention")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    return build_parser().parse_args(argv)


# =============================================================================
# Output
# =============================================================================

def format_summary(summary: MessageSummary) -> str:
    marker = " " if summary.is_read else "*"
    clip = "@" if summary.has_attachments else " "
    sender = summary.sender.name or summary.sender.address
    return (
        f"{marker}{clip} {summary.id:<12} {summary.date:%Y-%m-%d %H:%M}  "
        f"{sender[:24]:<24}  {summary.subject}"
    )


async def print_event(event: SyncEvent) -> None:
    print(json.dumps(event.to_dict()), flush=True)


# =============================================================================
# Commands
# =============================================================================

@asynccontextmanager
async def open_orchestrator(
    config: Config, sink: NotificationSink | None = None
) -> AsyncIterator[SyncOrchestrator]:
    """SQLite-backed orchestrator using keyring passwords."""
    db = Database(config.database_path())
    await db.connect()
    cache = CacheRepository(db)
    orchestrator = SyncOrchestrator(cache, KeyringCredentialProvider(), sink=sink, config=config)
    try:
        yield orchestrator
    finally:
        await orchestrator.close()
        await cache.close()


async def cmd_list(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.get_messages(args.account, force_refresh=args.refresh, limit=args.limit)
    for summary in result.messages:
        print(format_summary(summary))

    note = " (stale)" if result.is_stale else ""
    print(f"\n{len(result.messages)} messages from {result.source.value}{note}")

    # Let a hybrid answer's background refresh land before the process exits
    session = orchestrator.sessions.find(args.account)
    if session is not None and session.refresh_task is not None:
        await asyncio.gather(session.refresh_task, return_exceptions=True)
    return 0


async def cmd_show(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.get_content(args.account, args.id)
    summary = result.content.summary

    print(f"From:    {summary.sender}")
    print(f"To:      {summary.recipient}")
    print(f"Date:    {summary.date:%Y-%m-%d %H:%M %Z}")
    print(f"Subject: {summary.subject}")
    for position, attachment in enumerate(result.content.attachments, start=1):
        print(f"Attach:  [{position}] {attachment.filename} ({attachment.size_bytes} bytes)")
    print()
    print(result.content.text_body)
    return 0


async def cmd_search(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    result = await orchestrator.search(args.account, args.query)
    for summary in result.results:
        print(format_summary(summary))
    print(
        f"\n{result.total} results ({result.cache_count} cached, "
        f"{result.live_count} from server) in {result.search_seconds:.2f}s"
    )
    return 0


async def cmd_watch(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    status = await orchestrator.start_idle(args.account)
    print(f"Watching {args.account} ({status.state.value}), Ctrl-C to stop", file=sys.stderr)
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.stop_idle(args.account)
    return 0


async def cmd_stats(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    stats = await orchestrator.cache_stats(args.account)
    print(f"Account:       {stats.account_id}")
    print(f"Messages:      {stats.total_messages}")
    print(f"Unread:        {stats.unread_messages}")
    print(f"With content:  {stats.with_content}")
    print(f"Oldest:        {stats.oldest or '-'}")
    print(f"Newest:        {stats.newest or '-'}")
    print(f"Last cached:   {stats.last_cached_at or '-'}")
    return 0


async def cmd_clean(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    removed = await orchestrator.clean_old_messages()
    print(f"Removed {removed} messages older than {orchestrator.config.cache.retention_days} days")
    return 0


COMMANDS = {
    "list": cmd_list,
    "show": cmd_show,
    "search": cmd_search,
    "watch": cmd_watch,
    "stats": cmd_stats,
    "clean": cmd_clean,
}


async def run(config: Config, args: argparse.Namespace) -> int:
    sink = CallbackSink(print_event) if args.command == "watch" else None
    async with open_orchestrator(config, sink) as orchestrator:
        return await COMMANDS[args.command](orchestrator, args)


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for mailsync.

    This function:
        1. Parses command-line arguments
        2. Handles special commands (--paths, --version)
        3. Loads configuration and sets up logging
        4. Runs the requested command

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # Handle --paths flag
    if args.paths:
        print_paths(config)
        return 0

    if not args.command:
        build_parser().print_help()
        return 0

    setup_logging(
        "DEBUG" if args.debug else config.logging.level,
        config.log_file_path() if config.logging.log_to_file else None,
    )

    try:
        return asyncio.run(run(config, args))
    except KeyboardInterrupt:
        return 130
    except MailSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
