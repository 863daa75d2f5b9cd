"""Database maintenance commands (`soma db ...`).

Provides subcommands for inspecting, exporting, purging and clearing the
long-term memory database.
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

from .config import load_config
from .errors import StorageError
from .memory import MemoryStore, RetentionSweeper

SEARCH_LIMIT = 20
EXPORT_MESSAGE_LIMIT = 1000


def _get_store(args: argparse.Namespace) -> MemoryStore:
    """Open the store named on the command line, or the configured one."""
    db_path = args.db or load_config().memory.db_path
    store = MemoryStore(db_path)
    store.init_db()
    return store


def _format_time(timestamp: int | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _print_stats(store: MemoryStore) -> None:
    counts = store.counts()
    size_kb = store.db_path.stat().st_size / 1024 if store.db_path.exists() else 0.0

    print(f"\nDatabase: {store.db_path}")
    print("-" * 40)
    print(f"Messages:      {counts['messages']}")
    print(f"Sessions:      {counts['sessions']}")
    print(f"Identities:    {counts['identities']}")
    print(f"Facts:         {counts['facts']}")
    print(f"Last activity: {_format_time(store.last_activity())}")
    print(f"Size:          {size_kb:.1f} KB")


def cmd_stats(args: argparse.Namespace) -> int:
    """Show record counts, last activity and database size."""
    store = _get_store(args)
    try:
        _print_stats(store)
    finally:
        store.close()
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Purge messages and sessions older than the retention horizon."""
    days = args.days or load_config().memory.retention_days
    store = _get_store(args)
    try:
        result = RetentionSweeper(store, retention_days=days).sweep()
        if result is None:
            print("Error: cleanup failed, see log for details.")
            return 1
        print(
            f"Deleted {result.messages_deleted} message(s) and "
            f"{result.sessions_deleted} session(s) older than {days:g} day(s)."
        )
        _print_stats(store)
    finally:
        store.close()
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Dump recent messages, identities and facts as JSON files."""
    out_dir = Path(args.output).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)

    store = _get_store(args)
    try:
        dumps = {
            "messages.json": [m.to_dict() for m in store.recent_messages(args.limit)],
            "identities.json": [b.to_dict() for b in store.get_all_identities()],
            "facts.json": [f.to_dict() for f in store.get_all_facts()],
        }
    finally:
        store.close()

    for filename, records in dumps.items():
        path = out_dir / filename
        path.write_text(json.dumps(records, indent=2, ensure_ascii=False))
        print(f"  - {filename} ({len(records)} record(s))")

    print(f"\n✓ Exported to {out_dir}")
    return 0


def cmd_identities(args: argparse.Namespace) -> int:
    """List identity bindings, most recently seen first."""
    store = _get_store(args)
    try:
        bindings = store.get_all_identities()
    finally:
        store.close()

    if not bindings:
        print("No identities found.")
        return 0

    print(f"\n{'Fingerprint':<14} {'Subject':<20} {'Confidence':<11} Last seen")
    print("-" * 70)
    for binding in bindings:
        print(
            f"{binding.fingerprint[:12]:<14} {binding.subject:<20} "
            f"{binding.confidence.value:<11} {_format_time(binding.last_seen_at)}"
        )
    print(f"\nTotal: {len(bindings)} identit{'y' if len(bindings) == 1 else 'ies'}")
    return 0


def cmd_search(args: argparse.Namespace) -> int:
    """Search message content, newest first."""
    store = _get_store(args)
    try:
        messages = store.search_messages(
            args.query, SEARCH_LIMIT, case_sensitive=args.case_sensitive
        )
    finally:
        store.close()

    if not messages:
        print(f"No messages matching '{args.query}'.")
        return 0

    for message in messages:
        content = message.content
        if len(content) > 80:
            content = content[:77] + "..."
        print(
            f"[{_format_time(message.timestamp)}] {message.session_id} "
            f"{message.role.value}: {content}"
        )
    print(f"\nFound: {len(messages)} message(s)")
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    """Delete every record. Requires --yes."""
    if not args.yes:
        print("Error: this deletes all memory. Re-run with --yes to confirm.")
        return 1

    store = _get_store(args)
    try:
        store.clear_all()
    finally:
        store.close()
    print("Cleared all messages, sessions, identities and facts.")
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the db CLI."""
    parser = argparse.ArgumentParser(
        prog="soma db",
        description="Inspect and maintain the Soma memory database",
    )
    parser.add_argument("--db", type=Path, help="Database file (default: from config)")

    subparsers = parser.add_subparsers(dest="command", help="Sub-command help")

    subparsers.add_parser("stats", help="Show database statistics")

    cleanup_parser = subparsers.add_parser("cleanup", help="Purge old messages and sessions")
    cleanup_parser.add_argument(
        "--days",
        type=float,
        help="Retention in days (default: from config)",
    )

    export_parser = subparsers.add_parser("export", help="Export memory as JSON")
    export_parser.add_argument(
        "-o", "--output",
        default="soma-export",
        help="Output directory",
    )
    export_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=EXPORT_MESSAGE_LIMIT,
        help="Number of recent messages to export",
    )

    subparsers.add_parser("identities", help="List identity bindings")

    search_parser = subparsers.add_parser("search", help="Search messages")
    search_parser.add_argument("query", help="Substring to look for")
    search_parser.add_argument(
        "-c", "--case-sensitive",
        action="store_true",
        help="Match case exactly",
    )

    clear_parser = subparsers.add_parser("clear", help="Delete all memory")
    clear_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm deletion",
    )

    return parser


def run_db_cli(argv: list[str] | None = None) -> int:
    """Run the db CLI with given arguments.

    Args:
        argv: Command-line arguments. Uses sys.argv[1:] if None.

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "stats": cmd_stats,
        "cleanup": cmd_cleanup,
        "export": cmd_export,
        "identities": cmd_identities,
        "search": cmd_search,
        "clear": cmd_clear,
    }

    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except StorageError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(run_db_cli())
