#!/usr/bin/env python3
"""
Synk command line.

Usage:
    python run_sync.py pairs                          # List configured pairs
    python run_sync.py add <database_id> <calendar>   # Link a database to a calendar
    python run_sync.py remove <pair_key>              # Unlink
    python run_sync.py sync <pair_key>                # One reconciliation pass now
    python run_sync.py stats                          # Persisted statistics
    python run_sync.py databases | calendars          # Discover ids
    python run_sync.py serve                          # Run the scheduler in the foreground
"""

import argparse
import asyncio
import json
import sys

from synk.config import SyncSettings
from synk.errors import SynkError
from synk.logging_service import configure_logging
from syncs.sync_manager import create_sync_manager


def create_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Synk - Notion <-> Google Calendar sync')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('pairs', help='List configured pairs')

    add = sub.add_parser('add', help='Link a Notion database to a Google Calendar')
    add.add_argument('notion_database_id')
    add.add_argument('google_calendar_id')

    remove = sub.add_parser('remove', help='Unlink a pair')
    remove.add_argument('pair_key')

    sync = sub.add_parser('sync', help='Run one reconciliation pass now')
    sync.add_argument('pair_key', nargs='?', help='Pair to sync (default: all pairs)')

    sub.add_parser('stats', help='Show sync statistics')
    sub.add_parser('databases', help='List Notion databases shared with the integration')
    sub.add_parser('calendars', help='List Google calendars')
    sub.add_parser('serve', help='Run the scheduler until interrupted')
    return parser


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_command(args, manager) -> int:
    if args.command == 'pairs':
        print_json([
            {**pair.to_dict(), 'pair_key': pair.pair_key, 'active': manager.is_active(pair.pair_key)}
            for pair in manager.pairs
        ])
    elif args.command == 'add':
        pair = manager.add_sync_pair(args.notion_database_id, args.google_calendar_id)
        print(f"Added {pair.pair_key}")
    elif args.command == 'remove':
        if not manager.remove_pair_key(args.pair_key):
            print(f"Unknown pair {args.pair_key}", file=sys.stderr)
            return 1
        print(f"Removed {args.pair_key}")
    elif args.command == 'sync':
        keys = [args.pair_key] if args.pair_key else [pair.pair_key for pair in manager.pairs]
        if not keys:
            print("No pairs configured", file=sys.stderr)
            return 1
        exit_code = 0
        for key in keys:
            try:
                result = await manager.sync_now(key)
            except KeyError:
                print(f"Unknown pair {key}", file=sys.stderr)
                exit_code = 1
                continue
            except SynkError as e:
                print(f"{key}: {type(e).__name__}: {e}", file=sys.stderr)
                exit_code = 1
                continue
            print_json(result.to_dict())
        return exit_code
    elif args.command == 'stats':
        print_json(manager.get_stats())
    elif args.command == 'databases':
        print_json(await manager.reconciler.notion.list_databases())
    elif args.command == 'calendars':
        print_json(await manager.reconciler.calendar.list_calendars())
    elif args.command == 'serve':
        manager.start()
        try:
            await asyncio.Event().wait()
        finally:
            manager.stop()
    return 0


def main(argv=None) -> int:
    args = create_cli_parser().parse_args(argv)
    settings = SyncSettings.from_env()
    configure_logging(settings.log_level)
    manager = create_sync_manager(settings)
    try:
        return asyncio.run(run_command(args, manager))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
