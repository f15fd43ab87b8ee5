#!/usr/bin/env python3
"""
cli.py - Command-Line Front End

Usage:
    hostblock update [--timeout 3600] [--every 86400]
    hostblock check ads.example.com tracker.example.net
    hostblock errors [--dismiss]
    hostblock sources

With "automaticRefresh" set in the configuration, update keeps running and
refreshes once a day unless --every says otherwise.

Global options:
    --config settings.json   Host source configuration
    --data-dir data/         Cache files, grants and the last error summary
    -v / --verbose           Debug logging
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from hostblock.config import DEFAULT_CONFIG_FILENAME, Configuration
from hostblock.errors import LAST_ERRORS_FILE, ConfigError, LastErrors
from hostblock.rule_database import RuleDatabase
from hostblock.sources import GRANTS_FILE, ContentResolver
from hostblock.update_worker import (
    AUTOMATIC_REFRESH_INTERVAL,
    DATABASE_UPDATE_TIMEOUT,
    DEFAULT_CONCURRENCY,
    RuleDatabaseUpdateWorker,
)


DEFAULT_DATA_DIR = "data"
CACHE_SUBDIR = "cache"


class Engine:
    """The objects one invocation works with, wired from the global options."""

    def __init__(self, config_path: Path, data_dir: Path):
        self.config_path = config_path
        self.data_dir = data_dir
        self.cache_dir = data_dir / CACHE_SUBDIR
        self.resolver = ContentResolver(data_dir / GRANTS_FILE)
        self.last_errors = LastErrors(data_dir / LAST_ERRORS_FILE)
        self.database = RuleDatabase(self.cache_dir, self.resolver)

    def load_config(self) -> Configuration:
        return Configuration.load(self.config_path)

    def worker(self, timeout: float, concurrency: int) -> RuleDatabaseUpdateWorker:
        return RuleDatabaseUpdateWorker(
            self.database,
            lambda: self.load_config().hosts,
            self.cache_dir,
            self.resolver,
            self.last_errors,
            timeout=timeout,
            concurrency=concurrency,
        )


def print_errors(errors: list[str]) -> None:
    for entry in errors:
        title, _, message = entry.partition("\n")
        print(f"   - {title}: {message}")


def cmd_update(engine: Engine, args: argparse.Namespace) -> int:
    worker = engine.worker(args.timeout, args.concurrency)

    interval = args.every
    if interval is None and engine.load_config().hosts.automatic_refresh:
        interval = AUTOMATIC_REFRESH_INTERVAL

    if interval:
        stop = asyncio.Event()
        print(f"🔁 Updating every {interval:.0f}s (Ctrl+C to stop)")
        try:
            asyncio.run(worker.run_periodically(interval, stop))
        except KeyboardInterrupt:
            pass
        return 0

    print("🔄 Updating host sources...")
    start_time = time.time()
    result = asyncio.run(worker.run())
    total_time = time.time() - start_time

    print(f"✅ Sources updated: {result.started - len(result.errors)}/{result.started}")
    print(f"🚫 Blocked hosts: {result.blocked:,}")
    if not result.rebuilt:
        print("⚠️  Rebuild interrupted, previous block list kept")
    if not result.complete:
        print(f"⚠️  Could not update all hosts ({len(result.errors)} errors)")
        print_errors(result.errors)
    print(f"⏱️  Total time: {total_time:.1f}s")

    return 0 if result.complete else 1


def cmd_check(engine: Engine, args: argparse.Namespace) -> int:
    engine.database.rebuild(engine.load_config().hosts)
    for host in args.hosts:
        host = host.strip().lower()
        blocked = engine.database.is_blocked(host)
        print(f"{'BLOCKED' if blocked else 'allowed':8} {host}")
    return 0


def cmd_errors(engine: Engine, args: argparse.Namespace) -> int:
    if args.dismiss:
        engine.last_errors.dismiss()
        print("Error summary dismissed")
        return 0

    errors = engine.last_errors.load()
    if not errors:
        print("✅ Last update completed without errors")
        return 0
    print(f"⚠️  Last update was incomplete ({len(errors)} errors)")
    print_errors(errors)
    return 0


def cmd_sources(engine: Engine, args: argparse.Namespace) -> int:
    hosts = engine.load_config().hosts
    print(f"Filtering: {'enabled' if hosts.enabled else 'disabled'}")
    print("\n📋 Lists:")
    for item in hosts.items:
        print(f"   [{item.state.name:6}] {item.title} ({item.location})")
    print("\n📌 Exceptions:")
    for exc in hosts.exceptions:
        print(f"   [{exc.state.name:6}] {exc.title} ({exc.hostname})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hostblock", description="Maintain and query a hosts blocklist database"
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILENAME, help="Path to settings.json")
    parser.add_argument("--data-dir", default=DEFAULT_DATA_DIR, help="Directory for cached lists and state")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    update = sub.add_parser("update", help="Download sources and rebuild the block list")
    update.add_argument("--timeout", type=float, default=DATABASE_UPDATE_TIMEOUT, help="Global update timeout in seconds")
    update.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Max concurrent downloads")
    update.add_argument("--every", type=float, default=None, help="Repeat the update every N seconds (0 runs once)")
    update.set_defaults(func=cmd_update)

    check = sub.add_parser("check", help="Check whether hosts are blocked")
    check.add_argument("hosts", nargs="+", help="Hostnames to check")
    check.set_defaults(func=cmd_check)

    errors = sub.add_parser("errors", help="Show the error summary of the last update")
    errors.add_argument("--dismiss", action="store_true", help="Clear the error summary")
    errors.set_defaults(func=cmd_errors)

    sources = sub.add_parser("sources", help="List configured host sources")
    sources.set_defaults(func=cmd_sources)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = Engine(Path(args.config), Path(args.data_dir))
    try:
        return args.func(engine, args)
    except ConfigError as e:
        print(f"❌ ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
