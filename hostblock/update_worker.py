"""
update_worker.py - Concurrent Rule Database Update

Refreshes every downloadable host source concurrently, then rebuilds the
rule database from whatever is on disk.

Cycle:
    1. Load the host configuration
    2. Start one ItemUpdater task per source that should be downloaded
    3. Wait for all of them, bounded by DATABASE_UPDATE_TIMEOUT; tasks still
       running at the deadline are cancelled
    4. Release content grants no configured source refers to anymore
    5. Reload the configuration and rebuild the rule database
    6. Persist the per-source errors (or clear them when there were none)

Usage:
    python -m hostblock update --config settings.json --data-dir data/
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Final, NamedTuple

import aiohttp

from hostblock.config import Hosts
from hostblock.errors import CancellationToken, LastErrors, RebuildCancelled
from hostblock.item_updater import ItemUpdater
from hostblock.rule_database import RuleDatabase
from hostblock.sources import ContentResolver


logger = logging.getLogger(__name__)

# Default configuration
DATABASE_UPDATE_TIMEOUT: Final[float] = 3600
DEFAULT_CONCURRENCY: Final[int] = 8

#: Refresh interval used when the configuration enables automatic refresh
AUTOMATIC_REFRESH_INTERVAL: Final[float] = 24 * 60 * 60

#: Called with (pending titles, done count, total started) on every change
ProgressCallback = Callable[[list[str], int, int], None]


class UpdateResult(NamedTuple):
    """
    Outcome of one update cycle.

    Attributes:
        complete: True if no source recorded an error
        errors: ``"<title>\\n<message>"`` entries
        started: Number of update tasks started
        blocked: Size of the published snapshot after the rebuild
        rebuilt: False if the rebuild was cancelled
    """
    complete: bool
    errors: list[str]
    started: int
    blocked: int
    rebuilt: bool


class UpdateLedger:
    """
    Pending/done/error bookkeeping shared by all updaters of one cycle.

    Every method takes the same lock; updaters call in from many tasks and
    the rebuild thread may read counts concurrently.
    """

    def __init__(self, on_progress: ProgressCallback | None = None):
        self._lock = threading.Lock()
        self._on_progress = on_progress
        self.errors: list[str] = []
        self.pending: list[str] = []
        self.done: list[str] = []

    def add_error(self, item, message: str) -> None:
        """Adds an error message related to the item to the log."""
        with self._lock:
            logger.debug("error: %s: %s", item.title, message)
            self.errors.append(f"{item.title}\n{message}")

    def add_begin(self, item) -> None:
        with self._lock:
            self.pending.append(item.title)
            self._notify()

    def add_done(self, item) -> None:
        with self._lock:
            logger.debug("done: %s", item.title)
            try:
                self.pending.remove(item.title)
            except ValueError:
                pass
            self.done.append(item.title)
            self._notify()

    def pending_count(self) -> int:
        with self._lock:
            return len(self.pending)

    def error_list(self) -> list[str]:
        with self._lock:
            return list(self.errors)

    def _notify(self) -> None:
        if self._on_progress is None:
            return
        total = len(self.pending) + len(self.done)
        try:
            self._on_progress(list(self.pending), len(self.done), total)
        except Exception:
            logger.exception("Progress callback failed")


class RuleDatabaseUpdateWorker:
    """
    Runs update cycles for one rule database.

    Args:
        database: Rule database to rebuild after fetching
        load_hosts: Returns the current host configuration; called at the
            start of the cycle and again before the rebuild
        cache_dir: Directory holding downloaded lists
        resolver: Grant store for content references
        last_errors: Where the error summary of an incomplete cycle is kept
    """

    def __init__(
        self,
        database: RuleDatabase,
        load_hosts: Callable[[], Hosts],
        cache_dir,
        resolver: ContentResolver,
        last_errors: LastErrors,
        timeout: float = DATABASE_UPDATE_TIMEOUT,
        concurrency: int = DEFAULT_CONCURRENCY,
        on_progress: ProgressCallback | None = None,
    ):
        self.database = database
        self.load_hosts = load_hosts
        self.cache_dir = cache_dir
        self.resolver = resolver
        self.last_errors = last_errors
        self.timeout = timeout
        self.concurrency = concurrency
        self.on_progress = on_progress
        self._refreshing = threading.Event()

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing.is_set()

    async def run(self, cancel: CancellationToken | None = None) -> UpdateResult:
        """
        Run one full update cycle.

        Args:
            cancel: Aborts the rebuild early; the previous block list stays
        """
        logger.info("Update cycle: begin")
        self._refreshing.set()
        try:
            return await self._run(cancel or CancellationToken())
        finally:
            self._refreshing.clear()

    async def _run(self, cancel: CancellationToken) -> UpdateResult:
        start = time.time()
        ledger = UpdateLedger(self.on_progress)
        hosts = self.load_hosts()
        semaphore = asyncio.Semaphore(self.concurrency)

        connector = aiohttp.TCPConnector(limit=self.concurrency, limit_per_host=2)
        async with aiohttp.ClientSession(connector=connector) as session:
            tasks = []
            for item in hosts.items:
                update = ItemUpdater(ledger, item, self.cache_dir, self.resolver, session)
                if update.should_download():
                    tasks.append(asyncio.create_task(update.run(semaphore)))

            await self._wait_all(tasks)

        logger.info("Fetch phase ended after %.1fs", time.time() - start)

        self.release_garbage_permissions(hosts)
        return await self.post_execute(ledger, len(tasks), cancel)

    async def _wait_all(self, tasks: list[asyncio.Task]) -> None:
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self.timeout)
        if pending:
            logger.warning(
                "Update timeout reached, abandoning %d outstanding downloads", len(pending)
            )
            for task in pending:
                task.cancel()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Update task failed: %r", result)

    def release_garbage_permissions(self, hosts: Hosts) -> None:
        """Releases all persisted content grants that are no longer referenced."""
        locations = {item.location for item in hosts.items}
        for uri in self.resolver.persisted_permissions():
            if uri not in locations:
                logger.info("Releasing permission for %s", uri)
                self.resolver.release_persistable_permission(uri)
            else:
                logger.debug("Keeping permission for %s", uri)

    async def post_execute(
        self, ledger: UpdateLedger, started: int, cancel: CancellationToken
    ) -> UpdateResult:
        """Rebuild the database, then persist or clear the error summary."""
        hosts = self.load_hosts()
        rebuilt = True
        try:
            await asyncio.to_thread(self.database.rebuild, hosts, cancel)
        except RebuildCancelled:
            logger.warning("Rebuild interrupted, keeping previous block list")
            rebuilt = False

        errors = ledger.error_list()
        if errors:
            logger.warning("Could not update all hosts (%d errors)", len(errors))
            self.last_errors.save(errors)
        else:
            self.last_errors.clear()

        return UpdateResult(
            complete=not errors,
            errors=errors,
            started=started,
            blocked=len(self.database),
            rebuilt=rebuilt,
        )

    async def run_periodically(self, interval: float, stop: asyncio.Event) -> None:
        """Run update cycles every interval seconds until stop is set."""
        while not stop.is_set():
            result = await self.run()
            logger.info(
                "Update cycle finished: %s, %d blocked hosts",
                "complete" if result.complete else "incomplete",
                result.blocked,
            )
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
