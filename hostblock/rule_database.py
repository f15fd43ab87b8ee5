"""
rule_database.py - Blocked Host Rule Database

Holds the published set of blocked hosts and rebuilds it from the configured
sources. Readers never take a lock: the snapshot is an immutable frozenset
that is swapped in with a single assignment once a rebuild completed.

Resolution order (RESOLUTION_PHASES):

    1. bulk-deny        HostFile items with state DENY add their hosts
    2. bulk-allow       HostFile items with state ALLOW remove their hosts
    3. exception-deny   HostException entries with state DENY add their host
    4. exception-allow  HostException entries with state ALLOW remove their host

Exceptions therefore always have the final say, whatever order the sources
are configured in. Within a phase, configuration order is kept.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Final, Iterable, NamedTuple, TextIO

from hostblock.config import HostException, HostFile, Hosts, HostState
from hostblock.errors import CancellationToken
from hostblock.hosts import parse_line
from hostblock.sources import ContentResolver, item_file, text_reader


logger = logging.getLogger(__name__)


# =============================================================================
# RESOLUTION PHASES
# =============================================================================

class Phase(NamedTuple):
    """
    One resolution step of a rebuild.

    Attributes:
        name: Label used in logs
        source_type: HostFile or HostException
        state: Which sources take part in this phase
    """
    name: str
    source_type: type
    state: HostState


RESOLUTION_PHASES: Final[tuple[Phase, ...]] = (
    Phase("bulk-deny", HostFile, HostState.DENY),
    Phase("bulk-allow", HostFile, HostState.ALLOW),
    Phase("exception-deny", HostException, HostState.DENY),
    Phase("exception-allow", HostException, HostState.ALLOW),
)

EMPTY: Final[frozenset[str]] = frozenset()


# =============================================================================
# RULE DATABASE
# =============================================================================

class RuleDatabase:
    """
    Represents hosts that are blocked.

    Lock-free for readers; rebuild() is serialized and publishes a complete
    new snapshot or nothing at all.

    Args:
        cache_dir: Directory holding downloaded lists
        resolver: Opens granted content references
    """

    def __init__(self, cache_dir: str | os.PathLike[str], resolver: ContentResolver):
        self.cache_dir = cache_dir
        self.resolver = resolver
        self._blocked: frozenset[str] = EMPTY
        self._rebuild_lock = threading.Lock()

    @property
    def snapshot(self) -> frozenset[str]:
        return self._blocked

    def is_blocked(self, host: str) -> bool:
        """Check if a host is blocked."""
        return host in self._blocked

    def is_empty(self) -> bool:
        """Check if no host is blocked at all."""
        return not self._blocked

    def __len__(self) -> int:
        return len(self._blocked)

    # -------------------------------------------------------------------------
    # Rebuild
    # -------------------------------------------------------------------------

    def rebuild(self, hosts: Hosts, cancel: CancellationToken | None = None) -> frozenset[str]:
        """
        Load the hosts according to the configuration and publish them.

        Args:
            hosts: Current host configuration
            cancel: Polled between sources and between lines

        Returns:
            The published snapshot

        Raises:
            RebuildCancelled: cancel was triggered; the previous snapshot
                stays published
        """
        cancel = cancel or CancellationToken()
        with self._rebuild_lock:
            if not hosts.enabled:
                logger.info("Host filtering disabled, publishing empty block list")
                self._blocked = EMPTY
                return EMPTY

            logger.info("Loading block list")
            start = time.time()
            working: set[str] = set()

            for phase in RESOLUTION_PHASES:
                sources: Iterable[HostFile | HostException]
                if phase.source_type is HostFile:
                    sources = hosts.items
                else:
                    sources = hosts.exceptions
                for source in sources:
                    if source.state is not phase.state:
                        continue
                    cancel.raise_if_cancelled()
                    if isinstance(source, HostFile):
                        self._load_item(source, phase, working, cancel)
                    else:
                        self._apply(phase, working, parse_line(source.hostname), source.title)

            snapshot = frozenset(working)
            self._blocked = snapshot
            logger.info(
                "Loaded %d blocked hosts in %.1fs", len(snapshot), time.time() - start
            )
            return snapshot

    @staticmethod
    def _apply(phase: Phase, working: set[str], host: str | None, title: str) -> None:
        if host is None:
            logger.debug("%s: %r has no usable host", phase.name, title)
            return
        if phase.state is HostState.DENY:
            working.add(host)
        else:
            working.discard(host)

    def _load_item(
        self,
        item: HostFile,
        phase: Phase,
        working: set[str],
        cancel: CancellationToken,
    ) -> None:
        """Load an item backed by a cache file, a content reference, or a literal."""
        try:
            if item.is_content_reference():
                stream = self.resolver.open(item.location)
            else:
                store = item_file(item, self.cache_dir)
                if store is None:
                    # Single host in the location field
                    self._apply(phase, working, parse_line(item.location), item.title)
                    return
                stream = store.open_read()
        except (FileNotFoundError, PermissionError) as e:
            logger.debug("%s: Cannot open %s: %s", item.title, item.location, e)
            return
        except (OSError, ValueError) as e:
            logger.error("%s: Cannot read %s: %s", item.title, item.location, e)
            return

        with text_reader(stream) as reader:
            self.load_reader(item, phase, working, reader, cancel)

    def load_reader(
        self,
        item: HostFile,
        phase: Phase,
        working: set[str],
        reader: TextIO,
        cancel: CancellationToken,
    ) -> bool:
        """
        Apply every host read from reader to the working set.

        Returns:
            False if reading stopped on an I/O error (hosts read so far stay)
        """
        count = 0
        logger.debug("Reading: %s", item.location)
        try:
            for line in reader:
                cancel.raise_if_cancelled()
                host = parse_line(line)
                if host is not None:
                    count += 1
                    self._apply(phase, working, host, item.title)
        except OSError as e:
            logger.error(
                "Error while reading %s after %d items: %s", item.location, count, e
            )
            return False

        logger.debug("Loaded %d hosts from %s", count, item.location)
        return True
