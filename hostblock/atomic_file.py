"""
atomic_file.py - Single-Writer/Multiple-Reader File Replacement

A cached blocklist is read by the rule database while the updater may be
downloading a newer copy of it. Writes go to a sibling work file which is
only renamed over the committed file once it is complete and synced, so a
reader always sees either the complete old or the complete new content.

Usage:
    store = AtomicFile(cache_dir / "example_com_0123456789abcdef.txt")
    handle = await store.start_write()
    try:
        await handle.write(data)
        await store.finish_write(handle)
    except BaseException:
        await store.fail_write(handle)
        raise
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Final

import aiofiles


logger = logging.getLogger(__name__)

#: Suffix appended to the committed file name for the in-flight copy
WORK_SUFFIX: Final[str] = ".new"


class AtomicFile:
    """
    A file replaced atomically through a work copy.

    Invariant: exactly one complete committed version exists (once the first
    write finished) plus at most one in-flight work file. A crash between
    start_write() and finish_write() leaves the committed version untouched.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self.work_path = self.path.with_name(self.path.name + WORK_SUFFIX)

    def __repr__(self) -> str:
        return f"AtomicFile({str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.is_file()

    def open_read(self) -> BinaryIO:
        """
        Open the last committed version for reading.

        Raises:
            FileNotFoundError: nothing was ever committed
        """
        return open(self.path, "rb")

    def last_modified(self) -> float | None:
        """Modification time of the committed file, or None if missing."""
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def set_last_modified(self, timestamp: float) -> bool:
        """Set atime/mtime of the committed file. Returns False on failure."""
        try:
            os.utime(self.path, (timestamp, timestamp))
        except OSError as e:
            logger.debug("Could not set last modified on %s: %s", self.path, e)
            return False
        return True

    async def start_write(self):
        """
        Begin a new write and return an aiofiles binary handle.

        A leftover work file (from a crashed writer) is removed first.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.work_path.unlink()
            logger.debug("Removed stale work file %s", self.work_path)
        except FileNotFoundError:
            pass
        return await aiofiles.open(self.work_path, "wb")

    async def finish_write(self, handle) -> None:
        """Sync and close the work file, then rename it over the committed file."""
        try:
            await handle.flush()
            os.fsync(handle.fileno())
        finally:
            await handle.close()
        os.replace(self.work_path, self.path)

    async def fail_write(self, handle) -> None:
        """Discard the work file. The committed version is not touched."""
        try:
            await handle.close()
        finally:
            try:
                self.work_path.unlink()
            except FileNotFoundError:
                pass
