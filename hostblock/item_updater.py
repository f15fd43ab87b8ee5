"""
item_updater.py - Update a Single Host Source

Materializes one configured list into something the rule database can read:

    https://...  conditional GET (If-Modified-Since from the cache file),
                 body streamed into the cache file through AtomicFile
    file://...   read grant taken and the file opened once, nothing is copied

Every outcome is reported to the shared update ledger. The updater never
lets an error escape; only task cancellation propagates, after it has
been recorded.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from email.utils import formatdate, parsedate_to_datetime
from typing import TYPE_CHECKING, Final
from urllib.parse import urlparse

import aiohttp
from aiohttp import hdrs

from hostblock import errors
from hostblock.atomic_file import AtomicFile
from hostblock.config import HostFile
from hostblock.sources import ContentResolver, item_file

if TYPE_CHECKING:
    from hostblock.update_worker import UpdateLedger


logger = logging.getLogger(__name__)

# Default configuration
CONNECT_TIMEOUT: Final[float] = 3
READ_TIMEOUT: Final[float] = 10
CHUNK_SIZE: Final[int] = 4096


def parse_http_date(value: str | None) -> float | None:
    """Parse an HTTP date header into a POSIX timestamp."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


class ItemUpdater:
    """
    Updates a single item.

    Args:
        ledger: Shared pending/done/error ledger of the current cycle
        item: Source to update
        cache_dir: Directory holding cached downloads
        resolver: Grant store for content references
        session: HTTP session shared by all updaters of the cycle
    """

    def __init__(
        self,
        ledger: UpdateLedger,
        item: HostFile,
        cache_dir: str | os.PathLike[str],
        resolver: ContentResolver,
        session: aiohttp.ClientSession | None = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        read_timeout: float = READ_TIMEOUT,
    ):
        self.ledger = ledger
        self.item = item
        self.resolver = resolver
        self.session = session
        self.file: AtomicFile | None = item_file(item, cache_dir)
        self.timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=connect_timeout, sock_read=read_timeout
        )

    def should_download(self) -> bool:
        """
        Check whether run() has anything to do for this item.

        Records an "invalid URL" error for malformed HTTP(S) locations.
        """
        if self.item.is_content_reference():
            return True

        if self.file is None:
            return False

        try:
            parsed = urlparse(self.item.location)
            parsed.port  # raises on a malformed port
        except ValueError:
            parsed = None

        if parsed is None or not parsed.hostname:
            self.ledger.add_error(
                self.item, errors.INVALID_URL.format(location=self.item.location)
            )
            return False

        return True

    async def run(self, semaphore: asyncio.Semaphore | None = None) -> None:
        """
        Runs the item update, and marks it as done when finished.

        The item counts as pending while it waits for semaphore.
        """
        self.ledger.add_begin(self.item)
        try:
            async with semaphore or contextlib.nullcontext():
                if self.item.is_content_reference():
                    await asyncio.to_thread(self._request_permission)
                else:
                    await self._download()
        except asyncio.TimeoutError:
            self.ledger.add_error(self.item, errors.REQUEST_TIMED_OUT)
        except (aiohttp.ClientError, OSError) as e:
            self.ledger.add_error(self.item, errors.UNKNOWN_ERROR.format(error=e))
        except asyncio.CancelledError:
            self.ledger.add_error(self.item, errors.UPDATE_TIMED_OUT)
            raise
        except Exception as e:
            logger.exception("%s: Unexpected error", self.item.title)
            self.ledger.add_error(self.item, errors.UNKNOWN_ERROR.format(error=e))
        finally:
            self.ledger.add_done(self.item)

    # -------------------------------------------------------------------------
    # Content references
    # -------------------------------------------------------------------------

    def _request_permission(self) -> None:
        uri = self.item.location
        try:
            self.resolver.take_persistable_permission(uri)
            with self.resolver.open(uri):
                pass
            logger.debug("Permission requested for %s", uri)
        except PermissionError as e:
            logger.debug("Error taking permission for %s: %s", uri, e)
            self.ledger.add_error(self.item, errors.PERMISSION_DENIED)
        except FileNotFoundError as e:
            logger.debug("File not found: %s", e)
            self.ledger.add_error(self.item, errors.FILE_NOT_FOUND)

    # -------------------------------------------------------------------------
    # HTTP(S) downloads
    # -------------------------------------------------------------------------

    async def _download(self) -> None:
        if self.session is None or self.file is None:
            raise RuntimeError("HTTP sources need a client session and a cache file")

        headers = {}
        local_modified = self.file.last_modified()
        if local_modified is not None:
            headers[hdrs.IF_MODIFIED_SINCE] = formatdate(local_modified, usegmt=True)

        async with self.session.get(
            self.item.location,
            headers=headers,
            timeout=self.timeout,
            allow_redirects=True,
        ) as response:
            if not self.validate_response(response, local_modified):
                return
            await self.download_file(self.file, response)

    def validate_response(
        self, response: aiohttp.ClientResponse, local_modified: float | None
    ) -> bool:
        """
        Check if the response body should be stored.

        Returns:
            True on 200; otherwise records an error where one applies
        """
        logger.debug(
            "%s: local=%s remote=%s",
            self.item.title,
            local_modified,
            response.headers.get(hdrs.LAST_MODIFIED),
        )
        if response.status == 200:
            return True

        logger.debug(
            "%s: Skipping, server responded with %d for %s",
            self.item.title,
            response.status,
            self.item.location,
        )
        if response.status == 404:
            self.ledger.add_error(self.item, errors.FILE_NOT_FOUND)
        elif response.status != 304:
            self.ledger.add_error(
                self.item,
                errors.SERVER_ERROR.format(status=response.status, reason=response.reason),
            )
        return False

    async def download_file(self, store: AtomicFile, response: aiohttp.ClientResponse) -> None:
        """Stream the body into store, committing only a complete copy."""
        handle = await store.start_write()
        committed = False
        try:
            async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                await handle.write(chunk)
            await store.finish_write(handle)
            committed = True
        finally:
            if not committed:
                await store.fail_write(handle)

        remote_modified = parse_http_date(response.headers.get(hdrs.LAST_MODIFIED))
        if remote_modified is None or not store.set_last_modified(remote_modified):
            logger.debug("%s: Could not set last modified", self.item.title)
