"""
sources.py - Where Each Host Source Is Read From

Three kinds of locations are supported:

    https://example.com/hosts   downloaded into a cache file (AtomicFile)
    file:///srv/lists/mine.txt  content reference, read in place behind a
                                persisted read grant
    ads.example.com             literal, the location itself is the host

Content references must be granted before the rule database may read them.
Grants survive restarts (``grants.json``) and are released by the update
worker once no configured source refers to them anymore.
"""
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import threading
from pathlib import Path
from typing import BinaryIO, Final, TextIO
from urllib.parse import unquote, urlparse

from hostblock.atomic_file import AtomicFile
from hostblock.config import HostFile


logger = logging.getLogger(__name__)

GRANTS_FILE: Final[str] = "grants.json"


# =============================================================================
# CACHE FILES
# =============================================================================

def url_to_filename(url: str) -> str:
    """Generate a safe, unique filename from a URL."""
    # Use SHA256 hash for uniqueness, take first 16 chars
    url_hash = hashlib.sha256(url.encode()).hexdigest()[:16]
    # Extract domain for readability
    domain = urlparse(url).netloc.replace(".", "_").replace(":", "_")[:30] or "unknown"
    return f"{domain}_{url_hash}.txt"


def item_file(item: HostFile, cache_dir: str | os.PathLike[str]) -> AtomicFile | None:
    """
    Return the cache file an item is downloaded to.

    Returns:
        AtomicFile, or None if the item is not fetched over HTTP(S)
    """
    if not item.is_http():
        return None
    return AtomicFile(Path(cache_dir) / url_to_filename(item.location))


def text_reader(stream: BinaryIO) -> TextIO:
    """Wrap a binary list stream the way list files are decoded everywhere."""
    return io.TextIOWrapper(stream, encoding="utf-8-sig", errors="replace")


# =============================================================================
# CONTENT REFERENCES
# =============================================================================

def uri_to_path(uri: str) -> Path:
    """Map a ``file://`` URI to a local path."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        raise ValueError(f"Not a content reference: {uri}")
    return Path(unquote(parsed.path))


class ContentResolver:
    """
    Opens content references and keeps the list of persisted read grants.

    A reference without a grant cannot be opened (PermissionError), which
    mirrors how a user-picked document behaves once its grant is released.
    """

    def __init__(self, grants_path: str | os.PathLike[str]):
        self.grants_path = Path(grants_path)
        self._lock = threading.Lock()

    def _load(self) -> list[str]:
        try:
            with open(self.grants_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load %s: %s", self.grants_path, e)
            return []
        return [str(uri) for uri in data] if isinstance(data, list) else []

    def _save(self, grants: list[str]) -> None:
        self.grants_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.grants_path.with_suffix(".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(grants, f, indent=2)
        temp_path.replace(self.grants_path)

    def persisted_permissions(self) -> list[str]:
        with self._lock:
            return self._load()

    def take_persistable_permission(self, uri: str) -> None:
        """
        Persist a read grant for uri.

        Raises:
            PermissionError: the referenced file exists but is not readable
        """
        path = uri_to_path(uri)
        if path.exists() and not os.access(path, os.R_OK):
            raise PermissionError(f"No read access to {path}")
        with self._lock:
            grants = self._load()
            if uri not in grants:
                grants.append(uri)
                self._save(grants)

    def release_persistable_permission(self, uri: str) -> None:
        with self._lock:
            grants = self._load()
            if uri in grants:
                grants.remove(uri)
                self._save(grants)

    def open(self, uri: str) -> BinaryIO:
        """
        Open a granted content reference for reading.

        Raises:
            PermissionError: no grant, or the OS denies access
            FileNotFoundError: the referenced file is gone
        """
        if uri not in self.persisted_permissions():
            raise PermissionError(f"No persisted grant for {uri}")
        return open(uri_to_path(uri), "rb")
