"""
errors.py - Error Taxonomy and Error Reporting

Per-source update failures are never raised past the updater; they are
formatted with the message templates below, collected by the update ledger
and persisted through LastErrors so a front end can show them later.

Exceptions in this module are only for conditions the caller must act on:
an unreadable configuration, or a rebuild that was cancelled on request.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Final


logger = logging.getLogger(__name__)


# =============================================================================
# MESSAGE TEMPLATES
# =============================================================================

INVALID_URL: Final[str] = "Invalid URL: {location}"
PERMISSION_DENIED: Final[str] = "Permission denied"
FILE_NOT_FOUND: Final[str] = "File not found"
REQUEST_TIMED_OUT: Final[str] = "Request timed out"
UPDATE_TIMED_OUT: Final[str] = "Update timed out"
SERVER_ERROR: Final[str] = "Server responded with {status}: {reason}"
UNKNOWN_ERROR: Final[str] = "Unknown error: {error}"

LAST_ERRORS_FILE: Final[str] = "last_errors.json"


# =============================================================================
# EXCEPTIONS
# =============================================================================

class HostblockError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(HostblockError):
    """The configuration file cannot be decoded or is too new."""


class RebuildCancelled(HostblockError):
    """A rebuild stopped early; nothing was published."""


class CancellationToken:
    """
    Cooperative cancellation flag polled at loop boundaries.

    Safe to cancel from any thread.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RebuildCancelled("Interrupted")


# =============================================================================
# LAST ERRORS
# =============================================================================

class LastErrors:
    """
    Persisted summary of the last incomplete update cycle.

    Each entry is ``"<source title>\\n<message>"``. The file is removed when a
    cycle finishes without errors or the summary is dismissed.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> list[str]:
        with self._lock:
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError:
                return []
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Could not load %s: %s", self.path, e)
                return []
        if not isinstance(data, list):
            return []
        return [str(entry) for entry in data]

    def save(self, errors: list[str]) -> None:
        """Save errors atomically."""
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.path.with_suffix(".tmp")
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(list(errors), f, indent=2)
            temp_path.replace(self.path)

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    dismiss = clear
