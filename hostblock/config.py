"""
config.py - Host Source Configuration

The configured host sources are persisted as JSON (``settings.json``):

    {
      "version": 1,
      "minorVersion": 1,
      "hosts": {
        "enabled": true,
        "automaticRefresh": false,
        "items": [
          {"title": "StevenBlack", "location": "https://...", "state": "DENY"}
        ],
        "exceptions": [
          {"title": "Shop", "hostname": "ads.example.com", "state": "ALLOW"}
        ]
      }
    }

Unknown keys are ignored. When the main file cannot be decoded the ``.bak``
copy written by the previous save() is tried instead.
"""
from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from hostblock.errors import ConfigError


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_CONFIG_FILENAME: Final[str] = "settings.json"
CONFIG_BACKUP_EXTENSION: Final[str] = ".bak"

#: Location prefixes of list sources fetched over the network
HTTP_SCHEMES: Final[tuple[str, ...]] = ("https://", "http://")

#: Location prefix of content references (local lists read in place)
CONTENT_SCHEME: Final[str] = "file://"

#: Major format version understood by this code
VERSION: Final[int] = 1

#: Latest minor (tweak) level; older files are migrated on load
MINOR_VERSION: Final[int] = 1


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class HostState(enum.Enum):
    """What a source contributes to the blocked set."""
    IGNORE = 0
    DENY = 1
    ALLOW = 2

    @classmethod
    def parse(cls, value: Any) -> "HostState":
        """Accept a state name or ordinal; anything unknown is IGNORE."""
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                return cls.IGNORE
        if isinstance(value, int) and not isinstance(value, bool):
            for state in cls:
                if state.value == value:
                    return state
        return cls.IGNORE


@dataclass
class HostFile:
    """
    A list source: a URL, a ``file://`` content reference, or a literal host.

    Attributes:
        title: Display name, also the key in update error messages
        location: Where the list lives
        state: DENY / ALLOW / IGNORE
    """
    title: str = ""
    location: str = ""
    state: HostState = HostState.IGNORE

    def is_http(self) -> bool:
        return self.location.startswith(HTTP_SCHEMES)

    def is_content_reference(self) -> bool:
        return self.location.startswith(CONTENT_SCHEME)

    def is_downloadable(self) -> bool:
        """True for sources that are fetched or validated by the updater."""
        return self.is_http() or self.is_content_reference()

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "location": self.location, "state": self.state.name}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "HostFile":
        return cls(
            title=str(raw.get("title", "")),
            location=str(raw.get("location", "")),
            state=HostState.parse(raw.get("state")),
        )


@dataclass
class HostException:
    """A single literal host that is denied or allowed after all lists."""
    title: str = ""
    hostname: str = ""
    state: HostState = HostState.IGNORE

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "hostname": self.hostname, "state": self.state.name}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "HostException":
        return cls(
            title=str(raw.get("title", "")),
            hostname=str(raw.get("hostname", "")),
            state=HostState.parse(raw.get("state")),
        )


def default_host_files() -> list[HostFile]:
    return [
        HostFile(
            title="StevenBlack's unified hosts file",
            location="https://raw.githubusercontent.com/StevenBlack/hosts/master/hosts",
            state=HostState.DENY,
        ),
        HostFile(
            title="Adaway hosts file",
            location="https://adaway.org/hosts.txt",
            state=HostState.IGNORE,
        ),
        HostFile(
            title="Dan Pollock's hosts file",
            location="https://someonewhocares.org/hosts/hosts",
            state=HostState.IGNORE,
        ),
    ]


@dataclass
class Hosts:
    """
    Ordered host sources plus the global filtering switch.

    Attributes:
        enabled: When False the rule database publishes an empty set
        automatic_refresh: Keep refreshing on a schedule after ``update``
        items: List sources, in configuration order
        exceptions: Single-host exceptions, in configuration order
    """
    enabled: bool = True
    automatic_refresh: bool = False
    items: list[HostFile] = field(default_factory=default_host_files)
    exceptions: list[HostException] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "automaticRefresh": self.automatic_refresh,
            "items": [item.to_dict() for item in self.items],
            "exceptions": [exc.to_dict() for exc in self.exceptions],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Hosts":
        hosts = cls(
            enabled=bool(raw.get("enabled", True)),
            automatic_refresh=bool(raw.get("automaticRefresh", False)),
        )
        if "items" in raw:
            hosts.items = [HostFile.from_dict(item) for item in raw["items"] or []]
        hosts.exceptions = [HostException.from_dict(exc) for exc in raw.get("exceptions") or []]
        return hosts


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class Configuration:
    version: int = VERSION
    minor_version: int = 0
    hosts: Hosts = field(default_factory=Hosts)

    # -------------------------------------------------------------------------
    # Migration
    # -------------------------------------------------------------------------

    def run_update(self, level: int) -> None:
        """Apply the minor-version migration for one level."""
        if level == 1:
            # Filtering can no longer be switched off from old configs
            self.hosts.enabled = True
            logger.info("Updated to config v1.1 successfully")
        self.minor_version = level

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    def add_url(self, index: int, title: str, location: str, state: HostState) -> None:
        self.hosts.items.insert(index, HostFile(title=title, location=location, state=state))

    def update_url(self, old_url: str, new_url: str | None, new_state: HostState) -> None:
        for item in self.hosts.items:
            if item.location == old_url:
                if new_url is not None:
                    item.location = new_url
                item.state = new_state

    def remove_url(self, old_url: str) -> None:
        self.hosts.items = [item for item in self.hosts.items if item.location != old_url]

    def disable_url(self, old_url: str) -> None:
        logger.debug("Disabling %s", old_url)
        for item in self.hosts.items:
            if item.location == old_url:
                item.state = HostState.IGNORE

    def add_exception(self, title: str, hostname: str, state: HostState) -> None:
        self.hosts.exceptions.append(HostException(title=title, hostname=hostname, state=state))

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "minorVersion": self.minor_version,
            "hosts": self.hosts.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Configuration":
        if not isinstance(raw, dict):
            raise ConfigError("Configuration root must be an object")
        hosts_raw = raw.get("hosts")
        return cls(
            version=int(raw.get("version", VERSION)),
            minor_version=int(raw.get("minorVersion", 0)),
            hosts=Hosts.from_dict(hosts_raw) if isinstance(hosts_raw, dict) else Hosts(),
        )

    @classmethod
    def loads(cls, text: str) -> "Configuration":
        """
        Decode a configuration and migrate it to the current minor version.

        Raises:
            ConfigError: text is not a valid configuration, or it was written
                by a newer major version
        """
        try:
            config = cls.from_dict(json.loads(text))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            raise ConfigError(f"Cannot read configuration: {e}") from e

        if config.version > VERSION:
            raise ConfigError(f"Unhandled file format version {config.version}")

        for level in range(config.minor_version + 1, MINOR_VERSION + 1):
            config.run_update(level)

        return config

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "Configuration":
        """
        Load the configuration at path, falling back to its backup.

        A missing file yields the default configuration.
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Config file %s not found, using defaults", path)
            return cls(minor_version=MINOR_VERSION)

        try:
            return cls.loads(text)
        except ConfigError as e:
            backup = path.with_name(path.name + CONFIG_BACKUP_EXTENSION)
            if not backup.is_file():
                raise
            logger.error("Failed to decode %s (%s), trying backup", path, e)
            return cls.loads(backup.read_text(encoding="utf-8"))

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def save(self, path: str | os.PathLike[str]) -> None:
        """
        Save atomically, keeping the previous version as ``<name>.bak``.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + ".tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(self.dumps())
        if path.exists():
            os.replace(path, path.with_name(path.name + CONFIG_BACKUP_EXTENSION))
        temp_path.replace(path)
