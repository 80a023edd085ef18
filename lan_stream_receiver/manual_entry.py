"""Manually entered stream targets and the recent-address history."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import urlparse

from .metadata import MetadataFetcher
from .models import url_host

_LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 8080
MAX_RECENT = 5


class InvalidTargetError(ValueError):
    """The entered address cannot possibly be a stream URL."""


class TargetUnreachableError(Exception):
    """The peer did not pass its health check."""


@dataclass(frozen=True)
class ManualTarget:
    host: str
    port: int
    # Set when the user typed a complete URL; played as-is.
    url: Optional[str] = None

    @classmethod
    def from_host_port(cls, host: str, port: Union[str, int]) -> "ManualTarget":
        host = (host or "").strip()
        if not host:
            raise InvalidTargetError("Host must not be empty")

        try:
            port_num = int(str(port).strip())
        except ValueError:
            raise InvalidTargetError(f"Port must be a number: {port!r}") from None
        if not 1 <= port_num <= 65535:
            raise InvalidTargetError(f"Port out of range: {port_num}")

        return cls(host=host.strip("[]"), port=port_num)

    @classmethod
    def from_url(cls, url: str) -> "ManualTarget":
        url = (url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise InvalidTargetError(f"Invalid URL format: {url!r}")

        try:
            port = parsed.port
        except ValueError:
            raise InvalidTargetError(f"Invalid port in URL: {url!r}") from None

        return cls(host=parsed.hostname, port=port or DEFAULT_PORT, url=url)

    @classmethod
    def from_recent(cls, entry: str) -> "ManualTarget":
        """Parses an entry written by RecentAddresses."""
        if entry.startswith("http"):
            return cls.from_url(entry)
        host, sep, port = entry.rpartition(":")
        if not sep:
            raise InvalidTargetError(f"Unrecognised recent address: {entry!r}")
        return cls.from_host_port(host, port)

    @property
    def stream_url(self) -> str:
        if self.url:
            return self.url
        return f"http://{url_host(self.host)}:{self.port}/stream"

    @property
    def health_url(self) -> str:
        return f"http://{url_host(self.host)}:{self.port}/health"

    @property
    def history_entry(self) -> str:
        if self.url:
            return self.url
        return f"{url_host(self.host)}:{self.port}"


class RecentAddresses:
    """Most-recent-first list of manually entered addresses, kept in a JSON file."""

    def __init__(self, path: Path, limit: int = MAX_RECENT) -> None:
        self.path = path
        self.limit = limit
        self._entries: List[str] = []

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    def load(self) -> "RecentAddresses":
        if not self.path.exists():
            self._entries = []
            return self

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            _LOGGER.warning("Ignoring unreadable history file %s: %s", self.path, e)
            self._entries = []
            return self

        raw = data.get("recent_addresses", []) if isinstance(data, dict) else []
        self._entries = [str(item) for item in raw if isinstance(item, str)][: self.limit]
        return self

    def add(self, address: str) -> None:
        entries = [a for a in self._entries if a != address]
        entries.insert(0, address)
        self._entries = entries[: self.limit]

    def save(self) -> None:
        # Other keys in the preferences file are preserved.
        data = {}
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data = loaded
            except (OSError, json.JSONDecodeError):
                _LOGGER.debug("Overwriting unreadable history file %s", self.path)

        data["recent_addresses"] = self._entries
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=4)


async def connect_manual(
    target: ManualTarget,
    fetcher: MetadataFetcher,
    history: Optional[RecentAddresses] = None,
) -> str:
    """Health-checks a manual target and returns the URL to play.

    The address is remembered in `history` only when the peer answers 200.
    """
    try:
        healthy = await fetcher.check_health(target.host, target.port)
    except OSError as e:
        raise TargetUnreachableError(f"Could not connect: {e}") from e

    if not healthy:
        raise TargetUnreachableError("Server not responding correctly")

    if history is not None:
        history.add(target.history_entry)
        try:
            history.save()
        except OSError:
            _LOGGER.exception("Failed to save recent addresses to %s", history.path)

    return target.stream_url
