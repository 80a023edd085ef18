"""Data models shared by discovery and playback."""

from __future__ import annotations

import ipaddress
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

# -----------------------------------------------------------------------------
# Host variants
# -----------------------------------------------------------------------------


class HostKind(str, Enum):
    """Address forms a resolved service can report."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    HOSTNAME = "hostname"


def _canonical_ipv4(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        value = value.strip()
    return str(ipaddress.IPv4Address(value))


def _canonical_ipv6(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        addr, sep, zone = ipaddress.IPv6Address(value), "", ""
    else:
        # Keep the zone id (fe80::1%eth0) but normalise the address part.
        text, sep, zone = value.strip().strip("[]").partition("%")
        addr = ipaddress.IPv6Address(text)

    if addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return f"{addr.compressed}{sep}{zone}"


def _canonical_hostname(value: Union[str, bytes]) -> str:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    name = value.strip().rstrip(".").lower()
    if not name:
        raise ValueError("empty hostname")
    return name


_CANONICALIZERS: Dict[HostKind, Callable[[Union[str, bytes]], str]] = {
    HostKind.IPV4: _canonical_ipv4,
    HostKind.IPV6: _canonical_ipv6,
    HostKind.HOSTNAME: _canonical_hostname,
}

# Fails at import time if a kind is added without a canonicalizer.
if set(_CANONICALIZERS) != set(HostKind):
    raise RuntimeError("Every HostKind needs a canonicalizer")


def host_kind(value: Union[str, bytes]) -> HostKind:
    """Works out which address form ``value`` is."""
    if isinstance(value, bytes):
        if len(value) == 4:
            return HostKind.IPV4
        if len(value) == 16:
            return HostKind.IPV6
        return HostKind.HOSTNAME

    text = value.strip()
    try:
        ipaddress.IPv4Address(text)
        return HostKind.IPV4
    except ValueError:
        pass

    try:
        ipaddress.IPv6Address(text.partition("%")[0].strip("[]"))
        return HostKind.IPV6
    except ValueError:
        pass

    return HostKind.HOSTNAME


def canonical_host(value: Union[str, bytes], kind: Optional[HostKind] = None) -> str:
    """Returns the canonical string for a host.

    Packed 4/16 byte addresses (as reported by zeroconf) are accepted too.
    An IPv4-mapped IPv6 address collapses to its IPv4 form so both
    announcements of a dual-stack peer compare equal.
    """
    if kind is None:
        kind = host_kind(value)

    canonicalize = _CANONICALIZERS.get(kind)
    if canonicalize is None:
        raise ValueError(f"Unsupported host kind: {kind!r}")

    return canonicalize(value)


def url_host(host: str) -> str:
    """Host as it must appear in a URL authority."""
    if host_kind(host) == HostKind.IPV6:
        # RFC 6874: the zone separator is percent-encoded inside brackets.
        return "[{}]".format(host.replace("%", "%25"))
    return host


# -----------------------------------------------------------------------------
# Endpoint
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class EndpointRecord:
    """A discovered (or manually entered) stream endpoint."""

    name: str
    host: str
    port: int
    properties: Mapping[str, str] = field(default_factory=dict, compare=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ValueError(f"Port out of range: {self.port!r}")
        if not self.host:
            raise ValueError("Endpoint host must not be empty")

        # Frozen, so go through object.__setattr__ to freeze the mapping too.
        object.__setattr__(self, "properties", MappingProxyType(dict(self.properties)))

    @property
    def address(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def same_endpoint(self, other: "EndpointRecord") -> bool:
        return self.address == other.address

    def url(self, suffix: str) -> str:
        return f"http://{url_host(self.host)}:{self.port}/{suffix.lstrip('/')}"

    @property
    def stream_url(self) -> str:
        return self.url("stream")

    @property
    def info_url(self) -> str:
        return self.url("info")

    @property
    def health_url(self) -> str:
        return self.url("health")


# -----------------------------------------------------------------------------
# Metadata
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamInfo:
    """Descriptive metadata served by a peer's /info endpoint."""

    title: Optional[str] = None
    type: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "StreamInfo":
        def _text(key: str) -> Optional[str]:
            value = data.get(key)
            return value if isinstance(value, str) else None

        return cls(title=_text("title"), type=_text("type"), image=_text("image"))


# -----------------------------------------------------------------------------
# Published state snapshots
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DiscoveryState:
    browsing: bool = False
    endpoints: Tuple[EndpointRecord, ...] = ()
    error: Optional[str] = None


class PlaybackPhase(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(frozen=True)
class PlaybackState:
    phase: PlaybackPhase = PlaybackPhase.IDLE
    loading: bool = False
    playing: bool = False
    error: Optional[str] = None
    info: Optional[StreamInfo] = None
    target_url: Optional[str] = None
