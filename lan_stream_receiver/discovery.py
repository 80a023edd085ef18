"""Continuous mDNS/DNS-SD discovery of stream peers.

The engine keeps one long-lived zeroconf browser open and resolves every
announced instance in its own task. Resolved endpoints are published as an
ordered, (host, port)-deduplicated tuple on an ObservableState.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .config import DEFAULT_SERVICE_TYPE
from .event_bus import EventBus, ObservableState
from .models import DiscoveryState, EndpointRecord, canonical_host

_LOGGER = logging.getLogger(__name__)

DISCOVERY_STATE_TOPIC = "discovery_state"


@dataclass(frozen=True)
class ResolvedService:
    """Where a service instance can actually be reached."""
    host: str
    port: int
    properties: Dict[str, str] = field(default_factory=dict)


# resolver(zeroconf, service_type, instance_name) -> ResolvedService | None
Resolver = Callable[[Any, str, str], Awaitable[Optional[ResolvedService]]]


def _decode_properties(props: Optional[Dict[bytes, Optional[bytes]]]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    if not props:
        return out
    for k, v in props.items():
        ks = k.decode("utf-8", errors="ignore") if isinstance(k, bytes) else str(k)
        if not ks:
            continue
        if v is None:
            vs = ""
        elif isinstance(v, bytes):
            vs = v.decode("utf-8", errors="ignore")
        else:
            vs = str(v)
        out[ks] = vs
    return out


def instance_display_name(name: str, service_type: str) -> str:
    """'Desktop-1._iptv-stream._tcp.local.' -> 'Desktop-1'"""
    suffix = "." + service_type
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name.rstrip(".")


class ZeroconfResolver:
    """
    Resolves a service instance name to a connectable (host, port).

    zeroconf supplies the SRV/TXT/A/AAAA records; with `verify_connection`
    a short-lived TCP connection is then opened to the advertised addresses
    and the negotiated peer address is what gets reported.
    """

    def __init__(self, request_timeout_ms: int = 3000, verify_connection: bool = True) -> None:
        self.request_timeout_ms = request_timeout_ms
        self.verify_connection = verify_connection

    async def __call__(self, zeroconf: Any, service_type: str, name: str) -> Optional[ResolvedService]:
        info = AsyncServiceInfo(service_type, name)
        ok = await info.async_request(zeroconf, timeout=self.request_timeout_ms)
        if not ok or not info.port:
            _LOGGER.debug("No usable records for %s", name)
            return None

        port = int(info.port)
        props = _decode_properties(info.properties)

        candidates: List[str] = list(info.parsed_scoped_addresses(IPVersion.All))
        if not candidates and info.server:
            candidates = [info.server]
        if not candidates:
            _LOGGER.debug("No addresses advertised for %s", name)
            return None

        if not self.verify_connection:
            return ResolvedService(host=candidates[0], port=port, properties=props)

        for host in candidates:
            peer = await self._connect(host, port)
            if peer is not None:
                return ResolvedService(host=peer[0], port=peer[1], properties=props)

        _LOGGER.debug("No advertised address of %s accepted a connection", name)
        return None

    async def _connect(self, host: str, port: int) -> Optional[Tuple[str, int]]:
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.request_timeout_ms / 1000
            )
        except (OSError, asyncio.TimeoutError) as err:
            _LOGGER.debug("Connection to %s:%s failed: %s", host, port, err)
            return None

        try:
            peer = writer.get_extra_info("peername")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                _LOGGER.debug("Error closing probe connection to %s:%s", host, port, exc_info=True)

        if not peer:
            return (host, port)
        return (str(peer[0]), int(peer[1]))


class DiscoveryEngine:
    """Keeps a live, deduplicated set of endpoints for one service type."""

    def __init__(
        self,
        service_type: str = DEFAULT_SERVICE_TYPE,
        *,
        event_bus: Optional[EventBus] = None,
        resolver: Optional[Resolver] = None,
        resolve_timeout: Optional[float] = None,
        zeroconf_factory: Callable[[], Any] = AsyncZeroconf,
        browser_factory: Callable[..., Any] = AsyncServiceBrowser,
    ) -> None:
        self.service_type = service_type
        self.resolve_timeout = resolve_timeout

        self._resolver: Resolver = resolver or ZeroconfResolver()
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory

        self._state: ObservableState[DiscoveryState] = ObservableState(
            DiscoveryState(), event_bus, DISCOVERY_STATE_TOPIC
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._aiozc: Optional[Any] = None
        self._browser: Optional[Any] = None
        self._resolutions: Set[asyncio.Task] = set()
        # Bumped on every start/stop; resolutions from an older generation are discarded.
        self._generation = 0
        self._changed: Optional[asyncio.Event] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> DiscoveryState:
        return self._state.value

    @property
    def observable(self) -> ObservableState[DiscoveryState]:
        return self._state

    @property
    def endpoints(self) -> Tuple[EndpointRecord, ...]:
        return self._state.value.endpoints

    @property
    def browsing(self) -> bool:
        return self._state.value.browsing

    @property
    def in_flight(self) -> int:
        """Number of resolutions currently running."""
        return len(self._resolutions)

    async def start(self) -> None:
        """(Re)starts browsing with an empty endpoint set."""
        if self._browser is not None or self._aiozc is not None or self._resolutions:
            _LOGGER.debug("Discovery already running; restarting")
        await self.stop()

        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()
        self._generation += 1

        self._state.set(DiscoveryState(browsing=True, endpoints=(), error=None))
        _LOGGER.info("Browsing for %s", self.service_type)

        try:
            self._aiozc = self._zeroconf_factory()
            self._browser = self._browser_factory(
                self._aiozc.zeroconf,
                self.service_type,
                handlers=[self._on_service_state_change],
            )
        except Exception as err:
            _LOGGER.error("Browse for %s failed: %s", self.service_type, err)
            await self._browse_failed(f"Browse failed: {err}")

    async def stop(self) -> None:
        """Cancels the browse and every in-flight resolution."""
        self._generation += 1

        browser, self._browser = self._browser, None
        aiozc, self._aiozc = self._aiozc, None
        tasks = list(self._resolutions)
        self._resolutions.clear()

        # Publish the stopped state before awaiting anything.
        error = self._state.value.error
        self._state.set(DiscoveryState(browsing=False, endpoints=(), error=error))
        self._notify_changed()

        for task in tasks:
            task.cancel()

        if browser is not None:
            try:
                await browser.async_cancel()
            except Exception:
                _LOGGER.debug("Error cancelling browser", exc_info=True)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if aiozc is not None:
            try:
                await aiozc.async_close()
            except Exception:
                _LOGGER.debug("Error closing zeroconf", exc_info=True)
            _LOGGER.info("Stopped browsing for %s", self.service_type)

    async def wait_for_endpoints(
        self, count: int = 1, timeout: Optional[float] = None
    ) -> Tuple[EndpointRecord, ...]:
        """Waits until at least `count` endpoints are known, browsing ends, or timeout."""

        async def _wait() -> None:
            while len(self.endpoints) < count and self.browsing:
                changed = self._changed
                if changed is None:
                    return
                await changed.wait()
                changed.clear()

        try:
            await asyncio.wait_for(_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

        return self.endpoints

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    # IMPORTANT: zeroconf calls handlers using keyword args.
    # So this handler must accept those parameter names.
    def _on_service_state_change(
        self,
        zeroconf: Any,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Removed:
            # Records stay published until discovery is stopped or restarted.
            _LOGGER.debug("Service removed: %s", name)
            return

        if state_change not in (ServiceStateChange.Added, ServiceStateChange.Updated):
            return

        if self._loop is None or self._aiozc is None:
            return

        generation = self._generation
        task = self._loop.create_task(self._resolve(generation, zeroconf, service_type, name))
        self._resolutions.add(task)
        task.add_done_callback(self._resolutions.discard)
        _LOGGER.debug("Resolving %s (%s)", name, state_change.name)

    async def _resolve(self, generation: int, zeroconf: Any, service_type: str, name: str) -> None:
        try:
            if self.resolve_timeout is not None:
                resolved = await asyncio.wait_for(
                    self._resolver(zeroconf, service_type, name), timeout=self.resolve_timeout
                )
            else:
                resolved = await self._resolver(zeroconf, service_type, name)
        except asyncio.CancelledError:
            _LOGGER.debug("Resolution of %s cancelled", name)
            raise
        except asyncio.TimeoutError:
            _LOGGER.debug("Resolution of %s timed out", name)
            return
        except Exception:
            _LOGGER.debug("Failed to resolve %s", name, exc_info=True)
            return

        if resolved is None:
            return

        if generation != self._generation:
            _LOGGER.debug("Discarding late resolution of %s", name)
            return

        self._add_endpoint(name, service_type, resolved)

    def _add_endpoint(self, name: str, service_type: str, resolved: ResolvedService) -> None:
        # Runs synchronously on the loop, so check-then-insert cannot interleave.
        try:
            record = EndpointRecord(
                name=instance_display_name(name, service_type),
                host=canonical_host(resolved.host),
                port=int(resolved.port),
                properties=resolved.properties,
            )
        except ValueError as err:
            _LOGGER.debug("Ignoring unusable resolution of %s: %s", name, err)
            return

        current = self._state.value
        if any(existing.same_endpoint(record) for existing in current.endpoints):
            _LOGGER.debug("Already have %s:%s; skipping %s", record.host, record.port, name)
            return

        self._state.set(replace(current, endpoints=current.endpoints + (record,)))
        self._notify_changed()
        _LOGGER.info("Discovered %s at %s:%s", record.name, record.host, record.port)

    async def _browse_failed(self, message: str) -> None:
        await self.stop()
        self._state.set(replace(self._state.value, browsing=False, error=message))

    def _notify_changed(self) -> None:
        if self._changed is not None:
            self._changed.set()
