"""Fakes shared by the tests: zeroconf, resolver, HTTP and playback engine."""

import asyncio
from typing import Dict, List, Optional

import pytest
from zeroconf import ServiceStateChange

from lan_stream_receiver.discovery import ResolvedService
from lan_stream_receiver.engine import (
    ItemStatus,
    PlaybackEngine,
    PlaybackEngineError,
    PlaybackItem,
    Player,
    Subscription,
    TransportStatus,
)
from lan_stream_receiver.metadata import MetadataFetcher
from lan_stream_receiver.models import StreamInfo

SERVICE_TYPE = "_iptv-stream._tcp.local."


async def run_turns(count: int = 5) -> None:
    for _ in range(count):
        await asyncio.sleep(0)


# -----------------------------------------------------------------------------
# Zeroconf
# -----------------------------------------------------------------------------


class FakeAsyncZeroconf:
    def __init__(self) -> None:
        self.zeroconf = object()
        self.closed = False

    async def async_close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, zeroconf, service_type, handlers) -> None:
        self.zeroconf = zeroconf
        self.service_type = service_type
        self.handlers = handlers
        self.cancelled = False

    def announce(self, name: str, change: ServiceStateChange = ServiceStateChange.Added) -> None:
        full_name = name if name.endswith(self.service_type) else f"{name}.{self.service_type}"
        for handler in self.handlers:
            handler(
                zeroconf=self.zeroconf,
                service_type=self.service_type,
                name=full_name,
                state_change=change,
            )

    async def async_cancel(self) -> None:
        self.cancelled = True


class FakeNetwork:
    """Records every zeroconf/browser the engine creates."""

    def __init__(self) -> None:
        self.zeroconfs: List[FakeAsyncZeroconf] = []
        self.browsers: List[FakeBrowser] = []

    def zeroconf_factory(self) -> FakeAsyncZeroconf:
        zc = FakeAsyncZeroconf()
        self.zeroconfs.append(zc)
        return zc

    def browser_factory(self, zeroconf, service_type, handlers) -> FakeBrowser:
        browser = FakeBrowser(zeroconf, service_type, handlers)
        self.browsers.append(browser)
        return browser

    @property
    def browser(self) -> FakeBrowser:
        return self.browsers[-1]


class FakeResolver:
    """Resolves from a table, or parks the call on a future when `hold` is set."""

    def __init__(self, table: Optional[Dict[str, ResolvedService]] = None, hold: bool = False) -> None:
        self.table = dict(table or {})
        self.hold = hold
        self.calls: List[str] = []
        self.pending: Dict[str, asyncio.Future] = {}

    async def __call__(self, zeroconf, service_type, name):
        self.calls.append(name)
        short = name[: -len(service_type) - 1] if name.endswith("." + service_type) else name
        if self.hold:
            future = asyncio.get_running_loop().create_future()
            self.pending[short] = future
            return await future
        result = self.table.get(short)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


# -----------------------------------------------------------------------------
# Playback engine
# -----------------------------------------------------------------------------


class FakeItem(PlaybackItem):
    def __init__(self, url: str) -> None:
        self._url = url

    @property
    def url(self) -> str:
        return self._url


class FakePlayer(Player):
    def __init__(self, item: FakeItem, ready_on_play: bool = False) -> None:
        self.item = item
        self.ready_on_play = ready_on_play
        self.play_calls = 0
        self.pause_calls = 0
        self.release_calls = 0
        self.invalidations = 0
        self.item_subs: List[Subscription] = []
        self.transport_subs: List[Subscription] = []
        self._transport = TransportStatus.PAUSED

    def _count_invalidation(self) -> None:
        self.invalidations += 1

    def play(self) -> None:
        self.play_calls += 1
        self._transport = TransportStatus.PLAYING
        if self.ready_on_play:
            self.emit_item(ItemStatus.READY)

    def pause(self) -> None:
        self.pause_calls += 1
        self._transport = TransportStatus.PAUSED

    @property
    def transport_status(self) -> TransportStatus:
        return self._transport

    def observe_item(self, callback) -> Subscription:
        sub = Subscription(callback, on_invalidate=self._count_invalidation)
        self.item_subs.append(sub)
        return sub

    def observe_transport(self, callback) -> Subscription:
        sub = Subscription(callback, on_invalidate=self._count_invalidation)
        self.transport_subs.append(sub)
        return sub

    def release(self) -> None:
        self.release_calls += 1

    def emit_item(self, status: ItemStatus, error: Optional[str] = None) -> None:
        for sub in self.item_subs:
            sub.deliver(status, error)

    def emit_transport(self, status: TransportStatus) -> None:
        self._transport = status
        for sub in self.transport_subs:
            sub.deliver(status)


class FakeEngine(PlaybackEngine):
    def __init__(self, ready_on_play: bool = False, create_error: Optional[str] = None) -> None:
        self.ready_on_play = ready_on_play
        self.create_error = create_error
        self.players: List[FakePlayer] = []

    def create_item(self, url: str) -> FakeItem:
        if self.create_error:
            raise PlaybackEngineError(self.create_error)
        return FakeItem(url)

    def create_player(self, item: PlaybackItem) -> FakePlayer:
        player = FakePlayer(item, ready_on_play=self.ready_on_play)
        self.players.append(player)
        return player

    @property
    def player(self) -> FakePlayer:
        return self.players[-1]


class FakeFetcher(MetadataFetcher):
    def __init__(self, info: Optional[StreamInfo] = None) -> None:
        super().__init__()
        self.info = info
        self.fetched: List[str] = []

    async def fetch(self, endpoint):
        self.fetched.append(endpoint.info_url)
        return self.info


# -----------------------------------------------------------------------------
# HTTP
# -----------------------------------------------------------------------------


class FakeResponse:
    def __init__(self, body: bytes = b"", status: int = 200) -> None:
        self.body = body
        self.status = status

    def read(self, size: int = -1) -> bytes:
        return self.body if size < 0 else self.body[:size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False
