"""
Playback session: one attempt to play a stream through a PlaybackEngine.

States: IDLE -> LOADING -> {PLAYING, FAILED}, PLAYING <-> PAUSED,
FAILED -> LOADING on retry (start() again), anything -> IDLE on stop().

Engine observers may fire from any thread. Their events are posted into one
asyncio.Queue and applied by a single pump task on the event loop, tagged
with the attempt generation so events from a torn-down attempt are dropped.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass, replace
from typing import Optional, Union

from .engine import (
    ItemStatus,
    PlaybackEngine,
    PlaybackEngineError,
    Player,
    Subscription,
    TransportStatus,
)
from .event_bus import EventBus, ObservableState
from .metadata import MetadataFetcher
from .models import EndpointRecord, PlaybackPhase, PlaybackState

_LOGGER = logging.getLogger(__name__)

PLAYBACK_STATE_TOPIC = "playback_state"
DEFAULT_ERROR = "Playback failed"

Target = Union[EndpointRecord, str]


@dataclass(frozen=True)
class _ItemEvent:
    generation: int
    status: ItemStatus
    error: Optional[str] = None


@dataclass(frozen=True)
class _TransportEvent:
    generation: int
    status: TransportStatus


class PlaybackSession:
    """Drives one stream through the engine and exposes a PlaybackState."""

    def __init__(
        self,
        engine: PlaybackEngine,
        *,
        fetcher: Optional[MetadataFetcher] = None,
        event_bus: Optional[EventBus] = None,
    ) -> None:
        self._engine = engine
        self._fetcher = fetcher or MetadataFetcher()
        self._state: ObservableState[PlaybackState] = ObservableState(
            PlaybackState(), event_bus, PLAYBACK_STATE_TOPIC
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None

        self._player: Optional[Player] = None
        self._item_sub: Optional[Subscription] = None
        self._transport_sub: Optional[Subscription] = None
        self._info_task: Optional[asyncio.Task] = None

        self._target: Optional[Target] = None
        self._generation = 0
        self._closed = False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> PlaybackState:
        return self._state.value

    @property
    def observable(self) -> ObservableState[PlaybackState]:
        return self._state

    @property
    def player(self) -> Optional[Player]:
        return self._player

    def start(self, target: Target) -> None:
        """Starts (or retries) playback of an endpoint or a raw stream URL.

        Must be called from the event loop. Metadata is fetched in the
        background and never delays or aborts playback.
        """
        if self._closed:
            raise RuntimeError("PlaybackSession is closed")

        if isinstance(target, EndpointRecord):
            url = target.stream_url
        else:
            url = str(target)

        # A previous attempt (failed or not) is never reused.
        self._teardown()
        self._ensure_pump()

        self._generation += 1
        generation = self._generation
        self._target = target

        self._state.set(PlaybackState(phase=PlaybackPhase.LOADING, loading=True, target_url=url))
        _LOGGER.info("Starting playback of %s", url)

        if isinstance(target, EndpointRecord):
            self._info_task = asyncio.get_running_loop().create_task(self._fetch_info(generation, target))

        try:
            item = self._engine.create_item(url)
            player = self._engine.create_player(item)
        except PlaybackEngineError as e:
            _LOGGER.error("Could not create player for %s: %s", url, e)
            self._fail(str(e))
            return

        self._player = player
        self._item_sub = player.observe_item(functools.partial(self._post_item, generation))
        self._transport_sub = player.observe_transport(functools.partial(self._post_transport, generation))

        try:
            player.play()
        except PlaybackEngineError as e:
            _LOGGER.error("Could not start playback of %s: %s", url, e)
            self._teardown()
            self._fail(str(e))

    def retry(self) -> None:
        """Starts the last target again from scratch."""
        if self._target is None:
            return
        self.start(self._target)

    def toggle_play_pause(self) -> None:
        player = self._player
        if player is None:
            return

        if player.transport_status == TransportStatus.PLAYING:
            player.pause()
        else:
            player.play()

    def stop(self) -> None:
        """Releases the engine and resets to IDLE. Safe to call repeatedly."""
        self._teardown()
        self._state.set(PlaybackState())

    def close(self) -> None:
        """Stops playback and shuts down event delivery for good."""
        if self._closed:
            return
        self.stop()
        self._closed = True

        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None

    async def settle(self) -> None:
        """Waits until every engine event posted so far has been applied."""
        # Let call_soon_threadsafe() callbacks queued before now run first.
        await asyncio.sleep(0)
        if self._events is not None:
            await self._events.join()

    async def wait_for_info(self) -> None:
        """Waits for the current metadata fetch, if any, to finish."""
        task = self._info_task
        if task is not None:
            await asyncio.wait({task})

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _ensure_pump(self) -> None:
        if self._pump_task is not None and not self._pump_task.done():
            return

        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._pump_task = self._loop.create_task(self._pump(self._events))

    def _teardown(self) -> None:
        self._generation += 1

        # Observers go first so nothing can land in a released session.
        item_sub, self._item_sub = self._item_sub, None
        transport_sub, self._transport_sub = self._transport_sub, None
        for sub in (item_sub, transport_sub):
            if sub is not None:
                sub.invalidate()

        player, self._player = self._player, None
        if player is not None:
            try:
                player.pause()
            except Exception:
                _LOGGER.exception("pause() failed during teardown")
            try:
                player.release()
            except Exception:
                _LOGGER.exception("release() failed during teardown")

        info_task, self._info_task = self._info_task, None
        if info_task is not None and not info_task.done():
            info_task.cancel()

    def _fail(self, message: Optional[str]) -> None:
        self._state.set(
            replace(
                self._state.value,
                phase=PlaybackPhase.FAILED,
                loading=False,
                playing=False,
                error=message or DEFAULT_ERROR,
            )
        )

    # Engine callbacks: may run on the engine's own thread.

    def _post_item(self, generation: int, status: ItemStatus, error: Optional[str] = None) -> None:
        self._post(_ItemEvent(generation, status, error))

    def _post_transport(self, generation: int, status: TransportStatus) -> None:
        self._post(_TransportEvent(generation, status))

    def _post(self, event) -> None:
        loop, events = self._loop, self._events
        if loop is None or events is None:
            return
        try:
            loop.call_soon_threadsafe(events.put_nowait, event)
        except RuntimeError:
            # Loop already closed; the session is going away.
            _LOGGER.debug("Dropping playback event %s", event)

    async def _pump(self, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            try:
                if event.generation != self._generation:
                    _LOGGER.debug("Dropping stale playback event %s", event)
                elif isinstance(event, _ItemEvent):
                    self._on_item(event)
                else:
                    self._on_transport(event)
            except Exception:
                _LOGGER.exception("Error applying playback event %s", event)
            finally:
                events.task_done()

    def _on_item(self, event: _ItemEvent) -> None:
        state = self._state.value
        if event.status == ItemStatus.READY:
            _LOGGER.info("Stream ready: %s", state.target_url)
            self._state.set(
                replace(state, phase=PlaybackPhase.PLAYING, loading=False, playing=True, error=None)
            )
        elif event.status == ItemStatus.FAILED:
            _LOGGER.warning("Playback of %s failed: %s", state.target_url, event.error or DEFAULT_ERROR)
            self._fail(event.error)
        elif event.status == ItemStatus.UNKNOWN and state.phase != PlaybackPhase.FAILED:
            # The engine is (re)opening the item.
            self._state.set(replace(state, loading=True))

    def _on_transport(self, event: _TransportEvent) -> None:
        state = self._state.value
        if state.phase == PlaybackPhase.FAILED:
            # A failed engine instance is dead; only a retry revives the session.
            return

        if event.status == TransportStatus.PLAYING:
            self._state.set(replace(state, phase=PlaybackPhase.PLAYING, loading=False, playing=True))
        elif event.status == TransportStatus.PAUSED:
            self._state.set(replace(state, phase=PlaybackPhase.PAUSED, loading=False, playing=False))
        elif event.status == TransportStatus.WAITING:
            self._state.set(replace(state, loading=True))

    async def _fetch_info(self, generation: int, endpoint: EndpointRecord) -> None:
        try:
            info = await self._fetcher.fetch(endpoint)
        except asyncio.CancelledError:
            raise
        except Exception:
            _LOGGER.debug("Stream info fetch for %s failed", endpoint.info_url, exc_info=True)
            return

        if info is None or generation != self._generation:
            return

        self._state.set(replace(self._state.value, info=info))
