"""
PlaybackEngine backed by mpv (python-mpv).

Each player owns one mpv instance bound to one stream URL:
- item readiness comes from the `file-loaded` event
- item failure comes from `end-file` with an error reason
- transport state is derived from the `pause`, `paused-for-cache`
  and `core-idle` properties

mpv delivers events and property changes on its own thread; observers are
called from there and must hand work to their own loop.
"""
from __future__ import annotations

import logging
import os
from threading import Event, Lock, Thread
from typing import Any, Dict, List, Optional

# Note: python-mpv must be installed; imported at runtime.
from mpv import MPV

from .config import PlaybackConfig
from .engine import (
    ItemCallback,
    ItemStatus,
    PlaybackEngine,
    PlaybackEngineError,
    PlaybackItem,
    Player,
    Subscription,
    TransportCallback,
    TransportStatus,
)

_LOGGER = logging.getLogger(__name__)

_END_FILE_ERROR = 4  # MPV_END_FILE_REASON_ERROR
_TRANSPORT_PROPERTIES = ("pause", "paused-for-cache", "core-idle")


def _event_dict(event: Any) -> Dict[str, Any]:
    # python-mpv hands out MpvEvent objects (1.x) or plain dicts (older releases).
    if isinstance(event, dict):
        return event
    try:
        return event.as_dict()
    except Exception:
        _LOGGER.debug("Could not decode mpv event %r", event, exc_info=True)
        return {}


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


class MpvItem(PlaybackItem):
    def __init__(self, url: str) -> None:
        self._url = url

    @property
    def url(self) -> str:
        return self._url


class MpvPlayer(Player):
    """A single mpv instance playing a single stream."""

    def __init__(self, item: MpvItem, config: Optional[PlaybackConfig] = None) -> None:
        self.item = item
        config = config or PlaybackConfig()

        self.player = MPV(
            video=config.video,
            terminal=False,
            log_handler=self._mpv_log,
            keep_open="no",
            cache="yes" if config.cache else "no",
            network_timeout=config.network_timeout,
            msg_level=os.environ.get("LSR_MPV_MSG_LEVEL", "all=warn"),
        )

        # Optional: allow forcing ao via environment for power users/debugging.
        ao_env = os.environ.get("LSR_AO")
        if ao_env:
            try:
                self.player["ao"] = ao_env
                _LOGGER.info("Forcing mpv ao=%r from LSR_AO", ao_env)
            except Exception:
                _LOGGER.exception("Failed to set mpv ao=%r", ao_env)

        # If the caller provided a specific device, honor it directly.
        if config.output_device:
            try:
                self.player["audio-device"] = config.output_device
                _LOGGER.info("Using mpv audio-device=%r", config.output_device)
            except Exception:
                _LOGGER.exception("Failed to set mpv audio-device %r", config.output_device)

        self._lock = Lock()
        self._loaded = False
        self._started = False
        self._released = False
        # Set once mpv has shut down after release().
        self.terminated = Event()
        self._props: Dict[str, Any] = {"pause": False, "paused-for-cache": False, "core-idle": True}
        self._transport = TransportStatus.WAITING

        self._item_subs: List[Subscription] = []
        self._transport_subs: List[Subscription] = []

        self.player.register_event_callback(self._on_event)
        for name in _TRANSPORT_PROPERTIES:
            self.player.observe_property(name, self._on_property)

    # -------------------------------------------------------------------------
    # Player API
    # -------------------------------------------------------------------------

    def play(self) -> None:
        with self._lock:
            if self._released:
                return
            first = not self._started
            self._started = True

        try:
            if first:
                self.player.play(self.item.url)
            self.player.pause = False
        except Exception as e:
            raise PlaybackEngineError(f"mpv could not play {self.item.url}: {e}") from e

    def pause(self) -> None:
        try:
            self.player.pause = True
        except Exception:
            _LOGGER.exception("pause() failed")

    @property
    def transport_status(self) -> TransportStatus:
        with self._lock:
            return self._transport

    def observe_item(self, callback: ItemCallback) -> Subscription:
        sub = Subscription(callback, on_invalidate=lambda: self._detach(self._item_subs, sub))
        with self._lock:
            self._item_subs.append(sub)
        return sub

    def observe_transport(self, callback: TransportCallback) -> Subscription:
        sub = Subscription(callback, on_invalidate=lambda: self._detach(self._transport_subs, sub))
        with self._lock:
            self._transport_subs.append(sub)
        return sub

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
            subs = self._item_subs + self._transport_subs
            self._item_subs = []
            self._transport_subs = []

        for sub in subs:
            sub.invalidate()

        try:
            for name in _TRANSPORT_PROPERTIES:
                self.player.unobserve_property(name, self._on_property)
            self.player.unregister_event_callback(self._on_event)
        except Exception:
            _LOGGER.debug("Failed to detach mpv observers", exc_info=True)

        # terminate() joins mpv's event thread, so it must not run on the caller's loop.
        Thread(target=self._terminate, name="mpv-terminate").start()

    def _terminate(self) -> None:
        try:
            self.player.terminate()
        except Exception:
            _LOGGER.exception("terminate() failed")
        finally:
            self.terminated.set()

    # -------------------------------------------------------------------------
    # Internal callbacks (mpv event thread)
    # -------------------------------------------------------------------------

    def _detach(self, subs: List[Subscription], sub: Subscription) -> None:
        with self._lock:
            if sub in subs:
                subs.remove(sub)

    def _notify_item(self, status: ItemStatus, error: Optional[str] = None) -> None:
        with self._lock:
            subs = list(self._item_subs)
        for sub in subs:
            sub.deliver(status, error)

    def _on_event(self, event: Any) -> None:
        data = _event_dict(event)
        name = _text(data.get("event", ""))

        if name == "start-file":
            with self._lock:
                self._loaded = False
            self._notify_item(ItemStatus.UNKNOWN)
        elif name == "file-loaded":
            with self._lock:
                self._loaded = True
            _LOGGER.debug("mpv loaded %s", self.item.url)
            self._notify_item(ItemStatus.READY)
            self._update_transport()
        elif name == "end-file":
            # Older python-mpv nests the payload under "data"; newer flattens it.
            end = data.get("data") if isinstance(data.get("data"), dict) else data
            reason = end.get("reason")
            if reason == _END_FILE_ERROR or _text(reason) == "error":
                # python-mpv 1.x reports the text as file_error; "error" is the raw code.
                message = None
                if end.get("file_error") is not None:
                    message = _text(end["file_error"])
                elif end.get("error") is not None:
                    message = f"mpv error {_text(end['error'])}"
                self._notify_item(ItemStatus.FAILED, message)

    def _on_property(self, name: str, value: Any) -> None:
        with self._lock:
            self._props[name] = bool(value)
        self._update_transport()

    def _update_transport(self) -> None:
        with self._lock:
            if not self._loaded:
                return
            if self._props.get("pause"):
                status = TransportStatus.PAUSED
            elif self._props.get("paused-for-cache") or self._props.get("core-idle"):
                status = TransportStatus.WAITING
            else:
                status = TransportStatus.PLAYING

            if status == self._transport:
                return
            self._transport = status
            subs = list(self._transport_subs)

        for sub in subs:
            sub.deliver(status)

    def _mpv_log(self, level: str, prefix: str, text: str) -> None:
        """Routes mpv's internal logs to our logger."""
        msg = f"mpv[{prefix}]: {text}".rstrip()
        if level in ("fatal", "error"):
            _LOGGER.error(msg)
        elif level == "warn":
            _LOGGER.warning(msg)
        elif level == "info":
            _LOGGER.info(msg)
        else:
            _LOGGER.debug(msg)


class MpvPlaybackEngine(PlaybackEngine):
    """Creates one mpv instance per playback attempt."""

    def __init__(self, config: Optional[PlaybackConfig] = None) -> None:
        self.config = config or PlaybackConfig()

    def create_item(self, url: str) -> MpvItem:
        if not url:
            raise PlaybackEngineError("Empty stream URL")
        return MpvItem(url)

    def create_player(self, item: PlaybackItem) -> MpvPlayer:
        if not isinstance(item, MpvItem):
            item = MpvItem(item.url)
        try:
            return MpvPlayer(item, self.config)
        except Exception as e:
            raise PlaybackEngineError(f"Could not start mpv: {e}") from e
