"""Abstract playback engine capability consumed by PlaybackSession."""

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional

_LOGGER = logging.getLogger(__name__)


class PlaybackEngineError(Exception):
    """The engine could not create an item or player."""


class ItemStatus(str, Enum):
    UNKNOWN = "unknown"
    READY = "ready"
    FAILED = "failed"


class TransportStatus(str, Enum):
    PAUSED = "paused"
    WAITING = "waiting"  # buffering / waiting to play
    PLAYING = "playing"


# callback(status, error_message)
ItemCallback = Callable[[ItemStatus, Optional[str]], None]
TransportCallback = Callable[[TransportStatus], None]


class Subscription:
    """
    Handle for one engine observer.

    invalidate() is idempotent and, once it returns, deliver() is a no-op,
    even when the engine calls it from its own thread.
    """

    def __init__(self, callback: Callable[..., None], on_invalidate: Optional[Callable[[], None]] = None):
        self._callback: Optional[Callable[..., None]] = callback
        self._on_invalidate = on_invalidate
        self._lock = threading.RLock()

    @property
    def active(self) -> bool:
        return self._callback is not None

    def deliver(self, *args) -> None:
        with self._lock:
            callback = self._callback
            if callback is None:
                return
            try:
                callback(*args)
            except Exception:
                _LOGGER.exception("Error in playback observer")

    def invalidate(self) -> None:
        with self._lock:
            if self._callback is None:
                return
            self._callback = None
            on_invalidate, self._on_invalidate = self._on_invalidate, None

        if on_invalidate is not None:
            try:
                on_invalidate()
            except Exception:
                _LOGGER.exception("Error detaching playback observer")


class PlaybackItem(ABC):
    """A playable item built from a URL."""

    @property
    @abstractmethod
    def url(self) -> str:
        pass


class Player(ABC):
    """A player bound to a single item."""

    @abstractmethod
    def play(self) -> None:
        pass

    @abstractmethod
    def pause(self) -> None:
        pass

    @property
    @abstractmethod
    def transport_status(self) -> TransportStatus:
        pass

    @abstractmethod
    def observe_item(self, callback: ItemCallback) -> Subscription:
        """Subscribes to item readiness/failure."""
        pass

    @abstractmethod
    def observe_transport(self, callback: TransportCallback) -> Subscription:
        """Subscribes to play/pause/buffering transitions."""
        pass

    @abstractmethod
    def release(self) -> None:
        """Frees the player; it must not be used afterwards."""
        pass


class PlaybackEngine(ABC):
    """Factory for items and players."""

    @abstractmethod
    def create_item(self, url: str) -> PlaybackItem:
        pass

    @abstractmethod
    def create_player(self, item: PlaybackItem) -> Player:
        pass
