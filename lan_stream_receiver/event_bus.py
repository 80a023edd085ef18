import logging
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """A simple synchronous publish/subscribe event bus."""

    def __init__(self):
        # A dictionary to hold listeners for specific string topics
        self.topics: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        """
        Subscribes a listener to a topic.
        """
        if topic not in self.topics:
            self.topics[topic] = []
        self.topics[topic].append(listener)

    def unsubscribe(self, topic: str, listener: Callable[[Any], None]) -> None:
        listeners = self.topics.get(topic, [])
        if listener in listeners:
            listeners.remove(listener)

    def publish(self, topic: str, data: Optional[Dict[str, Any]] = None) -> None:
        """
        Publishes an event to all subscribed listeners.
        """
        if data is None:
            data = {}

        data["__topic"] = topic

        # Copy so a listener may unsubscribe itself while we iterate.
        listeners = list(self.topics.get(topic, []))
        for listener in listeners:
            try:
                listener(data)
            except Exception:
                _LOGGER.exception("Error in event listener for topic %s", topic)


class ObservableState(Generic[T]):
    """
    Holds an immutable state snapshot and announces every replacement.

    Each call to set() bumps `version` and publishes
    {"state": snapshot, "version": n} on `topic`. Snapshots are frozen
    dataclasses, so readers can keep them without copying.
    """

    def __init__(self, initial: T, event_bus: Optional[EventBus] = None, topic: str = "state"):
        self._value = initial
        self._version = 0
        self._event_bus = event_bus
        self._topic = topic

    @property
    def value(self) -> T:
        return self._value

    @property
    def version(self) -> int:
        return self._version

    @property
    def topic(self) -> str:
        return self._topic

    def set(self, value: T) -> None:
        if value == self._value:
            return

        self._value = value
        self._version += 1

        if self._event_bus is not None:
            self._event_bus.publish(self._topic, {"state": value, "version": self._version})


# Client helpers for subscriptions

def subscribe(func: Callable) -> Callable:
    """Decorator to mark a method for event bus subscription."""
    func._event_bus_subscribe = True
    return func

class EventHandler:
    """
    A base class for components that subscribe to events.
    """
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._subscribe_all_methods()

    def _subscribe_all_methods(self):
        """Finds and subscribes all methods decorated with @subscribe."""
        for method_name in dir(self):
            method = getattr(self, method_name)

            if hasattr(method, '_event_bus_subscribe'):
                # The topic is the name of the method itself.
                self.event_bus.subscribe(method_name, method)
                _LOGGER.debug("Subscribed method '%s' to topic '%s'", method_name, method_name)
