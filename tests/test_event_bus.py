"""Tests for the event bus and observable state."""

from dataclasses import dataclass

from lan_stream_receiver.event_bus import EventBus, EventHandler, ObservableState, subscribe


@dataclass(frozen=True)
class Snapshot:
    value: int = 0


def test_publish_reaches_every_listener() -> None:
    bus = EventBus()
    seen = []

    def broken(_data):
        raise RuntimeError("listener bug")

    bus.subscribe("topic", broken)
    bus.subscribe("topic", seen.append)
    bus.publish("topic", {"x": 1})

    assert seen == [{"x": 1, "__topic": "topic"}]


def test_unsubscribe() -> None:
    bus = EventBus()
    seen = []
    bus.subscribe("topic", seen.append)
    bus.unsubscribe("topic", seen.append)
    bus.unsubscribe("other", seen.append)
    bus.publish("topic")
    assert seen == []


def test_event_handler_subscribes_decorated_methods() -> None:
    class Handler(EventHandler):
        def __init__(self, event_bus):
            self.calls = []
            super().__init__(event_bus)

        @subscribe
        def playback_state(self, data):
            self.calls.append(data["state"])

        def not_subscribed(self, data):
            self.calls.append("nope")

    bus = EventBus()
    handler = Handler(bus)
    bus.publish("playback_state", {"state": "idle"})
    bus.publish("not_subscribed", {})

    assert handler.calls == ["idle"]


def test_observable_state_versions() -> None:
    bus = EventBus()
    seen = []
    bus.subscribe("snapshot", seen.append)
    state = ObservableState(Snapshot(), bus, "snapshot")

    state.set(Snapshot(1))
    state.set(Snapshot(1))
    state.set(Snapshot(2))

    assert state.value == Snapshot(2)
    assert state.version == 2
    assert [(d["state"].value, d["version"]) for d in seen] == [(1, 1), (2, 2)]


def test_observable_state_without_bus() -> None:
    state = ObservableState(Snapshot())
    state.set(Snapshot(3))
    assert state.version == 1
