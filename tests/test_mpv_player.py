"""Tests for the mpv-backed playback engine, with mpv itself replaced."""

import asyncio

import pytest

from lan_stream_receiver.config import PlaybackConfig
from lan_stream_receiver.engine import ItemStatus, PlaybackEngineError, TransportStatus
from lan_stream_receiver.models import PlaybackPhase
from lan_stream_receiver.session import PlaybackSession

try:
    from lan_stream_receiver import mpv_player
except (ImportError, OSError):
    pytest.skip("python-mpv / libmpv not available", allow_module_level=True)

URL = "http://192.168.1.50:8080/stream"


class FakeMPV:
    instances = []

    def __init__(self, *args, **kwargs) -> None:
        self.args = args
        self.kwargs = kwargs
        self.options = {}
        self.played = []
        self.pause = False
        self.event_callbacks = []
        self.property_observers = {}
        self.terminate_calls = 0
        FakeMPV.instances.append(self)

    def __setitem__(self, key, value) -> None:
        self.options[key] = value

    def play(self, url) -> None:
        self.played.append(url)

    def register_event_callback(self, callback) -> None:
        self.event_callbacks.append(callback)

    def unregister_event_callback(self, callback) -> None:
        self.event_callbacks.remove(callback)

    def observe_property(self, name, handler) -> None:
        self.property_observers.setdefault(name, []).append(handler)

    def unobserve_property(self, name, handler) -> None:
        self.property_observers[name].remove(handler)

    def terminate(self) -> None:
        self.terminate_calls += 1

    # Test helpers

    def fire(self, **event) -> None:
        for callback in list(self.event_callbacks):
            callback(event)

    def set_property(self, name, value) -> None:
        for handler in list(self.property_observers.get(name, [])):
            handler(name, value)


@pytest.fixture
def fake_mpv(monkeypatch):
    FakeMPV.instances = []
    monkeypatch.delenv("LSR_AO", raising=False)
    monkeypatch.setattr(mpv_player, "MPV", FakeMPV)
    return FakeMPV


def _player(config=None):
    engine = mpv_player.MpvPlaybackEngine(config)
    player = engine.create_player(engine.create_item(URL))
    items, transports = [], []
    player.observe_item(lambda status, error: items.append((status, error)))
    player.observe_transport(transports.append)
    return player, items, transports


def test_mpv_options(fake_mpv, monkeypatch) -> None:
    monkeypatch.setenv("LSR_AO", "alsa")
    player, _items, _transports = _player(
        PlaybackConfig(output_device="pulse/hdmi", video=False, network_timeout=3, cache=False)
    )
    mpv = player.player

    assert mpv.kwargs["video"] is False
    assert mpv.kwargs["cache"] == "no"
    assert mpv.kwargs["network_timeout"] == 3
    assert mpv.options == {"ao": "alsa", "audio-device": "pulse/hdmi"}


def test_play_loads_the_url_once(fake_mpv) -> None:
    player, _items, _transports = _player()
    mpv = player.player
    mpv.pause = True

    player.play()
    player.play()

    assert mpv.played == [URL]
    assert mpv.pause is False

    player.pause()
    assert mpv.pause is True


def test_file_loaded_is_ready(fake_mpv) -> None:
    player, items, _transports = _player()
    player.player.fire(event=b"start-file")
    player.player.fire(event=b"file-loaded")
    assert items == [(ItemStatus.UNKNOWN, None), (ItemStatus.READY, None)]


@pytest.mark.parametrize(
    "event, expected",
    [
        ({"event": b"end-file", "reason": b"error", "file_error": b"loading failed"}, "loading failed"),
        ({"event": "end-file", "data": {"reason": 4, "error": -13}}, "mpv error -13"),
        ({"event": b"end-file", "reason": b"error"}, None),
    ],
)
def test_end_file_error_is_failed(fake_mpv, event, expected) -> None:
    player, items, _transports = _player()
    player.player.fire(**event)
    assert items == [(ItemStatus.FAILED, expected)]


def test_end_of_file_is_not_a_failure(fake_mpv) -> None:
    player, items, _transports = _player()
    player.player.fire(event=b"end-file", reason=b"eof")
    assert items == []


def test_transport_follows_properties(fake_mpv) -> None:
    player, _items, transports = _player()
    mpv = player.player

    # Nothing is reported before the file is loaded.
    mpv.set_property("core-idle", False)
    assert transports == []

    mpv.fire(event=b"file-loaded")
    assert player.transport_status == TransportStatus.PLAYING

    mpv.set_property("pause", True)
    mpv.set_property("pause", False)
    mpv.set_property("paused-for-cache", True)
    mpv.set_property("paused-for-cache", False)

    assert transports == [
        TransportStatus.PLAYING,
        TransportStatus.PAUSED,
        TransportStatus.PLAYING,
        TransportStatus.WAITING,
        TransportStatus.PLAYING,
    ]


def test_release_detaches_and_terminates(fake_mpv) -> None:
    player, items, _transports = _player()
    mpv = player.player
    subs = list(player._item_subs + player._transport_subs)

    player.release()
    player.release()

    assert player.terminated.wait(5)
    assert mpv.terminate_calls == 1
    assert not any(sub.active for sub in subs)
    assert mpv.event_callbacks == []
    assert all(handlers == [] for handlers in mpv.property_observers.values())

    player.play()
    assert mpv.played == []
    assert items == []


def test_engine_errors(fake_mpv, monkeypatch) -> None:
    engine = mpv_player.MpvPlaybackEngine()
    with pytest.raises(PlaybackEngineError):
        engine.create_item("")

    def broken_mpv(*_args, **_kwargs):
        raise OSError("no audio output")

    monkeypatch.setattr(mpv_player, "MPV", broken_mpv)
    with pytest.raises(PlaybackEngineError, match="no audio output"):
        engine.create_player(engine.create_item(URL))


def test_session_shows_mpv_error_text(fake_mpv) -> None:
    async def scenario():
        session = PlaybackSession(mpv_player.MpvPlaybackEngine())
        session.start(URL)
        mpv = FakeMPV.instances[-1]
        assert mpv.played == [URL]

        mpv.fire(event=b"end-file", reason=b"error", file_error=b"loading failed")
        await session.settle()

        assert session.state.phase == PlaybackPhase.FAILED
        assert session.state.error == "loading failed"
        session.close()
        assert session.player is None

    asyncio.run(scenario())
