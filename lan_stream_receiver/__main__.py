#!/usr/bin/env python3
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional, Tuple, Union

from .config import Config, load_config_from_json
from .discovery import DiscoveryEngine, ZeroconfResolver
from .event_bus import EventBus, EventHandler, subscribe
from .manual_entry import (
    InvalidTargetError,
    ManualTarget,
    RecentAddresses,
    TargetUnreachableError,
    connect_manual,
)
from .metadata import MetadataFetcher
from .models import DiscoveryState, EndpointRecord, PlaybackPhase, PlaybackState
from .mpv_player import MpvPlaybackEngine
from .session import PlaybackSession

_LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Console reporting
# -----------------------------------------------------------------------------

class ConsoleReporter(EventHandler):
    """Logs discovery and playback state changes as they are published."""

    def __init__(self, event_bus: EventBus):
        super().__init__(event_bus)
        self._known = 0
        self._last_phase: Optional[PlaybackPhase] = None

    @subscribe
    def discovery_state(self, data: dict):
        state: DiscoveryState = data["state"]
        if state.error:
            _LOGGER.error("Discovery: %s", state.error)
        for endpoint in state.endpoints[self._known:]:
            _LOGGER.info("Found %s (%s:%s)", endpoint.name, endpoint.host, endpoint.port)
        self._known = len(state.endpoints)

    @subscribe
    def playback_state(self, data: dict):
        state: PlaybackState = data["state"]
        if state.phase != self._last_phase:
            self._last_phase = state.phase
            if state.phase == PlaybackPhase.FAILED:
                _LOGGER.error("Playback failed: %s", state.error)
            else:
                _LOGGER.info("Playback: %s", state.phase.value)
        if state.info is not None and state.info.title:
            _LOGGER.debug("Now playing: %s (%s)", state.info.title, state.info.type or "unknown")

# -----------------------------------------------------------------------------
# Main Application
# -----------------------------------------------------------------------------

async def main() -> int:
    # --- 1. Load Basics ---
    args, config, event_bus = _init_basics()
    ConsoleReporter(event_bus)

    history = RecentAddresses(Path(config.app.preferences_file).expanduser()).load()
    if args.recent:
        print("Recent addresses\n" + "=" * 16)
        for entry in history.entries:
            print(entry)
        return 0

    fetcher = MetadataFetcher(timeout=config.metadata.timeout_seconds)
    discovery = DiscoveryEngine(
        config.discovery.service_type,
        event_bus=event_bus,
        resolver=ZeroconfResolver(
            request_timeout_ms=config.discovery.request_timeout_ms,
            verify_connection=config.discovery.verify_connection,
        ),
        resolve_timeout=config.discovery.resolve_timeout_seconds,
    )

    session = None
    try:
        # --- 2. Pick a target ---
        target = await _select_target(args, config, discovery, fetcher, history)
        if args.list:
            return 0
        if target is None:
            return 1

        # --- 3. Play until interrupted ---
        session = PlaybackSession(
            MpvPlaybackEngine(config.playback), fetcher=fetcher, event_bus=event_bus
        )
        session.start(target)
        await _wait_for_shutdown()
    finally:
        # --- 4. Cleanup ---
        _LOGGER.debug("Shutting down...")
        if session is not None:
            session.close()
        await discovery.stop()

    return 0

# -----------------------------------------------------------------------------
# Helper Functions
# -----------------------------------------------------------------------------

def _init_basics() -> Tuple[argparse.Namespace, Config, EventBus]:
    """Parses arguments, loads config and sets up logging."""
    parser = argparse.ArgumentParser(prog="lan-stream-receiver")
    parser.add_argument(
        "-c", "--config", type=Path, required=False, default=None,
        help="Path to configuration JSON file (built-in defaults if omitted)"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--discover-seconds", type=float, default=None,
        help="How long to browse before choosing a peer"
    )
    parser.add_argument("--name", help="Play the discovered service with this name")
    parser.add_argument("--list", action="store_true", help="List discovered services and exit")
    parser.add_argument("--recent", action="store_true", help="List recently used addresses and exit")
    parser.add_argument("--url", help="Play this stream URL instead of discovering")
    parser.add_argument("--host", help="Peer host for manual entry")
    parser.add_argument("--port", default="8080", help="Peer port for manual entry (default: 8080)")
    args = parser.parse_args()

    config_path = args.config
    if config_path is not None:
        config = load_config_from_json(config_path)
    else:
        config = Config()

    if args.debug:
        config.app.debug = True
    if args.discover_seconds is not None:
        config.discovery.browse_seconds = args.discover_seconds

    logging.basicConfig(
        level=logging.DEBUG if config.app.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    if not config.app.debug:
        logging.getLogger("zeroconf").setLevel(logging.WARNING)

    if config_path is not None:
        _LOGGER.info("Loading configuration from: %s", config_path)
    _LOGGER.debug("Configuration loaded: %s", config)

    return args, config, EventBus()

async def _select_target(
    args: argparse.Namespace,
    config: Config,
    discovery: DiscoveryEngine,
    fetcher: MetadataFetcher,
    history: RecentAddresses,
) -> Optional[Union[EndpointRecord, str]]:
    """Returns an endpoint or URL to play, or None after logging why not."""
    if args.url or args.host:
        try:
            if args.url:
                manual = ManualTarget.from_url(args.url)
            else:
                manual = ManualTarget.from_host_port(args.host, args.port)
            return await connect_manual(manual, fetcher, history)
        except (InvalidTargetError, TargetUnreachableError) as e:
            _LOGGER.error("%s", e)
            return None

    await discovery.start()
    if discovery.state.error:
        return None

    if args.list or args.name:
        # Give every peer a chance to answer.
        await asyncio.sleep(config.discovery.browse_seconds)
    else:
        await discovery.wait_for_endpoints(1, timeout=config.discovery.browse_seconds)

    endpoints = discovery.endpoints
    if args.list:
        print("Discovered services\n" + "=" * 19)
        for endpoint in endpoints:
            print(f"{endpoint.name}: {endpoint.stream_url}")
        return None

    if args.name:
        wanted = args.name.lower()
        for endpoint in endpoints:
            if endpoint.name.lower() == wanted:
                return endpoint
        _LOGGER.error("No service named %r found", args.name)
        return None

    if not endpoints:
        _LOGGER.error("No %s services found", config.discovery.service_type)
        return None

    return endpoints[0]

async def _wait_for_shutdown() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; Ctrl-C still raises KeyboardInterrupt.
            pass
    await stop_event.wait()

def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
