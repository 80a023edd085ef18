"""
LAN Stream Receiver

Finds stream peers on the local network over mDNS/DNS-SD and plays them:
- DiscoveryEngine keeps a live, deduplicated list of endpoints
- PlaybackSession drives one playback attempt through a PlaybackEngine
- MetadataFetcher reads the peer's /info and /health endpoints

Playback uses mpv (python-mpv); libmpv must be installed.
"""

__version__ = "1.0.0"
