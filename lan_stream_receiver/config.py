"""Configuration models for the application."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import logging
_LOGGER = logging.getLogger(__name__)

DEFAULT_SERVICE_TYPE = "_iptv-stream._tcp.local."

# -----------------------------------------------------------------------------
# Configuration Dataclasses
# -----------------------------------------------------------------------------

@dataclass
class DiscoveryConfig:
    """Settings for mDNS/DNS-SD discovery."""
    service_type: str = DEFAULT_SERVICE_TYPE
    # Timeout for zeroconf SRV/TXT/A/AAAA record requests, in milliseconds.
    request_timeout_ms: int = 3000
    # None = a resolution stays in flight until discovery is stopped.
    resolve_timeout_seconds: Optional[float] = None
    # Open a TCP connection to confirm the address a peer is reachable on.
    verify_connection: bool = True
    # Seconds the CLI waits for peers before choosing one.
    browse_seconds: float = 3.0


@dataclass
class MetadataConfig:
    """Settings for the /info and /health HTTP calls."""
    # None = no timeout.
    timeout_seconds: Optional[float] = 10.0


@dataclass
class PlaybackConfig:
    """Settings for the mpv playback engine."""
    output_device: Optional[str] = None
    video: bool = True
    network_timeout: int = 7
    cache: bool = True


@dataclass
class AppConfig:
    """General application settings."""
    name: str = "LAN Stream Receiver"
    preferences_file: str = "preferences.json"
    debug: bool = False


@dataclass
class Config:
    """Main configuration object."""
    app: AppConfig = field(default_factory=AppConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    playback: PlaybackConfig = field(default_factory=PlaybackConfig)

# -----------------------------------------------------------------------------
# Helper Function
# -----------------------------------------------------------------------------

def load_config_from_json(config_path: Path) -> Config:
    """Loads configuration from a JSON file and populates dataclasses."""

    # --- Step 1: Load raw JSON data ---
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw_data = json.load(f)
    except FileNotFoundError:
        _LOGGER.critical("Configuration file not found at: %s", config_path)
        raise
    except json.JSONDecodeError as e:
        _LOGGER.critical("Error parsing configuration file: %s", e)
        raise

    # --- Step 2: Create config objects from raw data ---
    if "app" not in raw_data:
        raise ValueError(
            "Configuration file must contain an 'app' section."
        )

    app_config = AppConfig(**raw_data.get("app", {}))
    discovery_config = DiscoveryConfig(**raw_data.get("discovery", {}))
    metadata_config = MetadataConfig(**raw_data.get("metadata", {}))
    playback_config = PlaybackConfig(**raw_data.get("playback", {}))

    # --- Step 3: Normalise the service type ---
    # zeroconf wants the fully qualified form ("_x._tcp.local.").
    service_type = discovery_config.service_type.strip()
    if not service_type.endswith("."):
        service_type += "."
    if not service_type.endswith(".local."):
        service_type += "local."
    discovery_config.service_type = service_type

    # --- Step 4: Return the main Config object ---
    return Config(
        app=app_config,
        discovery=discovery_config,
        metadata=metadata_config,
        playback=playback_config,
    )
