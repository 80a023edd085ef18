"""Best-effort /info and /health requests against a stream peer."""

import asyncio
import functools
import json
import logging
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from .models import EndpointRecord, StreamInfo, url_host

_LOGGER = logging.getLogger(__name__)

# Upper bound on an /info body; the payload is a handful of short strings.
_MAX_INFO_BYTES = 64 * 1024


class MetadataFetcher:
    """Fetches decorative stream metadata. Never raises for expected failures."""

    def __init__(self, timeout: Optional[float] = 10.0) -> None:
        self.timeout = timeout

    async def fetch(self, endpoint: EndpointRecord) -> Optional[StreamInfo]:
        """Wrapper to run the blocking request in a thread executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._fetch_sync, endpoint.info_url)
        )

    async def check_health(self, host: str, port: int) -> bool:
        """True if the peer's /health endpoint answers 200.

        Raises OSError (URLError included) if the peer cannot be reached at all,
        so callers can tell "wrong answer" from "no answer".
        """
        url = f"http://{url_host(host)}:{port}/health"
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self._health_sync, url))

    def _open(self, url: str):
        if self.timeout is None:
            return urlopen(url)
        return urlopen(url, timeout=self.timeout)

    def _fetch_sync(self, url: str) -> Optional[StreamInfo]:
        """Blocking request logic, intended to run in an executor."""
        try:
            with self._open(url) as response:
                if response.status != 200:
                    _LOGGER.warning("Failed to fetch stream info: %s, status=%s", url, response.status)
                    return None
                body = response.read(_MAX_INFO_BYTES)
        except HTTPError as e:
            _LOGGER.warning("Failed to fetch stream info: %s, status=%s", url, e.code)
            return None
        except (URLError, OSError) as e:
            _LOGGER.warning("Failed to fetch stream info from %s: %s", url, e)
            return None

        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            _LOGGER.warning("Malformed stream info from %s: %s", url, e)
            return None

        if not isinstance(data, dict):
            _LOGGER.warning("Malformed stream info from %s: expected an object", url)
            return None

        info = StreamInfo.from_dict(data)
        _LOGGER.debug("Stream info from %s: %s", url, info)
        return info

    def _health_sync(self, url: str) -> bool:
        try:
            with self._open(url) as response:
                return response.status == 200
        except HTTPError as e:
            _LOGGER.debug("Health check %s returned %s", url, e.code)
            return False
        except (URLError, OSError) as e:
            _LOGGER.debug("Health check %s failed: %s", url, e)
            raise
