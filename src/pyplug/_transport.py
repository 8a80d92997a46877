"""HTTP transport for source metadata and archive downloads."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from pyplug.config import PyplugConfig
from pyplug.exceptions import PyplugTransportError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by sources and the pipeline.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`HttpTransport`) concrete.
    """

    async def get_json(self, url: str) -> Any:
        ...

    async def head_location(self, url: str) -> str | None:
        ...

    async def download(self, url: str) -> bytes:
        ...


class HttpTransport:
    """aiohttp-based transport with auth and user-agent headers."""

    def __init__(self, config: PyplugConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.download_timeout)

    def _headers(self, accept: str) -> dict[str, str]:
        headers = {"accept": accept, "user-agent": self._config.user_agent}
        if self._config.api_token:
            headers["authorization"] = f"token {self._config.api_token}"
        return headers

    async def get_json(self, url: str) -> Any:
        """GET *url* and decode the JSON body."""
        _logger.debug("GET %s", url)
        try:
            async with self._http.get(url, headers=self._headers("application/vnd.github+json"), timeout=self._timeout) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise PyplugTransportError(
                        f"HTTP {resp.status} from {url}: {text[:200]}",
                        status_code=resp.status,
                        url=url,
                    )
        except PyplugTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PyplugTransportError(f"Request to {url} failed: {exc}", url=url) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise PyplugTransportError(f"Invalid JSON from {url}: {text[:200]}", url=url) from exc

    async def head_location(self, url: str) -> str | None:
        """HEAD *url* without following redirects; the ``Location`` of a 3xx reply."""
        _logger.debug("HEAD %s", url)
        try:
            async with self._http.head(
                url,
                headers=self._headers("application/vnd.github+json"),
                allow_redirects=False,
                timeout=self._timeout,
            ) as resp:
                if 300 <= resp.status < 400:
                    return resp.headers.get("Location")
                _logger.debug("No redirect from %s (HTTP %d)", url, resp.status)
                return None
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PyplugTransportError(f"Request to {url} failed: {exc}", url=url) from exc

    async def download(self, url: str) -> bytes:
        """GET *url* following redirects and return the body."""
        _logger.debug("Downloading %s", url)
        try:
            async with self._http.get(url, headers=self._headers("application/octet-stream"), timeout=self._timeout) as resp:
                if resp.status != 200:
                    raise PyplugTransportError(
                        f"HTTP {resp.status} downloading {url}",
                        status_code=resp.status,
                        url=url,
                    )
                return await resp.read()
        except PyplugTransportError:
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise PyplugTransportError(f"Download of {url} failed: {exc}", url=url) from exc
