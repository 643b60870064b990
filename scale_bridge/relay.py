"""Best-effort forwarding of capture results to the remote collector."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import aiohttp

from . import constants
from .config import RelayConfig

LOGGER = logging.getLogger(__name__)

CAPTURE_PATH = "/weights/capture"
HEALTH_PATH = "/health"


class RelayClient:
    """Posts capture results to ``<backend_url>/weights/capture``.

    ``push`` never raises: the local operator already has the result, and a
    collector outage must not turn a successful weighing into an error.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self.last_success: Optional[bool] = None
        self.last_error: Optional[str] = None

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.configured

    def update_config(self, config: RelayConfig) -> None:
        self._config = config

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def push(self, payload: Mapping[str, Any]) -> bool:
        config = self._config
        if not config.configured:
            LOGGER.debug("Relay disabled; capture not forwarded")
            return False

        url = config.backend_url.rstrip("/") + CAPTURE_PATH
        body = {"apiKey": config.api_key, **payload}
        headers = {constants.API_KEY_HEADER: str(config.api_key)}
        timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)

        session = await self._ensure_session()
        try:
            async with session.post(url, json=body, headers=headers, timeout=timeout) as response:
                if 200 <= response.status < 300:
                    LOGGER.info("Capture forwarded to %s", url)
                    self._record(True, None)
                    return True
                detail = (await response.text(errors="replace")).strip()
                self._record(False, f"HTTP {response.status}: {detail[:200]}")
        except asyncio.TimeoutError:
            self._record(False, f"timed out after {config.timeout_seconds:.0f}s")
        except aiohttp.ClientError as exc:
            self._record(False, str(exc) or exc.__class__.__name__)

        LOGGER.warning("Failed to forward capture to %s: %s", url, self.last_error)
        return False

    async def test_connection(self, url: str, api_key: Optional[str]) -> Dict[str, Any]:
        """Check ``<url>/health`` with the given key."""

        if not url:
            return {"success": False, "error": "URL is required"}

        target = url.rstrip("/") + HEALTH_PATH
        headers = {constants.API_KEY_HEADER: api_key} if api_key else {}
        timeout = aiohttp.ClientTimeout(total=constants.CONNECTION_TEST_TIMEOUT_SECONDS)

        session = await self._ensure_session()
        try:
            async with session.get(target, headers=headers, timeout=timeout) as response:
                if response.status >= 400:
                    return {"success": False, "error": f"HTTP {response.status}"}
                try:
                    data: Any = await response.json(content_type=None)
                except ValueError:
                    data = await response.text(errors="replace")
        except asyncio.TimeoutError:
            return {"success": False, "error": "Connection timed out"}
        except aiohttp.ClientError as exc:
            return {"success": False, "error": str(exc) or exc.__class__.__name__}

        LOGGER.info("Connection test to %s succeeded", target)
        return {"success": True, "data": data}

    def _record(self, success: bool, error: Optional[str]) -> None:
        self.last_success = success
        self.last_error = error
