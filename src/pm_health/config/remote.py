"""
Remote configuration fetcher.

Downloads a JSON object from the configured URL (optional HTTP basic auth).
The payload is merged by ConfigStore.apply_remote(); this module only deals
with the transport.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from .settings import WebConfig

logger = logging.getLogger(__name__)


class ConfigFetchError(Exception):
    """Remote configuration could not be fetched or parsed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteConfigFetcher:
    """
    Fetches the remote configuration.

    Usage:
        fetcher = RemoteConfigFetcher(config.web_config)
        payload = await fetcher.fetch()
        store.apply_remote(payload)
        await fetcher.close()
    """

    def __init__(
        self,
        web_config: WebConfig,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
    ) -> None:
        self._web_config = web_config
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def url(self) -> Optional[str]:
        return self._web_config.url

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch(self) -> Dict[str, Any]:
        """
        Fetch the remote configuration.

        Returns:
            The decoded JSON object

        Raises:
            ConfigFetchError: on network errors, non-2xx status or invalid JSON
        """
        if not self.url:
            raise ConfigFetchError("no remote configuration url")

        auth = None
        if self._web_config.auth and self._web_config.auth.user:
            auth = aiohttp.BasicAuth(
                self._web_config.auth.user,
                self._web_config.auth.password or "",
            )

        logger.info(f"Fetching config from [{self.url}]")
        session = await self._get_session()

        try:
            async with session.get(self.url, auth=auth) as resp:
                if resp.status < 200 or resp.status > 299:
                    raise ConfigFetchError(
                        f"http fetch failed, status = {resp.status}, {resp.reason}",
                        status_code=resp.status,
                    )
                text = await resp.text()
        except ConfigFetchError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConfigFetchError(f"http fetch failed: {e}") from e

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigFetchError(f"invalid json: {e}") from e

        if not isinstance(payload, dict):
            raise ConfigFetchError(f"expected a json object, got {type(payload).__name__}")

        return payload
