"""REST transport for the generation backend.

:class:`ComfyClient` wraps the three HTTP calls ComfyChat makes:

- ``POST {base}/prompt`` — submit a workflow for the current client id
- ``GET {base}/view`` — download a generated artifact
- ``GET {base}/system_stats`` — health check used when testing settings

The client is stateless apart from its lazily created
:class:`aiohttp.ClientSession`; backend address and credential are passed
per call so a settings change takes effect on the next request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from .config import ComfyChatConfig, config
from .exceptions import RetrievalError, SubmissionError
from .resolver import build_auth_headers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HealthStatus:
    """Outcome of a backend health check."""

    ok: bool
    message: str


class ComfyClient:
    """HTTP client for a ComfyUI-compatible backend.

    Args:
        cfg: Process configuration (timeouts).
        session: Optional pre-built session, mainly for tests.  When
            omitted a session is created on first use and owned by the
            client.
    """

    def __init__(
        self,
        cfg: ComfyChatConfig = config,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = cfg
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def submit_prompt(
        self,
        base_url: str,
        token: str | None,
        client_id: str,
        workflow: dict[str, Any],
    ) -> None:
        """Queue a workflow on the backend.

        The response body is not used: results arrive on the push channel.

        Raises:
            SubmissionError: On a non-2xx response or a network failure.
        """
        session = await self._get_session()
        headers = {"Content-Type": "application/json", **build_auth_headers(token)}
        payload = {"client_id": client_id, "prompt": workflow}
        url = f"{base_url}/prompt"

        try:
            async with session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout),
            ) as resp:
                if not resp.ok:
                    detail = await resp.text()
                    logger.warning("Submission rejected: %s %s %s", resp.status, resp.reason, detail)
                    raise SubmissionError(f"API Error: {resp.status} {resp.reason}", resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Submission to %s failed: %s", url, e)
            raise SubmissionError(f"Could not reach backend: {str(e) or type(e).__name__}") from e

        logger.info("Queued workflow for client %s at %s", client_id, base_url)

    async def fetch_image(self, url: str, token: str | None) -> bytes:
        """Download an artifact.

        Raises:
            RetrievalError: On a non-2xx response or a network failure.
        """
        session = await self._get_session()
        try:
            async with session.get(
                url,
                headers=build_auth_headers(token),
                timeout=aiohttp.ClientTimeout(total=self._config.retrieval_timeout),
            ) as resp:
                if not resp.ok:
                    raise RetrievalError(f"Image fetch failed: {resp.status} {resp.reason}", url)
                data = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to download image %s: %s", url, e)
            raise RetrievalError(f"Image fetch failed: {str(e) or type(e).__name__}", url) from e

        logger.info("Downloaded %d bytes from %s", len(data), url)
        return data

    async def check_health(self, base_url: str, token: str | None) -> HealthStatus:
        """Check ``/system_stats`` with the configured health timeout."""
        session = await self._get_session()
        try:
            async with session.get(
                f"{base_url}/system_stats",
                headers=build_auth_headers(token),
                timeout=aiohttp.ClientTimeout(total=self._config.health_timeout),
            ) as resp:
                if resp.ok:
                    return HealthStatus(True, "Connected successfully!")
                return HealthStatus(False, f"Error: Status: {resp.status} {resp.reason}")
        except asyncio.TimeoutError:
            return HealthStatus(False, "Connection timed out.")
        except aiohttp.ClientError as e:
            return HealthStatus(False, f"Error: {e}")
