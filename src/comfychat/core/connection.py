"""Push channel management.

The backend streams execution events over a WebSocket scoped by client id.
:class:`ConnectionManager` owns that socket:

- at most one live connection, keyed by the resolved (base URL, token) pair
- rebuilt only when the pair changes (or on explicit request); there is no
  retry timer, so a dropped channel never silently reconnects with stale
  credentials
- frames are parsed into typed events and handed to a single subscriber,
  each in its own task, so a slow subscriber never delays later frames and
  a reconnect never interrupts one; anything unrecognized is dropped

Consumers hold a :class:`Subscription`, never the socket, so replacing the
connection cannot leave them with a half-closed handle.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from .config import ComfyChatConfig, config
from .exceptions import ChannelError
from .models import ArtifactDescriptor, ExecutedEvent, ExecutingEvent, PushEvent
from .resolver import resolve_base, websocket_url

logger = logging.getLogger(__name__)

EventCallback = Callable[[PushEvent], Awaitable[None] | None]


def _parse_images(output: Any) -> tuple[ArtifactDescriptor, ...]:
    if not isinstance(output, dict):
        return ()
    images = output.get("images")
    if not isinstance(images, list):
        return ()

    descriptors = []
    for image in images:
        if not isinstance(image, dict):
            continue
        filename = image.get("filename")
        if not isinstance(filename, str) or not filename:
            continue
        descriptors.append(
            ArtifactDescriptor(
                filename=filename,
                subfolder=str(image.get("subfolder") or ""),
                type=str(image.get("type") or "output"),
            )
        )
    return tuple(descriptors)


def parse_event(raw: str | bytes) -> PushEvent | None:
    """Parse one push channel frame.

    Args:
        raw: Frame payload.

    Returns:
        An :class:`ExecutingEvent` or :class:`ExecutedEvent`, or ``None``
        for frames that are not JSON, not tagged, or of another type.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    data = payload.get("data")
    if not isinstance(data, dict):
        return None

    event_type = payload.get("type")
    node = data.get("node")
    if event_type == "executing":
        if "node" not in data or not (node is None or isinstance(node, str)):
            return None
        return ExecutingEvent(node=node)
    if event_type == "executed":
        return ExecutedEvent(
            node=node if isinstance(node, str) else None,
            images=_parse_images(data.get("output")),
        )
    return None


class Subscription:
    """Handle for the active event subscriber of a :class:`ConnectionManager`."""

    def __init__(self, manager: ConnectionManager, callback: EventCallback) -> None:
        self._manager = manager
        self.callback = callback

    @property
    def active(self) -> bool:
        return self._manager._subscription is self

    def cancel(self) -> None:
        if self.active:
            self._manager._subscription = None


class ConnectionManager:
    """Owns the single push channel connection for this client.

    Args:
        client_id: Process-lifetime client session id.
        cfg: Process configuration (scheme inference, heartbeat).
        session_factory: Builds the :class:`aiohttp.ClientSession` used for
            each connection.
    """

    def __init__(
        self,
        client_id: str,
        cfg: ComfyChatConfig = config,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ) -> None:
        self.client_id = client_id
        self._config = cfg
        self._session_factory = session_factory

        self._key: tuple[str, str] | None = None
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._dispatches: set[asyncio.Task] = set()
        self._subscription: Subscription | None = None
        self.last_error: str | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def subscribe(self, callback: EventCallback) -> Subscription:
        """Make ``callback`` the event subscriber, replacing any previous one."""
        self._subscription = Subscription(self, callback)
        return self._subscription

    async def configure(self, api_host: str, auth_token: str | None, force: bool = False) -> bool:
        """Point the channel at a backend, reconnecting if the target changed.

        Args:
            api_host: Backend address as entered by the user.
            auth_token: Optional bearer credential.
            force: Reconnect even when the target is unchanged.

        Returns:
            True if the channel is connected afterwards.
        """
        base_url = resolve_base(api_host, self._config.secure_origin)
        key = (base_url, (auth_token or "").strip())
        if key == self._key and not force:
            return self.connected

        await self._teardown()
        self._key = key
        url = websocket_url(base_url, self.client_id, key[1])

        session = self._session_factory()
        try:
            ws = await session.ws_connect(url, heartbeat=self._config.ws_heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await session.close()
            error = ChannelError(f"Could not open push channel to {base_url}: {e}")
            self.last_error = str(error)
            logger.warning(str(error))
            return False

        self._session = session
        self._ws = ws
        self.last_error = None
        self._reader = asyncio.create_task(self._read_loop(ws))
        logger.info("Push channel connected to %s", base_url)
        return True

    async def close(self) -> None:
        """Close the channel and forget the current target."""
        await self._teardown()
        self._key = None

    async def _teardown(self) -> None:
        ws, session, reader = self._ws, self._session, self._reader
        self._ws = None
        self._session = None
        self._reader = None

        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if session is not None:
            await session.close()

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    event = parse_event(message.data)
                    if event is None:
                        logger.debug("Dropped unrecognized push frame")
                        continue
                    self._schedule(event)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    raise ChannelError(f"Push channel error: {ws.exception()}")
        except ChannelError as e:
            self.last_error = str(e)
            logger.warning(str(e))
        except aiohttp.ClientError as e:
            self.last_error = f"Push channel dropped: {e}"
            logger.warning(self.last_error)
        finally:
            if self._ws is ws:
                # Closed from the remote side; release the session but keep
                # the target so only a configuration change reconnects.
                logger.info("Push channel closed")
                session = self._session
                self._ws = None
                self._session = None
                self._reader = None
                if session is not None:
                    await session.close()

    def _schedule(self, event: PushEvent) -> None:
        """Hand ``event`` to the subscriber in its own task.

        Dispatch tasks are not owned by the reader, so tearing the socket
        down never cancels a subscriber that is still retrieving output.
        """
        task = asyncio.create_task(self._dispatch(event))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)

    async def wait_dispatched(self) -> None:
        """Wait until every event handed to the subscriber has been handled."""
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def _dispatch(self, event: PushEvent) -> None:
        subscription = self._subscription
        if subscription is None:
            return
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # A failing subscriber must not take the channel down.
            logger.exception("Push event subscriber failed for %s", type(event).__name__)
