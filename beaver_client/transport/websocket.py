"""WebSocket connection manager for agent runs.

One ``AgentConnection`` carries one run: it opens the socket, waits for the
server's ``ready`` event, sends the run request, and forwards every inbound
frame to a single handler as a typed ``AgentEvent``. The connection is torn
down when the run is done or when the caller closes it; it is never reused
for the next run and never reconnects.

Lifecycle guarantees observed by the handler:

- ``open`` is delivered before any server event.
- ``close`` is delivered exactly once per opened socket, whatever the cause.
- Failures while establishing the connection, a server close before
  ``ready`` and a drop before ``done`` or ``error`` are delivered as an
  ``ErrorEvent`` with ``type="connection_error"`` instead of being raised.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Union
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from ..core.logging_config import get_logger
from ..protocol.errors import AgentConnectionError, EventParseError
from ..protocol.events import (
    AgentEvent,
    ConnectionClosedEvent,
    ConnectionOpenedEvent,
    DoneEvent,
    ErrorEvent,
    ReadyEvent,
    parse_event,
)
from ..protocol.messages import AgentRunRequest, ConnectionOptions, OutboundMessage

logger = get_logger(__name__)

SERVER_ERROR_CLOSE_CODE = 1011


class SocketLike(Protocol):
    """The subset of a websockets client connection used here."""

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...

    def __aiter__(self) -> Any: ...


EventHandler = Callable[[Any], Union[Awaitable[None], None]]
Connector = Callable[[str], Awaitable[SocketLike]]
AccessTokenProvider = Callable[[], Awaitable[Optional[str]]]


def _default_connector(url: str) -> Awaitable[SocketLike]:
    return ws_connect(url, max_size=None)


class AgentConnection:
    """Connection-per-request WebSocket client for the agent-run endpoint.

    Args:
        token_provider: Async callable returning the user's access token.
        url: WebSocket URL of the endpoint; defaults to ``settings.websocket_url``.
        connector: Async callable opening a socket for a URL. Tests inject fakes here.
        connect_timeout: Seconds to wait for the handshake.
    """

    def __init__(
        self,
        token_provider: AccessTokenProvider,
        *,
        url: Optional[str] = None,
        connector: Optional[Connector] = None,
        connect_timeout: Optional[float] = None,
    ) -> None:
        self._token_provider = token_provider
        self._url = url or settings.websocket_url
        self._connector = connector or _default_connector
        self._connect_timeout = connect_timeout if connect_timeout is not None else settings.connect_timeout
        self._ws: Optional[SocketLike] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._closing: Optional[tuple[int, str]] = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    def build_url(self, token: str, request: AgentRunRequest, options: Optional[ConnectionOptions] = None) -> str:
        """Build the connection URL; credentials travel as query parameters."""
        params = {"token": token}
        if request.custom_model is not None:
            params["custom_model"] = "true"
        elif options is not None:
            if options.access_id:
                params["access_id"] = options.access_id
            if options.api_key:
                params["api_key"] = options.api_key
        return f"{self._url}?{urlencode(params)}"

    async def connect(
        self,
        request: AgentRunRequest,
        handler: EventHandler,
        options: Optional[ConnectionOptions] = None,
    ) -> None:
        """Open a connection for ``request`` and start streaming events to ``handler``.

        Any previous connection is closed first. Returns once the socket is open
        and the reader task is running, or once a connection error has been
        delivered to the handler.
        """
        await self.close()

        try:
            token = await self._token_provider()
            if not token:
                raise AgentConnectionError("No access token available")
            url = self.build_url(token, request, options)
            logger.info("Connecting to %s for run %s", self._url, request.run_id)
            ws = await asyncio.wait_for(self._connector(url), timeout=self._connect_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Connection for run %s failed: %s", request.run_id, e, exc_info=True)
            await self._dispatch(
                handler,
                ErrorEvent.connection_error(
                    "Unable to connect to the assistant. Please try again.",
                    details=f"{type(e).__name__}: {e}",
                ),
            )
            return

        self._ws = ws
        self._closing = None
        logger.debug("Connection established, waiting for ready event")
        await self._dispatch(handler, ConnectionOpenedEvent())
        self._reader = asyncio.create_task(self._read_loop(ws, request, handler))

    async def send(self, message: OutboundMessage) -> bool:
        """Send an outbound message. Returns ``False`` (and logs) when not connected."""
        if self._ws is None:
            logger.warning("Cannot send %s - WebSocket not connected", type(message).__name__)
            return False
        payload = message.to_wire()
        logger.debug("Sending message: %s", payload)
        try:
            await self._ws.send(payload)
        except ConnectionClosed:
            logger.warning("Cannot send %s - WebSocket already closed", type(message).__name__)
            return False
        return True

    async def close(self, code: int = 1000, reason: str = "Client closing") -> None:
        """Close the socket and wait for the ``close`` event to be delivered.

        Safe to call at any time, including from inside the event handler.
        """
        ws = self._ws
        reader = self._reader
        if ws is None:
            return
        if self._closing is None:
            self._closing = (code, reason)
            logger.debug("Closing connection: code=%s, reason=%s", code, reason)
            await ws.close(code=code, reason=reason)
        if reader is not None and reader is not asyncio.current_task():
            await reader

    async def wait_closed(self) -> None:
        """Wait until the current connection (if any) has closed."""
        if self._reader is not None:
            await self._reader

    async def _read_loop(self, ws: SocketLike, request: AgentRunRequest, handler: EventHandler) -> None:
        code, reason, was_clean = 1000, "", True
        ready_seen = terminal_seen = False
        try:
            async for raw in ws:
                try:
                    event = parse_event(raw)
                except EventParseError as e:
                    logger.error("Failed to parse server message: %s", e)
                    await self._dispatch(handler, ErrorEvent.parse_error("Failed to parse server message", details=str(e)))
                    continue
                if event is None:
                    continue

                logger.debug("Received event: %s", event.event)
                await self._dispatch(handler, event)

                if isinstance(event, ReadyEvent):
                    ready_seen = True
                    logger.info("Server ready, sending agent run request %s", request.run_id)
                    await ws.send(request.to_wire())
                elif isinstance(event, DoneEvent):
                    terminal_seen = True
                elif isinstance(event, ErrorEvent):
                    terminal_seen = True
                    if self._closing is None:
                        self._closing = (SERVER_ERROR_CLOSE_CODE, event.type)
                        await ws.close(code=SERVER_ERROR_CLOSE_CODE, reason=event.type)
        except ConnectionClosed as e:
            was_clean = False
            if e.rcvd is not None:
                code, reason = e.rcvd.code, e.rcvd.reason
            else:
                code, reason = 1006, "Connection lost"
        finally:
            if self._closing is not None and was_clean:
                code, reason = self._closing
            elif was_clean:
                code = getattr(ws, "close_code", None) or code
                reason = getattr(ws, "close_reason", None) or reason
            if self._ws is ws:
                self._ws = None
            logger.info("Connection closed - code=%s, reason=%s, clean=%s", code, reason, was_clean)
            # A server-side close before ready, or a drop mid-run, is the run's error
            if self._closing is None and not terminal_seen and (not ready_seen or not was_clean):
                message = (
                    "The assistant closed the connection before the run started."
                    if not ready_seen
                    else "Lost connection to the assistant."
                )
                await self._dispatch(
                    handler,
                    ErrorEvent.connection_error(
                        message, details=f"code={code}, reason={reason}", run_id=request.run_id
                    ),
                )
            await self._dispatch(handler, ConnectionClosedEvent(code=code, reason=reason, was_clean=was_clean))

    @staticmethod
    async def _dispatch(handler: EventHandler, event: AgentEvent) -> None:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
