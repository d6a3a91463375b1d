"""WebSocket transport shared by control and session channels.

A ``Connection`` wraps one websocket and pumps incoming frames to registered
handlers from a single reader task, so handlers always run in wire order.

The constructor takes an already-connected websocket (for testability) and
the ``open()`` class method performs the handshake (for convenience):

    conn = await Connection.open(endpoint)
    conn.on_message(print)
    conn.start()
    await conn.send('{"jsonrpc": "2.0", ...}')
    await conn.close()
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass

import websockets
from loguru import logger
from websockets import ClientConnection, State

from ..errors import ConnectError, ConnectionClosedError
from .endpoint import Endpoint

Frame = str | bytes


@dataclass(frozen=True)
class CloseInfo:
    """Why a connection closed."""

    code: int | None = None
    reason: str = ""
    local: bool = False


MessageHandler = Callable[[Frame], None]
CloseHandler = Callable[[CloseInfo], None]
ErrorHandler = Callable[[BaseException], None]


class Connection:
    """A duplex message channel to one WebSocket endpoint."""

    def __init__(self, ws: ClientConnection, endpoint: Endpoint | None = None):
        """Wrap an existing WebSocket connection.

        Args:
            ws: An already-connected WebSocket.
            endpoint: The endpoint ``ws`` is connected to, for logging.
        """
        self._ws = ws
        self.endpoint = endpoint
        self.id = uuid.uuid4().hex[:12]
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._error_handlers: list[ErrorHandler] = []
        self._reader: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = False
        self._close_info: CloseInfo | None = None
        self._done = asyncio.Event()

    @classmethod
    async def open(cls, endpoint: Endpoint, *, open_timeout: float | None = 10.0) -> Connection:
        """Connect to ``endpoint``.

        Raises:
            ConnectError: If the handshake fails.
        """
        logger.debug("Connecting to {}", endpoint)
        try:
            ws = await websockets.connect(
                endpoint.url,
                additional_headers=endpoint.headers or None,
                open_timeout=open_timeout,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise ConnectError(repr(endpoint), str(e) or type(e).__name__) from e
        conn = cls(ws, endpoint)
        logger.debug("Connected to {} (connection {})", endpoint, conn.id)
        return conn

    # Handler registration

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Register a close handler. Fires once, even for late registrations."""
        if self._closed and self._close_info is not None:
            asyncio.get_running_loop().call_soon(handler, self._close_info)
            return
        self._close_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    # Lifecycle

    def start(self) -> None:
        """Start delivering incoming frames to the registered handlers."""
        if self._reader is None and not self._closed:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._closing and self._ws.state == State.OPEN

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait_closed(self) -> CloseInfo:
        await self._done.wait()
        return self._close_info or CloseInfo()

    async def send(self, data: Frame) -> None:
        """Send one frame.

        Raises:
            ConnectionClosedError: If the connection is closed.
        """
        if self._closed or self._closing:
            raise ConnectionClosedError(f"Connection {self.id} is closed")
        logger.debug(">>> [{}] {!r}", self.id, data)
        try:
            await self._ws.send(data)
        except websockets.ConnectionClosed as e:
            raise ConnectionClosedError(f"Connection {self.id} is closed") from e

    async def close(self) -> None:
        """Close the connection. Closing twice is a no-op."""
        if self._closed or self._closing:
            if self._reader is not None and self._reader is not asyncio.current_task():
                await self._done.wait()
            return
        self._closing = True
        logger.debug("Closing connection {}", self.id)
        try:
            await self._ws.close()
        except websockets.WebSocketException as e:
            logger.debug("Error while closing connection {}: {}", self.id, e)
        if self._reader is None:
            self._finish(CloseInfo(code=1000, local=True))
        elif self._reader is not asyncio.current_task():
            await self._done.wait()

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Internals

    async def _read_loop(self) -> None:
        info = CloseInfo(local=self._closing)
        try:
            async for data in self._ws:
                logger.debug("<<< [{}] {!r}", self.id, data)
                self._dispatch(data)
            info = CloseInfo(
                code=self._close_code(), reason=self._close_reason(), local=self._closing
            )
        except websockets.ConnectionClosed as e:
            info = CloseInfo(
                code=e.rcvd.code if e.rcvd else None,
                reason=e.rcvd.reason if e.rcvd else "",
                local=self._closing,
            )
            if not self._closing:
                self._notify_error(e)
        except OSError as e:
            self._notify_error(e)
        finally:
            self._finish(info)

    def _dispatch(self, data: Frame) -> None:
        for handler in list(self._message_handlers):
            try:
                handler(data)
            except Exception:
                logger.exception("Message handler failed on connection {}", self.id)

    def _notify_error(self, error: BaseException) -> None:
        logger.warning("Connection {} failed: {}", self.id, error)
        for handler in list(self._error_handlers):
            handler(error)

    def _finish(self, info: CloseInfo) -> None:
        if self._closed:
            return
        self._closed = True
        self._close_info = info
        logger.debug("Connection {} closed (code={}, local={})", self.id, info.code, info.local)
        handlers, self._close_handlers = self._close_handlers, []
        for handler in handlers:
            handler(info)
        self._done.set()

    def _close_code(self) -> int | None:
        return getattr(self._ws, "close_code", None)

    def _close_reason(self) -> str:
        return getattr(self._ws, "close_reason", None) or ""
