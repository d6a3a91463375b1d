"""Terminal session state machine.

A session moves through::

    CREATED -> OPENING -> OPEN -> CLOSED
                  \\          \\
                   +-> ERRORED <+

Sessions created with a server assigned id (``SessionId``) attach a second
connection for raw terminal I/O and resize through the control channel.
Sessions whose connection is the session (``ConnectionIdentity``) wrap I/O in
``stdin``/``stdout`` messages and resize on their own connection. Callers see
the same API either way.

Every transition and every chunk of output is published, in wire order, both
to registered handlers and to the ``events()`` stream.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..errors import (
    ConnectError,
    ConnectionClosedError,
    ProtocolError,
    SessionClosedError,
    SessionNotOpenError,
    describe_error,
)
from . import protocol
from .endpoint import Endpoint
from .transport import CloseInfo, Connection, Frame

if TYPE_CHECKING:
    from .control import ControlChannel


class SessionState(str, Enum):
    CREATED = "created"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"


class CloseReason(str, Enum):
    """Why a session ended."""

    LOCAL = "local"  # Closed by the caller
    EXITED = "exited"  # Server reported the remote process exited
    DISCONNECTED = "disconnected"  # Server closed the connection
    ERROR = "error"  # Server or transport reported an error

    @property
    def remote(self) -> bool:
        return self is not CloseReason.LOCAL


@dataclass(frozen=True)
class SessionId:
    """Session identity assigned by the server."""

    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class ConnectionIdentity:
    """Session identity of a connection that is the session."""

    connection_id: str

    def __str__(self) -> str:
        return self.connection_id


SessionIdentity = SessionId | ConnectionIdentity


class Framing(str, Enum):
    """How terminal bytes travel on the session connection."""

    RAW = "raw"  # Every frame is terminal data
    ENVELOPE = "envelope"  # Data is wrapped in stdin/stdout messages


class EventType(IntEnum):
    OPEN = 0
    OUTPUT = 1
    ERROR = 2
    CLOSE = 3


@dataclass(frozen=True)
class SessionEvent:
    """One entry of a session's event stream."""

    type: EventType
    data: bytes = b""
    reason: CloseReason | None = None
    error: BaseException | None = None


_TERMINAL_STATES = (SessionState.CLOSED, SessionState.ERRORED)


class TerminalSession:
    """Client-side handle of one remote terminal session.

    Sessions are created by ``ControlChannel.create_session`` (or
    ``TerminalSession.attach`` for an already known session URL) and open
    asynchronously, so handlers registered right after creation still see
    the OPEN event:

        session = await control.create_session("app")
        session.on_output(sys.stdout.buffer.write)
        await session.wait_open()
        await session.send("ls\\n")
        await session.resize(100, 40)
        reason = await session.wait_closed()
    """

    def __init__(
        self,
        identity: SessionIdentity,
        *,
        control: ControlChannel | None = None,
        size: tuple[int, int] = (80, 24),
        open_timeout: float | None = None,
        framing: Framing | None = None,
    ):
        self.identity = identity
        if framing is None:
            framing = Framing.RAW if isinstance(identity, SessionId) else Framing.ENVELOPE
        self.framing = framing
        self.size = size
        self.state = SessionState.CREATED
        self.close_reason: CloseReason | None = None
        self.error: BaseException | None = None

        self._connection: Connection | None = None
        self._control = control
        self._open_timeout = open_timeout
        self._ids = itertools.count(1)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._backlog: list[Frame] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._settled = asyncio.Event()
        self._finished = asyncio.Event()

        self._open_handlers: list[Callable[[], None]] = []
        self._output_handlers: list[Callable[[bytes], None]] = []
        self._close_handlers: list[Callable[[CloseReason], None]] = []
        self._error_handlers: list[Callable[[BaseException], None]] = []
        self._subscribers: list[asyncio.Queue[SessionEvent]] = []

    @classmethod
    def attach(cls, endpoint: Endpoint, *, open_timeout: float | None = None) -> TerminalSession:
        """Attach to an existing session's raw terminal endpoint.

        The session has no control channel, so ``resize`` is not available.
        """
        session = cls(
            ConnectionIdentity(endpoint.path),
            open_timeout=open_timeout,
            framing=Framing.RAW,
        )
        session._start(endpoint)
        return session

    # Handler registration

    def on_open(self, handler: Callable[[], None]) -> None:
        self._open_handlers.append(handler)

    def on_output(self, handler: Callable[[bytes], None]) -> None:
        self._output_handlers.append(handler)

    def on_close(self, handler: Callable[[CloseReason], None]) -> None:
        self._close_handlers.append(handler)

    def on_error(self, handler: Callable[[BaseException], None]) -> None:
        self._error_handlers.append(handler)

    def events(self) -> AsyncIterator[SessionEvent]:
        """Subscribe to the session's event stream.

        The stream starts at the moment of subscription and ends after the
        CLOSE event.
        """
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        if self.is_closed:
            queue.put_nowait(SessionEvent(EventType.CLOSE, reason=self.close_reason))
        else:
            self._subscribers.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[SessionEvent]) -> AsyncIterator[SessionEvent]:
        try:
            while True:
                event = await queue.get()
                yield event
                if event.type == EventType.CLOSE:
                    return
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    # State

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state in _TERMINAL_STATES

    async def wait_open(self) -> None:
        """Wait until the session is open.

        Raises:
            ConnectError: If the session connection could not be opened.
            SessionClosedError: If the session ended before opening.
        """
        await self._settled.wait()
        if self.state == SessionState.OPEN:
            return
        if self.error is not None:
            raise self.error
        raise SessionClosedError(f"Session {self.identity} closed before it opened")

    async def wait_closed(self) -> CloseReason:
        await self._finished.wait()
        return self.close_reason or CloseReason.LOCAL

    # Operations

    async def send(self, data: str | bytes) -> None:
        """Send terminal input.

        Raises:
            SessionClosedError: If the session is closed.
            SessionNotOpenError: If the session is not open yet.
        """
        connection = self._open_connection()
        frame: Frame
        if self.framing is Framing.ENVELOPE:
            text = self._decoder.decode(data) if isinstance(data, bytes) else data
            if not text:
                return
            frame = protocol.notification(protocol.STDIN, text)
        else:
            # Bytes go out as binary frames so non UTF-8 input arrives unchanged
            if not data:
                return
            frame = data
        try:
            await connection.send(frame)
        except ConnectionClosedError as e:
            raise SessionClosedError(f"Session {self.identity} is closed") from e

    async def resize(self, columns: int, rows: int) -> None:
        """Resize the remote terminal.

        A resize that cannot reach a closed control channel is logged and
        dropped; the session itself stays open.

        Raises:
            SessionClosedError: If the session is closed.
            SessionNotOpenError: If the session is not open yet.
        """
        connection = self._open_connection()
        self.size = (columns, rows)
        if self._control is not None and isinstance(self.identity, SessionId):
            try:
                await self._control.resize(self.identity.value, columns, rows)
            except ConnectionClosedError as e:
                # Terminal I/O runs on its own connection and keeps working
                logger.warning("Resize of session {} not sent: {}", self.identity, e)
        elif self.framing is Framing.ENVELOPE:
            frame = protocol.request(
                next(self._ids), protocol.RESIZE, {"cols": columns, "rows": rows}
            )
            try:
                await connection.send(frame)
            except ConnectionClosedError as e:
                raise SessionClosedError(f"Session {self.identity} is closed") from e
        else:
            logger.debug("Session {} has no control channel; resize not sent", self.identity)

    async def close(self) -> None:
        """Close the session. Closing twice is a no-op.

        The control channel, if any, stays open.
        """
        if not self.is_closed:
            self._transition_closed(CloseReason.LOCAL)
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
        if self._connection is not None:
            await self._connection.close()

    async def __aenter__(self) -> TerminalSession:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Opening

    def _start(self, endpoint: Endpoint) -> None:
        """Open the attach connection to ``endpoint`` in the background."""
        self._spawn(self._open_attached(endpoint))

    def _adopt(self, connection: Connection, backlog: list[Frame]) -> None:
        """Take over the connection that carried the create request."""
        self._connection = connection
        self._backlog.extend(backlog)
        self.state = SessionState.OPENING
        # Open on the next loop iteration so callers can register handlers
        asyncio.get_running_loop().call_soon(self._mark_open)
        self._bind(connection)

    async def _open_attached(self, endpoint: Endpoint) -> None:
        if self.is_closed:
            return
        self.state = SessionState.OPENING
        try:
            connection = await Connection.open(endpoint, open_timeout=self._open_timeout)
        except ConnectError as e:
            self._fail(e)
            return
        if self.is_closed:
            await connection.close()
            return
        self._connection = connection
        self._bind(connection)
        self._mark_open()
        connection.start()

    def _bind(self, connection: Connection) -> None:
        connection.on_message(self._handle_frame)
        connection.on_close(self._handle_connection_closed)
        connection.on_error(self._handle_connection_error)

    def _mark_open(self) -> None:
        if self.state != SessionState.OPENING:
            return
        self.state = SessionState.OPEN
        logger.debug("Session {} open", self.identity)
        self._settled.set()
        self._emit(SessionEvent(EventType.OPEN))
        backlog, self._backlog = self._backlog, []
        for frame in backlog:
            self._handle_frame(frame)

    # Incoming traffic

    def _handle_frame(self, data: Frame) -> None:
        if self.state in (SessionState.CREATED, SessionState.OPENING):
            self._backlog.append(data)
            return
        if self.is_closed:
            return

        if self.framing is Framing.RAW:
            self._emit_output(data)
            return

        message = protocol.parse(data)
        if message is None:
            self._emit_output(data)
        elif message.method == protocol.STDOUT:
            self._emit_output(message.params if isinstance(message.params, str) else data)
        elif message.method == protocol.ON_EXEC_EXIT:
            logger.info("Remote process of session {} exited", self.identity)
            self._transition_closed(CloseReason.EXITED)
        elif message.method == protocol.ON_EXEC_ERROR:
            self._fail(self._exec_error(message))
        elif message.is_response or message.method == protocol.CONNECTED:
            if message.is_error:
                logger.warning("Request {} failed: {}", message.id, describe_error(message.error))
        else:
            self._emit_output(data)

    def _handle_control_message(self, message: protocol.Message) -> None:
        if self.is_closed:
            return
        if message.method == protocol.ON_EXEC_EXIT:
            logger.info("Remote process of session {} exited", self.identity)
            self._transition_closed(CloseReason.EXITED)
        elif message.method == protocol.ON_EXEC_ERROR:
            self._fail(self._exec_error(message))

    def _handle_connection_closed(self, info: CloseInfo) -> None:
        if not self.is_closed:
            self._transition_closed(CloseReason.LOCAL if info.local else CloseReason.DISCONNECTED)

    def _handle_connection_error(self, error: BaseException) -> None:
        if not self.is_closed:
            self._fail(ConnectionClosedError(f"Session connection failed: {error}"))

    @staticmethod
    def _exec_error(message: protocol.Message) -> ProtocolError:
        return ProtocolError(
            f"Session error: {describe_error(message.params)}", error=message.params
        )

    # Closing

    def _transition_closed(self, reason: CloseReason) -> None:
        self.state = SessionState.CLOSED
        self._finish(reason)

    def _fail(self, error: BaseException) -> None:
        if self.is_closed:
            return
        logger.warning("Session {} failed: {}", self.identity, error)
        self.state = SessionState.ERRORED
        self.error = error
        self._emit(SessionEvent(EventType.ERROR, error=error))
        self._finish(CloseReason.ERROR)

    def _finish(self, reason: CloseReason) -> None:
        self.close_reason = reason
        if self._control is not None and isinstance(self.identity, SessionId):
            self._control.unbind(self.identity.value)
        self._settled.set()
        self._emit(SessionEvent(EventType.CLOSE, reason=reason))
        self._finished.set()
        if reason is not CloseReason.LOCAL and self._connection is not None:
            self._spawn(self._connection.close())

    # Publishing

    def _emit_output(self, data: Frame) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        if payload:
            self._emit(SessionEvent(EventType.OUTPUT, data=payload))

    def _emit(self, event: SessionEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

        if event.type == EventType.OPEN:
            self._call_handlers(self._open_handlers)
        elif event.type == EventType.OUTPUT:
            self._call_handlers(self._output_handlers, event.data)
        elif event.type == EventType.ERROR:
            self._call_handlers(self._error_handlers, event.error)
        else:
            self._call_handlers(self._close_handlers, event.reason)

    def _call_handlers(self, handlers: list[Callable[..., None]], *args: Any) -> None:
        for handler in list(handlers):
            try:
                handler(*args)
            except Exception:
                logger.exception("Session {} handler failed", self.identity)

    def _open_connection(self) -> Connection:
        """The session connection, if the session is open."""
        if self.is_closed:
            raise SessionClosedError(f"Session {self.identity} is closed")
        if self.state != SessionState.OPEN or self._connection is None:
            raise SessionNotOpenError(f"Session {self.identity} is not open yet")
        return self._connection

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def __repr__(self) -> str:
        return f"TerminalSession(identity={self.identity!r}, state={self.state.value})"
