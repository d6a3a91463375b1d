"""Control channel: container listing and terminal session bootstrap.

Replies are matched to requests by id, so pushes such as ``onExecExit`` may
arrive between a request and its response without confusing the client.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..errors import (
    ConnectionClosedError,
    ProtocolError,
    SessionCreateError,
    TimeoutError,
    describe_error,
)
from . import protocol
from .dialect import Dialect
from .session import ConnectionIdentity, SessionId, TerminalSession
from .transport import CloseInfo, Connection, Frame

if TYPE_CHECKING:
    from ..config import ConnectorConfig

# Reserved id so the listing reply can never be mistaken for another reply
LIST_CONTAINERS_ID = -5

SessionListener = Callable[[protocol.Message], None]
ReplyHook = Callable[[protocol.Message], None]
PendingReply = tuple[asyncio.Future[protocol.Message], ReplyHook | None]


class ControlChannel:
    """Client for the exec server's control endpoint.

    The constructor wraps an already-opened ``Connection`` (for testability);
    ``connect()`` opens one from the configuration (for convenience):

        control = await ControlChannel.connect(config)
        async with control:
            names = await control.list_running_containers()
            session = await control.create_session(names[0])
            await session.wait_open()
    """

    def __init__(self, connection: Connection, config: ConnectorConfig):
        self._connection = connection
        self._config = config
        self._dialect: Dialect = config.dialect
        self._ids = itertools.count(0)
        self._pending: dict[int | str, PendingReply] = {}
        self._sessions: dict[int, SessionListener] = {}
        self._early: dict[int, list[protocol.Message]] = {}
        self._handoff: list[Frame] | None = None
        self._handed_off = False
        self._closed = False
        self._connected = asyncio.Event()
        self._list_lock = asyncio.Lock()
        self._create_lock = asyncio.Lock()

        connection.on_message(self._handle_frame)
        connection.on_close(self._handle_close)
        connection.start()

    @classmethod
    async def connect(
        cls, config: ConnectorConfig, *, container: str | None = None
    ) -> ControlChannel:
        """Open the control endpoint and wait until the server is ready.

        Raises:
            ConnectError: If the handshake fails.
            TimeoutError: If the server never reports readiness.
        """
        connection = await Connection.open(
            config.control_endpoint(container), open_timeout=config.open_timeout
        )
        channel = cls(connection, config)
        try:
            await channel.wait_connected()
        except BaseException:
            await channel.close()
            raise
        return channel

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._handed_off and not self._connection.closed

    async def wait_connected(self) -> None:
        """Wait for the server's ``connected`` push, if the dialect sends one.

        Raises:
            ConnectionClosedError: If the connection closes first.
            TimeoutError: If the push does not arrive in time.
        """
        if not self._dialect.waits_for_connected:
            return
        try:
            await asyncio.wait_for(self._connected.wait(), self._config.request_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Exec server did not report readiness within {self._config.request_timeout}s"
            ) from None
        if self._connection.closed:
            raise ConnectionClosedError("Control connection closed before the server was ready")

    async def list_running_containers(self) -> list[str]:
        """Ask the server for the names of all running containers.

        Raises:
            ProtocolError: If the dialect has no listing or the reply is an error.
            TimeoutError: If no reply arrives in time.
        """
        if not self._dialect.supports_list:
            raise ProtocolError(f"The {self._dialect.name} dialect cannot list containers")
        async with self._list_lock:
            reply = await self._call(LIST_CONTAINERS_ID, protocol.LIST_CONTAINERS, [])
        if reply.is_error:
            raise ProtocolError(
                f"listContainers failed: {describe_error(reply.error)}", error=reply.error
            )
        try:
            names = protocol.container_names(reply.result)
        except ValueError as e:
            raise ProtocolError(f"Malformed listContainers reply: {e}") from e
        logger.debug("Running containers: {}", names)
        return names

    async def create_session(
        self,
        container: str,
        command_line: str | None = None,
        workdir: str | None = None,
        columns: int = 80,
        rows: int = 24,
    ) -> TerminalSession:
        """Ask the server to start a terminal session in ``container``.

        Args:
            container: Name of the container to open a terminal in.
            command_line: Command to run through ``sh -c``. If empty, the
                server starts its default shell.
            workdir: Working directory for the command.
            columns: Initial terminal width.
            rows: Initial terminal height.

        Returns:
            A TerminalSession that opens asynchronously; await
            ``session.wait_open()`` or register ``on_open`` handlers.

        Raises:
            SessionCreateError: If the server rejects the request or answers
                with an unrecognized result.
            TimeoutError: If no reply arrives in time.
        """
        identifier: dict[str, Any] = {"machineName": container}
        if self._config.workspace_id:
            identifier["workspaceId"] = self._config.workspace_id
        params = {
            "identifier": identifier,
            self._dialect.command_key: ["sh", "-c", command_line] if command_line else [],
            "tty": True,
            "cwd": workdir or "",
            "cols": columns,
            "rows": rows,
        }

        async with self._create_lock:
            reply = await self._call(
                next(self._ids), self._dialect.create_method, params, on_reply=self._claim
            )

        if reply.is_error:
            raise SessionCreateError(
                f"Server refused to open a terminal in {container!r}: "
                f"{describe_error(reply.error)}",
                error=reply.error,
            )

        if protocol.is_session_id(reply.result):
            session_id = int(reply.result)
            logger.info("Created terminal session {} in {}", session_id, container)
            session = TerminalSession(
                SessionId(session_id),
                control=self,
                size=(columns, rows),
                open_timeout=self._config.open_timeout,
            )
            self._bind(session_id, session._handle_control_message)
            session._start(self._config.attach_endpoint(session_id))
            return session

        if reply.result is None:
            logger.info(
                "Terminal session in {} runs on connection {}", container, self._connection.id
            )
            frames, self._handoff = self._handoff or [], None
            self._handed_off = True
            session = TerminalSession(
                ConnectionIdentity(self._connection.id), size=(columns, rows)
            )
            session._adopt(self._connection, frames)
            return session

        raise SessionCreateError(f"Unrecognized create result: {reply.result!r}")

    async def resize(self, session_id: int, columns: int, rows: int) -> None:
        """Resize a session's terminal. Fire-and-forget."""
        await self._send(
            protocol.request(
                next(self._ids), protocol.RESIZE, {"id": session_id, "cols": columns, "rows": rows}
            )
        )

    def unbind(self, session_id: int) -> None:
        """Stop routing exit/error pushes for ``session_id``."""
        self._sessions.pop(session_id, None)
        self._early.pop(session_id, None)

    async def close(self) -> None:
        """Close the control connection. Closing twice is a no-op.

        Sessions are left alone, including one running on this channel's
        connection after a hand-off.
        """
        if self._closed:
            return
        self._closed = True
        if not self._handed_off:
            await self._connection.close()

    async def __aenter__(self) -> ControlChannel:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # Internals

    async def _send(self, frame: str) -> None:
        if self._closed or self._handed_off:
            raise ConnectionClosedError("Control channel is closed")
        await self._connection.send(frame)

    async def _call(
        self,
        msg_id: int,
        method: str,
        params: Any,
        *,
        on_reply: ReplyHook | None = None,
    ) -> protocol.Message:
        future: asyncio.Future[protocol.Message] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = (future, on_reply)
        try:
            await self._send(protocol.request(msg_id, method, params))
            return await asyncio.wait_for(future, self._config.request_timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"No reply to {method} within {self._config.request_timeout}s"
            ) from None
        finally:
            self._pending.pop(msg_id, None)

    def _claim(self, reply: protocol.Message) -> None:
        # Runs inside the reader before anything else is dispatched, so pushes
        # that race the creating coroutine are held for the new session.
        if reply.is_error:
            return
        if protocol.is_session_id(reply.result):
            self._early[int(reply.result)] = []
        elif reply.result is None:
            self._handoff = []

    def _bind(self, session_id: int, listener: SessionListener) -> None:
        early = self._early.pop(session_id, [])
        self._sessions[session_id] = listener
        for message in early:
            listener(message)

    def _handle_frame(self, data: Frame) -> None:
        if self._handed_off:
            return
        if self._handoff is not None:
            self._handoff.append(data)
            return

        message = protocol.parse(data)
        if message is None:
            logger.warning("Ignoring non JSON-RPC frame on control channel: {!r}", data[:200])
            return

        if message.method == protocol.CONNECTED:
            self._connected.set()
        elif message.method in (protocol.ON_EXEC_EXIT, protocol.ON_EXEC_ERROR):
            self._route(message)
        elif message.id is not None and message.method is None:
            self._resolve(message.id, message)
        elif message.method is not None:
            logger.debug("Ignoring {} push on control channel", message.method)
        else:
            logger.warning("Server error without request id: {}", describe_error(message.error))

    def _route(self, message: protocol.Message) -> None:
        session_id = protocol.exec_id(message.params)
        if session_id is None:
            logger.warning("{} push without a session id: {!r}", message.method, message.params)
            return
        listener = self._sessions.get(session_id)
        if listener is not None:
            listener(message)
        elif session_id in self._early:
            self._early[session_id].append(message)
        else:
            logger.debug("Ignoring {} for session {} which is not open", message.method, session_id)

    def _resolve(self, msg_id: int | str, message: protocol.Message) -> None:
        entry = self._pending.get(msg_id)
        if entry is None:
            if message.is_error:
                logger.warning("Request {} failed: {}", msg_id, describe_error(message.error))
            else:
                logger.debug("Unmatched reply for request {}", msg_id)
            return
        future, on_reply = entry
        if future.done():
            return
        if on_reply is not None:
            on_reply(message)
        future.set_result(message)

    def _handle_close(self, info: CloseInfo) -> None:
        if self._handed_off:
            return
        logger.debug("Control connection closed (code={})", info.code)
        error = ConnectionClosedError("Control connection closed")
        for future, _ in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        # Release wait_connected(); it checks the connection state afterwards
        self._connected.set()
