"""Shared fixtures for all tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Generator
from typing import Any
from urllib.parse import urlsplit

import pytest
import websockets
from websockets import State

from terminal_connector.config import ConnectorConfig
from terminal_connector.exec.dialect import CONNECTION, SESSION_ID

_CLOSE = object()

Responder = Callable[[dict[str, Any]], list[Any]]


class FakeWebSocket:
    """In-memory stand-in for ``websockets.ClientConnection``.

    Frames queued with ``feed()`` are delivered by async iteration. An
    optional ``responder`` is called with every JSON frame the client sends
    and returns frames to deliver in reply.
    """

    def __init__(self, url: str = "ws://test/", responder: Responder | None = None):
        self.url = url
        self.responder = responder
        self.sent: list[str | bytes] = []
        self.state = State.OPEN
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.close_calls = 0
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, *frames: Any) -> None:
        for frame in frames:
            if isinstance(frame, (dict, list)):
                frame = json.dumps(frame)
            self._incoming.put_nowait(frame)

    def remote_close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_code = code
        self.close_reason = reason
        self._incoming.put_nowait(_CLOSE)

    def sent_json(self) -> list[dict[str, Any]]:
        messages = []
        for frame in self.sent:
            try:
                payload = json.loads(frame)
            except ValueError:
                continue
            if isinstance(payload, dict):
                messages.append(payload)
        return messages

    def sent_methods(self) -> list[str]:
        return [m["method"] for m in self.sent_json() if "method" in m]

    async def send(self, data: str | bytes) -> None:
        if self.state is not State.OPEN:
            raise websockets.ConnectionClosedOK(None, None)
        self.sent.append(data)
        if self.responder is not None and isinstance(data, str):
            try:
                message = json.loads(data)
            except ValueError:
                return
            if isinstance(message, dict):
                self.feed(*self.responder(message))

    async def close(self) -> None:
        self.close_calls += 1
        if self.state is State.OPEN:
            self.state = State.CLOSED
            self.close_code = 1000
            self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._incoming.get()
            if item is _CLOSE:
                return
            yield item


class FakeExecServer:
    """Scripted exec server reachable through a patched ``websockets.connect``.

    Control connections answer like machine-exec: ``connected`` on connect,
    the running list for ``listContainers`` and ``create_result`` for
    create/exec requests.
    """

    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.headers: list[dict[str, str] | None] = []
        self.running: list[str] = ["app", "db", "che-gateway"]
        self.create_result: Any = 31
        self.greet = True
        self.refuse: Exception | None = None

    def paths(self) -> list[str]:
        return [urlsplit(ws.url).path for ws in self.sockets]

    def respond(self, message: dict[str, Any]) -> list[Any]:
        method = message.get("method")
        msg_id = message.get("id")
        if msg_id is None:
            return []
        if method == "listContainers":
            result = [{"container": name, "pod": "workspace-pod"} for name in self.running]
            return [{"jsonrpc": "2.0", "id": msg_id, "result": result}]
        if method in ("create", "exec"):
            return [{"jsonrpc": "2.0", "id": msg_id, "result": self.create_result}]
        return [{"jsonrpc": "2.0", "id": msg_id, "result": True}]

    async def connect(self, url: str, additional_headers=None, **kwargs) -> FakeWebSocket:
        if self.refuse is not None:
            raise self.refuse
        path = urlsplit(url).path
        responder = None if "/attach/" in path else self.respond
        ws = FakeWebSocket(url, responder=responder)
        if self.greet and path.endswith("/connect"):
            ws.feed({"jsonrpc": "2.0", "method": "connected", "params": {}})
        self.sockets.append(ws)
        self.headers.append(dict(additional_headers) if additional_headers else None)
        return ws


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle() -> Callable[..., Any]:
    """Coroutine function that lets reader tasks and scheduled callbacks run."""
    return _settle


@pytest.fixture
def make_ws() -> type[FakeWebSocket]:
    return FakeWebSocket


@pytest.fixture
def mock_env_clear(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Clear all connector-related environment variables for testing.

    This ensures tests don't accidentally use real credentials from the environment.
    """
    env_vars_to_clear = [
        "MACHINE_EXEC_URL",
        "CHE_MACHINE_TOKEN",
        "CHE_WORKSPACE_ID",
        "CHE_API",
        "DEVWORKSPACE_DESCRIPTOR",
        "TERMINAL_CONNECTOR_DIALECT",
        "TERMINAL_CONNECTOR_TOKEN_FILE",
        "TERMINAL_CONNECTOR_TOKEN_IN_QUERY",
        "TERMINAL_CONNECTOR_TIMEOUT",
        "TERMINAL_CONNECTOR_LOG_LEVEL",
    ]
    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("TERMINAL_CONNECTOR_TOKEN_FILE", "/nonexistent/token")
    yield


@pytest.fixture
def mock_token() -> str:
    """Mock bearer credential for testing."""
    return "test_token_123456789"


@pytest.fixture
def session_id_config() -> ConnectorConfig:
    return ConnectorConfig(
        server_url="ws://localhost:3333", dialect=SESSION_ID, request_timeout=1.0
    )


@pytest.fixture
def connection_config(mock_token: str) -> ConnectorConfig:
    return ConnectorConfig(
        server_url="wss://gateway.example.com/ws-123/exec",
        dialect=CONNECTION,
        token=mock_token,
        request_timeout=1.0,
    )


@pytest.fixture
def exec_server(monkeypatch: pytest.MonkeyPatch) -> FakeExecServer:
    server = FakeExecServer()
    monkeypatch.setattr("terminal_connector.exec.transport.websockets.connect", server.connect)
    return server


DESCRIPTOR_YAML = """\
schemaVersion: 2.1.0
metadata:
  name: sample
components:
  - name: app
    container:
      image: quay.io/devfile/universal-developer-image:latest
      memoryLimit: 2Gi
  - name: m2
    volume:
      size: 1G
  - name: db
    container:
      image: postgres:15
  - name: che-gateway
    kubernetes:
      uri: gateway.yaml
"""


@pytest.fixture
def descriptor_yaml() -> str:
    return DESCRIPTOR_YAML


@pytest.fixture
def descriptor_file(tmp_path) -> str:
    path = tmp_path / "original.devworkspace.yaml"
    path.write_text(DESCRIPTOR_YAML, encoding="utf-8")
    return str(path)
