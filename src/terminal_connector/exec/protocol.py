"""JSON-RPC message format spoken by machine-exec servers.

Every frame is one UTF-8 JSON text message:

    Request:       {"jsonrpc": "2.0", "id": <int>, "method": <str>, "params": ...}
    Response:      {"jsonrpc": "2.0", "id": <int>, "result": ...}
                   {"jsonrpc": "2.0", "id": <int>, "error": {...}}
    Notification:  {"jsonrpc": "2.0", "method": <str>, "params": ...}

Frames that are not JSON-RPC envelopes are legal on session connections and
carry terminal output; ``parse`` returns None for them.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any

JSONRPC_VERSION = "2.0"

# Request methods
LIST_CONTAINERS = "listContainers"
RESIZE = "resize"
STDIN = "stdin"

# Server pushed methods
CONNECTED = "connected"
ON_EXEC_EXIT = "onExecExit"
ON_EXEC_ERROR = "onExecError"
STDOUT = "stdout"

_MISSING = object()


@dataclass
class Message:
    """A parsed JSON-RPC message."""

    id: int | str | None = None
    method: str | None = None
    params: Any = None
    result: Any = None
    error: Any = None
    has_result: bool = False
    jsonrpc: str = JSONRPC_VERSION

    @property
    def is_notification(self) -> bool:
        return self.method is not None and self.id is None

    @property
    def is_response(self) -> bool:
        return self.method is None and self.id is not None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        """Serialize the message to a JSON text frame."""
        payload: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.id is not None:
            payload["id"] = self.id
        if self.method is not None:
            payload["method"] = self.method
            payload["params"] = self.params if self.params is not None else {}
        elif self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return json.dumps(payload, separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> Message | None:
        """Parse a frame into a Message.

        Returns:
            The parsed Message, or None if the frame is not a JSON-RPC envelope.
        """
        try:
            payload = json.loads(data)
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None

        method = payload.get("method")
        msg_id = payload.get("id")
        result = payload.get("result", _MISSING)
        error = payload.get("error")

        if method is not None and not isinstance(method, str):
            return None
        if msg_id is not None and (
            isinstance(msg_id, bool) or not isinstance(msg_id, (int, str))
        ):
            return None
        is_reply = result is not _MISSING or error is not None
        if method is None and not (is_reply and (msg_id is not None or "jsonrpc" in payload)):
            return None

        return cls(
            id=msg_id,
            method=method,
            params=payload.get("params"),
            result=None if result is _MISSING else result,
            error=error,
            has_result=result is not _MISSING,
            jsonrpc=str(payload.get("jsonrpc", JSONRPC_VERSION)),
        )


def request(msg_id: int, method: str, params: Any = None) -> str:
    """Create a request frame."""
    return Message(id=msg_id, method=method, params=params).to_json()


def notification(method: str, params: Any = None) -> str:
    """Create a notification frame (no reply expected)."""
    return Message(method=method, params=params).to_json()


def parse(data: str | bytes) -> Message | None:
    """Parse a frame. Alias for ``Message.from_json``."""
    return Message.from_json(data)


def is_session_id(value: Any) -> bool:
    """Check whether a ``create`` result is a finite numeric session id."""
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value) and value.is_integer()


def exec_id(params: Any) -> int | None:
    """Extract the session id referenced by an onExecExit/onExecError push."""
    if isinstance(params, dict):
        params = params.get("id", params.get("sessionId"))
    if is_session_id(params):
        return int(params)
    return None


def container_names(result: Any) -> list[str]:
    """Extract container names from a listContainers result.

    The server answers with ``[{"container": "app", "pod": "..."}, ...]``;
    plain string entries are accepted too.

    Raises:
        ValueError: If the result is not a list of containers.
    """
    if not isinstance(result, list):
        raise ValueError(f"Expected a list of containers, got {type(result).__name__}")
    names: list[str] = []
    for entry in result:
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("container"), str):
            names.append(entry["container"])
        else:
            raise ValueError(f"Unrecognized container entry: {entry!r}")
    return names
