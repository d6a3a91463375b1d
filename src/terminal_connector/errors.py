"""Error types raised by the terminal connector."""

from __future__ import annotations

import builtins
from typing import Any


class TerminalConnectorError(Exception):
    """Base class for all terminal connector errors."""


class ConfigurationError(TerminalConnectorError):
    """A required credential or descriptor is missing or unreadable."""


class ConnectError(TerminalConnectorError):
    """The transport handshake with a remote endpoint failed."""

    def __init__(self, url: str, message: str):
        super().__init__(f"Failed to connect to {url}: {message}")
        self.url = url


class ConnectionClosedError(TerminalConnectorError):
    """An operation was attempted on a connection that is already closed."""


class ProtocolError(TerminalConnectorError):
    """A response was malformed or carried an error object."""

    def __init__(self, message: str, *, error: Any | None = None):
        super().__init__(message)
        self.error = error


class SessionCreateError(ProtocolError):
    """The server rejected the terminal session creation request."""


class SessionClosedError(TerminalConnectorError):
    """An operation was attempted on a terminal session that is closed."""


class SessionNotOpenError(TerminalConnectorError):
    """An operation was attempted on a terminal session that is not open yet."""


class TimeoutError(TerminalConnectorError, builtins.TimeoutError):
    """No correlated reply arrived within the configured wait."""


def describe_error(error: Any) -> str:
    """Render a JSON-RPC error object as a short human readable string."""
    if isinstance(error, dict):
        message = error.get("message") or error.get("msg")
        code = error.get("code")
        if message and code is not None:
            return f"{message} (code={code})"
        if message:
            return str(message)
    return repr(error)


__all__ = [
    "TerminalConnectorError",
    "ConfigurationError",
    "ConnectError",
    "ConnectionClosedError",
    "ProtocolError",
    "SessionCreateError",
    "SessionClosedError",
    "SessionNotOpenError",
    "TimeoutError",
    "describe_error",
]
