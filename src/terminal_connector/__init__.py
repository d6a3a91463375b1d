"""Connect a local terminal to a shell in a workspace container."""

from __future__ import annotations

from .config import ConnectorConfig
from .directory import ContainerDirectory
from .errors import (
    ConfigurationError,
    ConnectError,
    ConnectionClosedError,
    ProtocolError,
    SessionClosedError,
    SessionCreateError,
    SessionNotOpenError,
    TerminalConnectorError,
    TimeoutError,
)
from .exec import (
    CloseReason,
    ControlChannel,
    Endpoint,
    EventType,
    SessionEvent,
    SessionState,
    TerminalSession,
)

__all__ = [
    "ConnectorConfig",
    "ContainerDirectory",
    "ControlChannel",
    "TerminalSession",
    "SessionState",
    "SessionEvent",
    "EventType",
    "CloseReason",
    "Endpoint",
    # Errors
    "TerminalConnectorError",
    "ConfigurationError",
    "ConnectError",
    "ConnectionClosedError",
    "ProtocolError",
    "SessionCreateError",
    "SessionClosedError",
    "SessionNotOpenError",
    "TimeoutError",
]
