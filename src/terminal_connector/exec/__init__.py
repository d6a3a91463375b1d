"""Client for machine-exec style remote terminal servers.

This package speaks the JSON-RPC over WebSocket protocol used to list
workspace containers, create terminal sessions in them and stream terminal
I/O.
"""

from __future__ import annotations

from .control import LIST_CONTAINERS_ID, ControlChannel
from .dialect import CONNECTION, DIALECTS, SESSION_ID, Dialect, get_dialect
from .endpoint import Endpoint
from .protocol import Message, notification, parse, request
from .session import (
    CloseReason,
    ConnectionIdentity,
    EventType,
    Framing,
    SessionEvent,
    SessionId,
    SessionIdentity,
    SessionState,
    TerminalSession,
)
from .transport import CloseInfo, Connection

__all__ = [
    # Channels
    "Connection",
    "CloseInfo",
    "ControlChannel",
    "LIST_CONTAINERS_ID",
    "Endpoint",
    # Dialects
    "Dialect",
    "DIALECTS",
    "SESSION_ID",
    "CONNECTION",
    "get_dialect",
    # Protocol
    "Message",
    "notification",
    "parse",
    "request",
    # Sessions
    "TerminalSession",
    "SessionState",
    "SessionEvent",
    "EventType",
    "CloseReason",
    "Framing",
    "SessionId",
    "ConnectionIdentity",
    "SessionIdentity",
]
