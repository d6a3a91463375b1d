"""Wire dialects spoken by machine-exec style servers.

Two dialects are in use:

    SESSION_ID:  The control connection answers ``create`` with an integer
                 session id. Terminal I/O flows over a second connection
                 opened at ``/attach/<id>`` as raw text frames, and resizes
                 are requests on the control connection.
    CONNECTION:  The connection that carried ``exec`` becomes the session.
                 Terminal I/O is wrapped in ``stdin``/``stdout`` messages and
                 resizes are sent on that same connection.

Whether a created session is attached or reused is decided by the shape of
the server's reply, not by the dialect; the dialect only picks method names
and endpoints.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Dialect:
    name: str
    create_method: str
    command_key: str
    supports_list: bool
    waits_for_connected: bool
    requires_token: bool


SESSION_ID = Dialect(
    name="session-id",
    create_method="create",
    command_key="cmd",
    supports_list=True,
    waits_for_connected=True,
    requires_token=False,
)

CONNECTION = Dialect(
    name="connection",
    create_method="exec",
    command_key="command",
    supports_list=False,
    waits_for_connected=False,
    requires_token=True,
)

DIALECTS = {d.name: d for d in (SESSION_ID, CONNECTION)}


def get_dialect(name: str) -> Dialect:
    """Look up a dialect by name.

    Raises:
        KeyError: If no dialect has that name.
    """
    return DIALECTS[name.strip().lower()]
