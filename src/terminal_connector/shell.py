"""Interactive terminal loop.

Connects the local terminal to an open TerminalSession:

1. Waits for the session to open and syncs the remote terminal size
2. Puts the local terminal in raw mode
3. Forwards stdin to the session and session output to stdout
4. Propagates local window size changes (SIGWINCH)

Pressing Ctrl+C twice in a row ends the local session; a single Ctrl+C is
forwarded to the remote shell.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import termios
import tty
from typing import BinaryIO

from loguru import logger

from .errors import ConnectionClosedError, SessionClosedError, SessionNotOpenError
from .exec.session import CloseReason, TerminalSession

CTRL_C = 0x03
DEFAULT_SIZE = (80, 24)


def get_terminal_size() -> tuple[int, int]:
    """Local terminal size as (columns, rows), with a default if not a TTY."""
    try:
        cols, rows = os.get_terminal_size()
    except OSError:
        return DEFAULT_SIZE
    return cols, rows


class QuitDetector:
    """Spots two consecutive Ctrl+C key presses in the input stream."""

    def __init__(self) -> None:
        self._armed = False

    def feed(self, data: bytes) -> tuple[bytes, bool]:
        """Scan a chunk of input.

        Returns:
            The bytes to forward and whether the user asked to quit. On quit,
            only the bytes before the second Ctrl+C are forwarded.
        """
        for i, byte in enumerate(data):
            if byte == CTRL_C:
                if self._armed:
                    return data[:i], True
                self._armed = True
            else:
                self._armed = False
        return data, False


async def run_interactive_session(
    session: TerminalSession,
    *,
    title: str | None = None,
    stdin_fd: int | None = None,
    stdout: BinaryIO | None = None,
) -> CloseReason:
    """Run an interactive terminal session until either side ends it.

    Args:
        session: A freshly created session (its handlers are registered here,
            so call this before yielding to the event loop).
        title: Name printed once the terminal is open, e.g. the container.
        stdin_fd: Input file descriptor (default: stdin).
        stdout: Binary output stream (default: stdout).

    Returns:
        Why the session ended. ``CloseReason.LOCAL`` means the user quit.
    """
    out = stdout or sys.stdout.buffer
    fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd

    def write_output(data: bytes) -> None:
        out.write(data)
        out.flush()

    session.on_output(write_output)
    await session.wait_open()

    if title:
        print(f"{title} terminal opened.", file=sys.stderr)

    # Geometry passed at creation is not applied by the server; resize once open
    await _resize_quietly(session, *get_terminal_size())

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    old_settings = termios.tcgetattr(fd) if os.isatty(fd) else None

    try:
        if old_settings is not None:
            tty.setraw(fd)

        def on_resize(signum, frame):
            cols, rows = get_terminal_size()
            loop.call_soon_threadsafe(
                lambda: asyncio.create_task(_resize_quietly(session, cols, rows))
            )

        signal.signal(signal.SIGWINCH, on_resize)

        stdin_task = asyncio.create_task(_forward_stdin(session, fd, stop_event, loop))
        closed_task = asyncio.create_task(session.wait_closed())

        done, pending = await asyncio.wait(
            [stdin_task, closed_task], return_when=asyncio.FIRST_COMPLETED
        )

        stop_event.set()
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if stdin_task in done:
            stdin_task.result()
        if not session.is_closed:
            await session.close()
        reason = session.close_reason or CloseReason.LOCAL
    finally:
        if old_settings is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        signal.signal(signal.SIGWINCH, signal.SIG_DFL)
        print("\n\rSession ended.", file=sys.stderr)

    logger.info("Session {} ended ({})", session.identity, reason.value)
    return reason


async def _resize_quietly(session: TerminalSession, cols: int, rows: int) -> None:
    try:
        await session.resize(cols, rows)
    except (ConnectionClosedError, SessionClosedError, SessionNotOpenError) as e:
        logger.debug("Resize skipped: {}", e)


async def _forward_stdin(
    session: TerminalSession,
    fd: int,
    stop_event: asyncio.Event,
    loop: asyncio.AbstractEventLoop,
) -> None:
    """Forward local input to the session until quit, EOF or session end."""
    detector = QuitDetector()
    data_ready = asyncio.Event()

    loop.add_reader(fd, data_ready.set)
    try:
        while not stop_event.is_set() and session.is_open:
            await data_ready.wait()
            data_ready.clear()
            try:
                data = os.read(fd, 4096)
            except OSError:
                break
            if not data:
                # EOF on stdin
                break

            data, quit_requested = detector.feed(data)
            if data:
                try:
                    await session.send(data)
                except SessionClosedError:
                    break
            if quit_requested:
                break
    finally:
        loop.remove_reader(fd)
