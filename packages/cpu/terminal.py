"""Local terminal handling and I/O relays.

The local terminal is put into raw mode for the session; keystrokes are
relayed to the remote stdin through an `EscapeFilter` that recognises the
local "newline ~ ." sequence, and the remote stdout/stderr are copied back
to the local streams. Each direction runs on its own thread.
"""

import logging
import os
import termios
import threading
import time
import tty
from contextlib import contextmanager
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


READ_SIZE = 4096

NEWLINES = (ord("\n"), ord("\r"))
TILDE = ord("~")
DOT = ord(".")


# ============================================================================
# Terminal state
# ============================================================================

class TerminalState:
    """Snapshot of a terminal's mode, restorable after raw mode.

    When fd is not a tty every method is a no-op, so the client also works
    with redirected stdin.
    """

    def __init__(self, fd: int):
        self.fd = fd
        self._saved: Optional[list] = None
        self._raw = False

    @property
    def is_tty(self) -> bool:
        return os.isatty(self.fd)

    def capture(self) -> Optional[list]:
        if self._saved is None and self.is_tty:
            self._saved = termios.tcgetattr(self.fd)
        return self._saved

    def enter_raw(self) -> None:
        if self.capture() is None:
            return
        tty.setraw(self.fd, termios.TCSANOW)
        self._raw = True

    def restore(self) -> None:
        """Put the captured mode back. Safe to call more than once.

        Failures are logged, never raised.
        """
        if not self._raw or self._saved is None:
            return
        self._raw = False
        try:
            termios.tcsetattr(self.fd, termios.TCSADRAIN, self._saved)
        except termios.error as e:
            logger.warning(f"Restoring terminal mode: {e}")

    @contextmanager
    def raw(self):
        self.enter_raw()
        try:
            yield self
        finally:
            self.restore()


# ============================================================================
# Escape sequence filter
# ============================================================================

class EscapeState(Enum):
    NORMAL = "normal"
    AFTER_NEWLINE = "after_newline"
    ESCAPE_ARMED = "escape_armed"


class EscapeFilter:
    """State machine over the local input bytes.

    "~" right after a newline arms the escape; a following "." ends the
    input, anything else is forwarded with the held "~" in front of it.
    """

    def __init__(self):
        self.state = EscapeState.NORMAL
        self.closed = False

    def feed(self, data: bytes) -> Tuple[bytes, bool]:
        """Process a chunk of input.

        Returns:
            (bytes to forward, whether the session-ending escape was seen).
            Input after the escape is dropped.
        """
        out = bytearray()
        if self.closed:
            return bytes(out), True

        for b in data:
            if self.state is EscapeState.ESCAPE_ARMED:
                if b == DOT:
                    self.closed = True
                    return bytes(out), True
                out.append(TILDE)
                out.append(b)
                self.state = EscapeState.NORMAL
            elif self.state is EscapeState.AFTER_NEWLINE and b == TILDE:
                self.state = EscapeState.ESCAPE_ARMED
            else:
                out.append(b)
                if b in NEWLINES:
                    self.state = EscapeState.AFTER_NEWLINE
                else:
                    self.state = EscapeState.NORMAL

        return bytes(out), False


# ============================================================================
# Relays
# ============================================================================

def relay_input(reader, remote_stdin, escape: Optional[EscapeFilter] = None) -> None:
    """Copy local input to the remote stdin until EOF, error or "~."."""
    escape = escape or EscapeFilter()
    read = getattr(reader, "read1", reader.read)
    while True:
        try:
            data = read(READ_SIZE)
        except (OSError, ValueError):
            return
        if not data:
            return

        out, closed = escape.feed(data)
        try:
            if out:
                remote_stdin.write(out)
                remote_stdin.flush()
            if closed:
                remote_stdin.close()
                return
        except (OSError, EOFError):
            return


def relay_output(source, sink) -> None:
    """Copy a remote stream to a local one until EOF or error."""
    read = getattr(source, "read1", source.read)
    while True:
        try:
            data = read(READ_SIZE)
            if not data:
                return
            sink.write(data)
            sink.flush()
        except (OSError, ValueError, EOFError):
            return


class Multiplexer:
    """Runs the input, stdout and stderr relays for one exec session.

    The relays are daemon threads scoped to the remote command: once the
    command has finished, the output relays get DRAIN_TIMEOUT to flush what
    is left and are then abandoned.
    """

    DRAIN_TIMEOUT = 0.5  # seconds

    def __init__(self, exec_session, stdin, stdout, stderr):
        self.exec_session = exec_session
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.escape = EscapeFilter()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self._spawn("cpu-stdin", relay_input, self.stdin, self.exec_session.stdin, self.escape)
        self._spawn("cpu-stdout", relay_output, self.exec_session.stdout, self.stdout)
        self._spawn("cpu-stderr", relay_output, self.exec_session.stderr, self.stderr)

    def _spawn(self, name, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def drain(self, timeout: float = DRAIN_TIMEOUT) -> None:
        """Give the output relays a bounded chance to finish."""
        deadline_at = time.monotonic() + timeout
        for thread in self._threads[1:]:
            thread.join(max(0.0, deadline_at - time.monotonic()))
