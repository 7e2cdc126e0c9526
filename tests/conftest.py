"""Fakes standing in for the paramiko-backed transport."""

import io
import socket
import threading
from collections import deque

import pytest

from cpu.exceptions import RemoteCommandError


class RecordingWriter:
    """Remote stdin stand-in that remembers writes and EOF."""

    def __init__(self, fail: bool = False):
        self.data = bytearray()
        self.closed = False
        self.fail = fail

    def write(self, data: bytes) -> int:
        if self.fail:
            raise OSError("Socket is closed")
        self.data += data
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


class FakeChannel:
    """Tunneled connection that replays scripted chunks."""

    def __init__(self, chunks=(), hang: bool = False):
        self._chunks = deque(chunks)
        self.hang = hang
        self.closed = False
        self.timeouts = []

    def settimeout(self, timeout):
        self.timeouts.append(timeout)

    def recv(self, size: int) -> bytes:
        if self._chunks:
            chunk = self._chunks.popleft()
            return chunk[:size]
        if self.hang:
            raise socket.timeout("timed out")
        return b""

    def close(self) -> None:
        self.closed = True


class FakeListener:
    """Reverse listener fed from a list of channels."""

    def __init__(self, channels=(), addr: str = "127.0.0.1:0", close_when_empty: bool = False):
        self._channels = deque(channels)
        self.addr = addr
        self.close_when_empty = close_when_empty
        self._closed = threading.Event()
        self.accept_timeouts = []

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def accept(self, timeout=None):
        self.accept_timeouts.append(timeout)
        if self._channels:
            return self._channels.popleft()
        if self.close_when_empty:
            return None
        self._closed.wait(timeout)
        return None

    def close(self) -> None:
        self._closed.set()


class FakeExecSession:
    """Exec session that records what the launcher asked for."""

    def __init__(self, output: bytes = b"", errors: bytes = b"", exit_status: int = 0):
        self.env = []
        self.pty = None
        self.command = None
        self.resizes = []
        self.stdin = RecordingWriter()
        self.stdout = io.BytesIO(output)
        self.stderr = io.BytesIO(errors)
        self.exit_status = exit_status
        self.closed = False
        self.fail_env = set()

    def setenv(self, name, value):
        if name in self.fail_env:
            raise OSError(f"refused {name}")
        self.env.append((name, value))

    def request_pty(self, term, width, height, modes):
        self.pty = (term, width, height, dict(modes))

    def start(self, command):
        self.command = command

    def resize(self, width, height):
        self.resizes.append((width, height))

    def wait(self):
        if self.exit_status != 0:
            raise RemoteCommandError(
                f"Process exited with status {self.exit_status}", exit_status=self.exit_status
            )

    def close(self):
        self.closed = True


class FakeSession:
    """Transport session granting a listener on a fixed port."""

    def __init__(self, allocated_port: int = 40123, listener=None, exec_session=None, run_output: bytes = b""):
        self.allocated_port = allocated_port
        self.listener = listener
        self.exec_session = exec_session or FakeExecSession()
        self.run_output = run_output
        self.listen_calls = []
        self.run_calls = []
        self.closed = False

    def listen(self, address):
        self.listen_calls.append(address)
        if self.listener is None:
            host = address.rpartition(":")[0]
            self.listener = FakeListener(addr=f"{host}:{self.allocated_port}")
        return self.listener

    def run(self, command):
        self.run_calls.append(command)
        return self.run_output

    def new_exec_session(self):
        return self.exec_session

    def close(self):
        self.closed = True


class FakeTerminal:
    """Terminal state holder that counts mode changes."""

    is_tty = False

    def __init__(self):
        self.captured = 0
        self.raw_entered = 0
        self.restored = 0
        self._raw = False

    def capture(self):
        self.captured += 1

    def restore(self):
        self.restored += 1
        self._raw = False

    class _Raw:
        def __init__(self, terminal):
            self.terminal = terminal

        def __enter__(self):
            self.terminal.raw_entered += 1
            self.terminal._raw = True
            return self.terminal

        def __exit__(self, *exc):
            self.terminal.restore()
            return False

    def raw(self):
        return self._Raw(self)


class RecordingServer:
    """File-share server that remembers the connections it was given."""

    def __init__(self):
        self.served = []
        self.event = threading.Event()

    def serve(self, connection, root):
        self.served.append((connection, root))
        self.event.set()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def fake_terminal():
    return FakeTerminal()


@pytest.fixture
def recording_server():
    return RecordingServer()
