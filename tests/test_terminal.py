"""Tests for the terminal state holder, escape filter and relays."""

import io
import os
import pty
import termios

import pytest

from conftest import FakeExecSession, RecordingWriter
from cpu.terminal import (
    EscapeFilter,
    EscapeState,
    Multiplexer,
    TerminalState,
    relay_input,
    relay_output,
)


class TestEscapeFilter:
    """Tests for the newline-tilde escape state machine."""

    def test_plain_bytes_forwarded(self):
        out, closed = EscapeFilter().feed(b"hello")
        assert out == b"hello"
        assert closed is False

    def test_tilde_dot_after_newline_closes(self):
        """"a\\n~.b" forwards a and the newline, then stops before b."""
        out, closed = EscapeFilter().feed(b"a\n~.b")
        assert out == b"a\n"
        assert closed is True

    def test_double_tilde_reemits_both(self):
        """An armed escape followed by anything but "." re-emits the tilde."""
        escape = EscapeFilter()
        out, closed = escape.feed(b"a\n~~b")
        assert out == b"a\n~~b"
        assert closed is False
        assert escape.state is EscapeState.NORMAL

    def test_tilde_other_byte(self):
        out, closed = EscapeFilter().feed(b"\n~x")
        assert out == b"\n~x"
        assert closed is False

    def test_tilde_without_newline_is_literal(self):
        out, closed = EscapeFilter().feed(b"~.")
        assert out == b"~."
        assert closed is False

    def test_carriage_return_arms_escape(self):
        out, closed = EscapeFilter().feed(b"ls\r~.")
        assert out == b"ls\r"
        assert closed is True

    def test_escape_split_across_chunks(self):
        escape = EscapeFilter()
        assert escape.feed(b"a\n") == (b"a\n", False)
        assert escape.state is EscapeState.AFTER_NEWLINE
        assert escape.feed(b"~") == (b"", False)
        assert escape.state is EscapeState.ESCAPE_ARMED
        assert escape.feed(b".") == (b"", True)

    def test_repeated_newlines_keep_escape_available(self):
        out, closed = EscapeFilter().feed(b"\n\n~.")
        assert out == b"\n\n"
        assert closed is True

    def test_after_close_nothing_forwarded(self):
        escape = EscapeFilter()
        escape.feed(b"\n~.")
        assert escape.feed(b"more") == (b"", True)


class TestRelayInput:
    """Tests for the stdin relay."""

    def test_escape_closes_remote_stdin(self):
        remote = RecordingWriter()
        relay_input(io.BytesIO(b"a\n~.b"), remote)
        assert bytes(remote.data) == b"a\n"
        assert remote.closed is True

    def test_double_tilde_forwarded(self):
        remote = RecordingWriter()
        relay_input(io.BytesIO(b"a\n~~b"), remote)
        assert bytes(remote.data) == b"a\n~~b"
        assert remote.closed is False

    def test_local_eof_stops_quietly(self):
        remote = RecordingWriter()
        relay_input(io.BytesIO(b"echo hi\n"), remote)
        assert bytes(remote.data) == b"echo hi\n"
        assert remote.closed is False

    def test_write_failure_stops_quietly(self):
        relay_input(io.BytesIO(b"data"), RecordingWriter(fail=True))

    def test_read_failure_stops_quietly(self):
        class Broken:
            def read(self, size):
                raise OSError("EIO")

        remote = RecordingWriter()
        relay_input(Broken(), remote)
        assert remote.data == bytearray()


class TestRelayOutput:
    """Tests for the stdout/stderr relays."""

    def test_copies_until_eof(self):
        sink = io.BytesIO()
        relay_output(io.BytesIO(b"remote output\r\n"), sink)
        assert sink.getvalue() == b"remote output\r\n"

    def test_closed_sink_stops_quietly(self):
        sink = io.BytesIO()
        sink.close()
        relay_output(io.BytesIO(b"data"), sink)


class TestMultiplexer:
    """Tests for the three relay threads."""

    def test_relays_all_directions(self):
        exec_session = FakeExecSession(output=b"out", errors=b"err")
        stdout, stderr = io.BytesIO(), io.BytesIO()
        mux = Multiplexer(exec_session, io.BytesIO(b"in"), stdout, stderr)
        mux.start()
        mux.drain(timeout=2.0)
        for thread in mux._threads:
            thread.join(2.0)
        assert stdout.getvalue() == b"out"
        assert stderr.getvalue() == b"err"
        assert bytes(exec_session.stdin.data) == b"in"


class TestTerminalState:
    """Tests for capture, raw mode and restoration."""

    def test_non_tty_is_noop(self):
        read_fd, write_fd = os.pipe()
        try:
            state = TerminalState(read_fd)
            assert state.capture() is None
            with state.raw():
                pass
            state.restore()
        finally:
            os.close(read_fd)
            os.close(write_fd)

    def test_raw_then_restore(self):
        master, slave = pty.openpty()
        try:
            original_lflag = termios.tcgetattr(slave)[3]
            state = TerminalState(slave)
            state.capture()
            state.enter_raw()
            assert termios.tcgetattr(slave)[3] & termios.ICANON == 0
            state.restore()
            assert termios.tcgetattr(slave)[3] == original_lflag
        finally:
            os.close(master)
            os.close(slave)

    def test_restore_twice_is_safe(self):
        master, slave = pty.openpty()
        try:
            state = TerminalState(slave)
            with state.raw():
                pass
            state.restore()
            state.restore()
        finally:
            os.close(master)
            os.close(slave)

    def test_restore_failure_is_logged_not_raised(self, caplog):
        master, slave = pty.openpty()
        state = TerminalState(slave)
        state.enter_raw()
        os.close(slave)
        os.close(master)
        state.restore()
        assert "Restoring terminal mode" in caplog.text

    def test_raw_restores_on_exception(self):
        master, slave = pty.openpty()
        try:
            original = termios.tcgetattr(slave)
            state = TerminalState(slave)
            with pytest.raises(RuntimeError):
                with state.raw():
                    raise RuntimeError("remote failed")
            assert termios.tcgetattr(slave) == original
        finally:
            os.close(master)
            os.close(slave)
