"""Session lifecycle and exit status mapping.

Order of events for one invocation:

    capture terminal -> connect -> raw mode -> resolve remote binary
    -> reverse tunnel (namespace mode) -> launch -> relays -> wait
    -> restore terminal -> exit status

The terminal is restored on every path, after the remote command has
finished, and before the exit status is handed back to the caller.
"""

import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Callable, Mapping, Optional

from shared.nonce import NONCE_ENV, Nonce, RandomSourceError, generate_nonce

from .config import ClientOptions, namespace_enabled
from .exceptions import ConfigurationError, CPUError, RemoteCommandError
from .gate import FileShareServer
from .launcher import build_command, launch, window_size
from .terminal import Multiplexer, TerminalState
from .transport import connect as ssh_connect
from .tunnel import negotiate

logger = logging.getLogger(__name__)


REMOTE_BIN_NAME = "cpud"

# Status for failures that carry no remote exit status
EXIT_FAILURE = 1


def resolve_remote_bin(session) -> str:
    """Locate cpud on the remote host with `command -v`."""
    try:
        output = session.run(f"command -v {REMOTE_BIN_NAME}")
    except RemoteCommandError as e:
        raise ConfigurationError(
            f"{REMOTE_BIN_NAME} not found on remote PATH: {e}", option="bin"
        ) from e
    lines = output.decode("utf-8", errors="replace").split()
    if not lines:
        raise ConfigurationError(f"{REMOTE_BIN_NAME} not found on remote PATH", option="bin")
    return lines[-1]


@contextmanager
def _forward_resize(exec_session, terminal):
    """Forward local window size changes while the command runs."""
    if (
        not getattr(terminal, "is_tty", False)
        or not hasattr(signal, "SIGWINCH")
        or threading.current_thread() is not threading.main_thread()
    ):
        yield
        return

    def on_resize(signum, frame):
        width, height = window_size()
        try:
            exec_session.resize(width, height)
        except Exception as e:
            logger.debug(f"resize: {e}")

    previous = signal.signal(signal.SIGWINCH, on_resize)
    try:
        yield
    finally:
        signal.signal(signal.SIGWINCH, previous)


def _run_session(
    session,
    options: ClientOptions,
    args: str,
    terminal,
    stdin,
    stdout,
    stderr,
    environ: Mapping[str, str],
    server: Optional[FileShareServer],
    nonce_factory: Callable[[], Nonce],
) -> None:
    if not options.bin:
        options = options.model_copy(update={"bin": resolve_remote_bin(session)})

    port9p = None
    extra_env = []
    if namespace_enabled(environ):
        nonce = nonce_factory()
        port9p = negotiate(
            session, options.root, nonce, options.timeout9p,
            server=server, port9p=options.port9p,
        )
        extra_env.append((NONCE_ENV, str(nonce)))
    else:
        logger.debug("namespace export disabled")

    command = build_command(options, args, port9p)
    logger.debug(f"command is {command!r}")
    exec_session = launch(session, command, environ, extra_env)
    try:
        mux = Multiplexer(exec_session, stdin, stdout, stderr)
        mux.start()
        with _forward_resize(exec_session, terminal):
            try:
                exec_session.wait()
            finally:
                mux.drain()
    finally:
        exec_session.close()


def run_client(
    options: ClientOptions,
    connect: Callable[[ClientOptions], object] = ssh_connect,
    terminal=None,
    stdin=None,
    stdout=None,
    stderr=None,
    environ: Optional[Mapping[str, str]] = None,
    server: Optional[FileShareServer] = None,
    nonce_factory: Callable[[], Nonce] = generate_nonce,
) -> int:
    """Run one remote session and return the process exit status.

    Args:
        options: Validated client options
        connect: Opens the transport session for options
        terminal: Terminal state holder; defaults to one for stdin
        stdin, stdout, stderr: Local byte streams; default to the process's
        environ: Local environment; defaults to os.environ
        server: File-share server for the namespace; looked up when None
        nonce_factory: Produces the session nonce

    Returns:
        0 on success, the remote exit status when the command reported one,
        1 for every other failure
    """
    environ = os.environ if environ is None else environ
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout.buffer
    stderr = stderr or sys.stderr.buffer
    terminal = terminal or TerminalState(stdin.fileno())

    args = options.command or environ.get("SHELL", "")
    terminal.capture()
    session = None
    try:
        session = connect(options)
        with terminal.raw():
            _run_session(
                session, options, args, terminal, stdin, stdout, stderr,
                environ, server, nonce_factory,
            )
        return 0
    except RemoteCommandError as e:
        logger.error(f"SSH error {e}")
        return e.exit_status
    except (CPUError, RandomSourceError) as e:
        logger.error(f"SSH error {e}")
        return EXIT_FAILURE
    finally:
        terminal.restore()
        if session is not None:
            session.close()
