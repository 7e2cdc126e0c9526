"""Remote command launcher.

Builds the cpud command line, copies the local environment into the
remote session, requests a pty and starts the command.
"""

import logging
import shutil
from typing import Iterable, Mapping, Optional, Tuple

from .config import DEFAULT_MSIZE, ClientOptions
from .transport import ECHO, TTY_OP_ISPEED, TTY_OP_OSPEED

logger = logging.getLogger(__name__)


TERM = "ansi"
DEFAULT_WINDOW = (80, 40)

# Echo is the local terminal's job; the remote pty must not echo too.
PTY_MODES = {
    ECHO: 0,
    TTY_OP_ISPEED: 14400,
    TTY_OP_OSPEED: 14400,
}


def build_command(options: ClientOptions, args: str, port9p: Optional[str] = None) -> str:
    """Assemble the remote command line.

    Args:
        options: Client options (bin, mountopts, msize)
        args: Command for cpud to run, passed through verbatim
        port9p: Forwarded namespace port, None when the namespace is disabled
    """
    parts = [options.bin, "-remote", "-bin", options.bin]
    if port9p is not None:
        parts += ["-port9p", port9p]
    if options.mountopts:
        parts += ["-mountopts", options.mountopts]
    if options.msize != DEFAULT_MSIZE:
        parts += ["-msize", str(options.msize)]
    if args:
        parts.append(args)
    return " ".join(parts)


def propagate_env(exec_session, environ: Mapping[str, str], extra: Iterable[Tuple[str, str]] = ()) -> int:
    """Set every variable on the remote session, one at a time.

    A variable the server refuses is logged and skipped.

    Returns:
        Number of variables that could not be set
    """
    failed = 0
    for name, value in list(environ.items()) + list(extra):
        try:
            exec_session.setenv(name, value)
        except Exception as e:
            failed += 1
            logger.warning(f"Warning: setenv({name!r}): {e}")
    return failed


def window_size() -> Tuple[int, int]:
    size = shutil.get_terminal_size(fallback=DEFAULT_WINDOW)
    return size.columns, size.lines


def launch(
    session,
    command: str,
    environ: Mapping[str, str],
    extra_env: Iterable[Tuple[str, str]] = (),
):
    """Start command in a new pty-backed exec session.

    Returns:
        The started ExecSession; its stdin/stdout/stderr are ready for relaying
    """
    exec_session = session.new_exec_session()
    try:
        propagate_env(exec_session, environ, extra_env)
        width, height = window_size()
        exec_session.request_pty(TERM, width, height, PTY_MODES)
        logger.debug(f"Start remote with command {command!r}")
        exec_session.start(command)
    except Exception:
        exec_session.close()
        raise
    return exec_session
