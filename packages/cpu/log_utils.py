"""Logging setup for the cpu client.

While a session runs the local terminal is in raw mode, so a bare "\\n" no
longer returns the carriage. Everything written to the terminal therefore
uses "\\r\\n" line endings.
"""

import logging
import sys
import tempfile
from typing import Optional, TextIO

from .config import ClientOptions


GATE_LOGGER = "cpu.gate"


class RawTerminalFormatter(logging.Formatter):
    """Formatter whose multi-line records stay aligned on a raw terminal."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        return text.replace("\r\n", "\n").replace("\n", "\r\n")


def _terminal_handler(stream: TextIO, fmt: str) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.terminator = "\r\n"
    handler.setFormatter(RawTerminalFormatter(fmt))
    return handler


def setup_logging(options: ClientOptions, stream: Optional[TextIO] = None) -> Optional[str]:
    """Configure the root logger from the client options.

    Args:
        options: Client options (debug, dump and dbg9p are used)
        stream: Terminal stream, stderr by default

    Returns:
        Path of the dump file when -dump is set, otherwise None
    """
    stream = stream or sys.stderr
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    dump_path = None
    if options.dump:
        dump_file = tempfile.NamedTemporaryFile(
            mode="w", prefix="cpu", suffix=".log", delete=False
        )
        dump_path = dump_file.name
        handler = logging.StreamHandler(dump_file)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s.%(msecs)03d %(name)s %(message)s", datefmt="%H:%M:%S"
        ))
        root.addHandler(handler)
        root.setLevel(logging.DEBUG)
        stream.write(f"Logging to {dump_path}\r\n")
    elif options.debug:
        root.addHandler(_terminal_handler(stream, "%(name)s: %(message)s"))
        root.setLevel(logging.DEBUG)
        # paramiko's packet-level chatter is only useful in a dump
        logging.getLogger("paramiko").setLevel(logging.INFO)
    else:
        root.addHandler(_terminal_handler(stream, "%(message)s"))
        root.setLevel(logging.WARNING)

    if options.dbg9p or options.dump:
        # Records propagate to root's handlers regardless of root's level.
        logging.getLogger(GATE_LOGGER).setLevel(logging.DEBUG)

    return dump_path
