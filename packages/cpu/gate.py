"""Namespace export gate.

Sits between the reverse listener and the file-share server. A tunneled
connection is only handed to the server after the peer has written the
session nonce back to us.

The gate runs in two phases:

1. Admission - accept connections until one presents the nonce, bounded by
   the rendezvous deadline. If the deadline passes first the rendezvous is
   abandoned and the listener closed; the remote command keeps running
   without the exported namespace.
2. Serving - for the rest of the session every further connection is
   checked the same way and, if admitted, served.
"""

import logging
import os
import threading
import time
from importlib.metadata import entry_points
from pathlib import Path
from typing import Optional, Protocol

from shared.nonce import Nonce

from .exceptions import RendezvousTimeout

logger = logging.getLogger(__name__)


FILESHARE_GROUP = "cpu.fileshare"
FILESHARE_ENV = "CPU_FILESHARE"
DEFAULT_FILESHARE = "9p"


class FileShareServer(Protocol):
    """Serves file-system requests for root over one admitted connection."""

    def serve(self, connection, root: Path) -> None:
        ...


class UnavailableFileShare:
    """Stand-in used when no file-share server is installed."""

    def __init__(self, name: str = DEFAULT_FILESHARE):
        self.name = name

    def serve(self, connection, root: Path) -> None:
        logger.warning(
            f"No {self.name!r} file-share server is installed; {root} is not exported"
        )
        connection.close()


def load_fileshare_server(name: Optional[str] = None) -> FileShareServer:
    """Find the file-share server registered under the cpu.fileshare entry points.

    Args:
        name: Entry point name; defaults to $CPU_FILESHARE or "9p"
    """
    name = name or os.getenv(FILESHARE_ENV) or DEFAULT_FILESHARE
    for ep in entry_points(group=FILESHARE_GROUP):
        if ep.name == name:
            logger.debug(f"file-share server {name!r} from {ep.value}")
            return ep.load()()
    return UnavailableFileShare(name)


class NamespaceGate:
    """Admits nonce-bearing connections and hands them to a file-share server."""

    def __init__(self, server: FileShareServer, root: Path, nonce: Nonce, deadline: float):
        """
        Args:
            server: File-share server to delegate admitted connections to
            root: Local directory to export
            nonce: Session nonce the peer must present
            deadline: Rendezvous deadline in seconds
        """
        self.server = server
        self.root = root
        self.deadline = deadline
        self._nonce = nonce

    def serve(self, listener) -> bool:
        """Run admission then serving on listener.

        Returns:
            False if the rendezvous was abandoned, True once the listener
            stops delivering connections after a successful admission
        """
        try:
            connection = self._admit(listener)
        except RendezvousTimeout as e:
            logger.warning(f"{e}; running without the exported namespace")
            listener.close()
            return False

        logger.debug(f"namespace connection admitted on {listener.addr}")
        self._dispatch(connection)

        while True:
            connection = listener.accept()
            if connection is None:
                return True
            # Nonce is read on the connection's own thread.
            self._dispatch(connection, check_nonce=True)

    def _admit(self, listener):
        deadline_at = time.monotonic() + self.deadline
        while True:
            remaining = deadline_at - time.monotonic()
            if remaining <= 0:
                break
            connection = listener.accept(remaining)
            if connection is None:
                break
            if self._authenticate(connection, deadline_at - time.monotonic()):
                return connection
            logger.warning("Rejected namespace connection without a valid nonce")
            connection.close()

        raise RendezvousTimeout(
            f"no namespace connection within {self.deadline:g}s", deadline=self.deadline
        )

    def _authenticate(self, connection, timeout: float) -> bool:
        want = len(self._nonce)
        received = b""
        deadline_at = time.monotonic() + timeout
        try:
            while len(received) < want:
                remaining = deadline_at - time.monotonic()
                if remaining <= 0:
                    return False
                connection.settimeout(remaining)
                chunk = connection.recv(want - len(received))
                if not chunk:
                    return False
                received += chunk
            connection.settimeout(None)
        except OSError as e:
            logger.debug(f"nonce read failed: {e}")
            return False
        return self._nonce.matches(received)

    def _dispatch(self, connection, check_nonce: bool = False) -> None:
        threading.Thread(
            target=self._serve_one,
            args=(connection, check_nonce),
            name="cpu-fileshare",
            daemon=True,
        ).start()

    def _serve_one(self, connection, check_nonce: bool = False) -> None:
        try:
            if check_nonce:
                if not self._authenticate(connection, self.deadline):
                    logger.warning("Rejected namespace connection without a valid nonce")
                    return
                logger.debug("namespace connection admitted")
            self.server.serve(connection, self.root)
        except Exception:
            logger.exception("file-share server failed")
        finally:
            connection.close()
