"""Reverse tunnel negotiation.

The remote host opens a listener on its own loopback interface and every
connection to it is carried back to us over the SSH transport. Nothing is
exposed on an externally reachable address, and the nonce check in the
gate keeps other local processes on the remote host out.
"""

import logging
import threading
from pathlib import Path
from typing import Optional

from shared.nonce import Nonce

from .exceptions import TunnelError
from .gate import FileShareServer, NamespaceGate, load_fileshare_server

logger = logging.getLogger(__name__)


LISTEN_HOST = "127.0.0.1"


def parse_port(addr: str) -> str:
    """Extract the port from a "host:port" address.

    Raises:
        TunnelError: If addr has no numeric port
    """
    _, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise TunnelError(f"Can't find a port number in {addr}")
    return port


def negotiate(
    session,
    root: Path,
    nonce: Nonce,
    deadline: float,
    server: Optional[FileShareServer] = None,
    port9p: int = 0,
) -> str:
    """Open the reverse listener and start serving the gate on it.

    Args:
        session: Transport session with a listen() capability
        root: Local directory to export
        nonce: Session nonce the remote command must present
        deadline: Rendezvous deadline in seconds
        server: File-share server; looked up by entry point when None
        port9p: Remote port to request, 0 for any

    Returns:
        The allocated remote port, for the remote command line

    Raises:
        TunnelError: If the listener cannot be opened or its port parsed
    """
    listener = session.listen(f"{LISTEN_HOST}:{port9p}")
    try:
        port = parse_port(listener.addr)
    except TunnelError:
        listener.close()
        raise
    logger.debug(f"reverse listener {listener.addr} port {port}")

    gate = NamespaceGate(server or load_fileshare_server(), root, nonce, deadline)
    threading.Thread(
        target=gate.serve,
        args=(listener,),
        name="cpu-namespace",
        daemon=True,
    ).start()
    return port
