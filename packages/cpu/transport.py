"""SSH transport for the cpu client.

Wraps paramiko so the rest of the client sees three capabilities of one
authenticated connection:

* `Session.run` - run a command and collect its output
* `Session.new_exec_session` - an interactive command with a pty
* `Session.listen` - a listener allocated on the remote host whose
  connections are delivered back to us (reverse forwarding)
"""

import logging
import socket
import struct
from pathlib import Path
from typing import Callable, Dict, Optional

import paramiko
from paramiko.common import cMSG_CHANNEL_REQUEST

from shared.keys import KeyLoadError, PassphraseRequiredError, load_host_key, load_private_key

from .config import ClientOptions
from .exceptions import ConfigurationError, CPUError, DialError, RemoteCommandError, TunnelError

logger = logging.getLogger(__name__)


# Terminal mode opcodes (RFC 4254 section 8)
TTY_OP_END = 0
ECHO = 53
TTY_OP_ISPEED = 128
TTY_OP_OSPEED = 129

DIAL_TIMEOUT = 30.0
RECV_SIZE = 32768

_FAMILIES = {
    "tcp": socket.AF_UNSPEC,
    "tcp4": socket.AF_INET,
    "tcp6": socket.AF_INET6,
}


# ============================================================================
# Streams
# ============================================================================

class ChannelReader:
    """Read side of a channel stream; returns whatever data is available."""

    def __init__(self, recv: Callable[[int], bytes]):
        self._recv = recv

    def read1(self, size: int = RECV_SIZE) -> bytes:
        return self._recv(size)

    read = read1


class ChannelWriter:
    """Write side of a channel; close() sends EOF without closing the channel."""

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self.closed = False

    def write(self, data: bytes) -> int:
        self._channel.sendall(data)
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel.shutdown_write()


# ============================================================================
# Exec sessions and reverse listeners
# ============================================================================

def send_pty_request(
    channel: paramiko.Channel, term: str, width: int, height: int, modes: Dict[int, int]
) -> None:
    """Send a pty-req carrying modes and wait for the server's reply.

    Uses Channel._event_pending, Channel._wait_for_event and
    Transport._send_user_message, the same private hooks Channel.get_pty()
    uses. They are unchanged across paramiko 3.2 through 4.x; pyproject pins
    paramiko<5.

    Raises:
        paramiko.SSHException: If the server refuses the request
    """
    encoded = b"".join(struct.pack(">BI", op, value) for op, value in modes.items())
    encoded += bytes([TTY_OP_END])

    m = paramiko.Message()
    m.add_byte(cMSG_CHANNEL_REQUEST)
    m.add_int(channel.remote_chanid)
    m.add_string("pty-req")
    m.add_boolean(True)
    m.add_string(term)
    m.add_int(width)
    m.add_int(height)
    m.add_int(0)
    m.add_int(0)
    m.add_string(encoded)

    channel._event_pending()
    channel.transport._send_user_message(m)
    channel._wait_for_event()


class ExecSession:
    """One remote command bound to a channel."""

    def __init__(self, channel: paramiko.Channel):
        self._channel = channel
        self.command: Optional[str] = None
        self.stdin = ChannelWriter(channel)
        self.stdout = ChannelReader(channel.recv)
        self.stderr = ChannelReader(channel.recv_stderr)

    def setenv(self, name: str, value: str) -> None:
        self._channel.set_environment_variable(name, value)

    def request_pty(self, term: str, width: int, height: int, modes: Dict[int, int]) -> None:
        """Request a pty with explicit terminal modes.

        paramiko's Channel.get_pty() always sends an empty mode list, so the
        pty-req is assembled by `send_pty_request`.
        """
        try:
            send_pty_request(self._channel, term, width, height, modes)
        except paramiko.SSHException as e:
            raise CPUError(f"request for pseudo terminal failed: {e}") from e

    def start(self, command: str) -> None:
        self.command = command
        try:
            self._channel.exec_command(command)
        except paramiko.SSHException as e:
            raise CPUError(f"Failed to run {command}: {e}") from e

    def resize(self, width: int, height: int) -> None:
        self._channel.resize_pty(width=width, height=height)

    def wait(self) -> None:
        """Block until the command exits.

        Raises:
            RemoteCommandError: If the command reported a non-zero status
            CPUError: If the command ended without reporting a status
        """
        status = self._channel.recv_exit_status()
        if status == -1:
            raise CPUError(f"{self.command}: remote command ended without an exit status")
        if status != 0:
            raise RemoteCommandError(
                f"Process exited with status {status}", exit_status=status
            )

    def close(self) -> None:
        self._channel.close()


class ReverseListener:
    """A port on the remote host forwarded back over the transport."""

    def __init__(self, transport: paramiko.Transport, host: str, port: int):
        self._transport = transport
        self.host = host
        self.port = port
        self.closed = False

    @property
    def addr(self) -> str:
        return f"{self.host}:{self.port}"

    def accept(self, timeout: Optional[float] = None) -> Optional[paramiko.Channel]:
        """Next forwarded connection, or None on timeout or after close()."""
        if self.closed:
            return None
        return self._transport.accept(timeout)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._transport.cancel_port_forward(self.host, self.port)
        except (paramiko.SSHException, OSError) as e:
            logger.debug(f"cancel forward {self.addr}: {e}")


# ============================================================================
# Session
# ============================================================================

class Session:
    """An authenticated connection to one remote host."""

    def __init__(self, client: paramiko.SSHClient, host: str, port: int):
        self._client = client
        self.host = host
        self.port = port

    @property
    def transport(self) -> paramiko.Transport:
        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            raise CPUError(f"connection to {self.host} is closed")
        return transport

    def run(self, command: str) -> bytes:
        """Run a command to completion and return its stdout."""
        try:
            channel = self.transport.open_session()
        except paramiko.SSHException as e:
            raise CPUError(f"Failed to create session: {e}") from e

        try:
            channel.exec_command(command)
            output = channel.makefile("rb").read()
            status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CPUError(f"Failed to run {command}: {e}") from e
        finally:
            channel.close()

        if status != 0:
            raise RemoteCommandError(
                f"Failed to run {command}: exit status {status}", exit_status=status
            )
        return output

    def new_exec_session(self) -> ExecSession:
        try:
            return ExecSession(self.transport.open_session())
        except paramiko.SSHException as e:
            raise CPUError(f"Failed to create session: {e}") from e

    def listen(self, address: str) -> ReverseListener:
        """Ask the remote host to listen on address ("host:port", port 0 = any).

        Raises:
            TunnelError: If the address is malformed or the request is refused
        """
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise TunnelError(f"bad listen address {address!r}")
        try:
            allocated = self.transport.request_port_forward(host, int(port))
        except paramiko.SSHException as e:
            raise TunnelError(f"remote listen on {address}: {e}") from e
        return ReverseListener(self.transport, host, allocated)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# ============================================================================
# Connecting
# ============================================================================

class _AcceptAnyHostKey(paramiko.MissingHostKeyPolicy):
    """Accept every host key; only installed with -insecure."""

    def missing_host_key(self, client, hostname, key):
        logger.warning(
            f"Accepting unverified {key.get_name()} host key for {hostname} "
            f"(md5 {key.get_fingerprint().hex()})"
        )


def _known_hosts_name(host: str, port: int) -> str:
    return host if port == 22 else f"[{host}]:{port}"


def _configure_host_keys(client: paramiko.SSHClient, options: ClientOptions) -> None:
    if options.host_key_file is not None:
        try:
            key = load_host_key(options.host_key_file)
        except KeyLoadError as e:
            raise ConfigurationError(str(e), option="hk") from e
        # Only this key is known, so any other key is rejected.
        client.get_host_keys().add(_known_hosts_name(options.host, options.port), key.get_name(), key)
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    elif options.insecure:
        logger.warning("Host key verification is disabled (-insecure)")
        client.set_missing_host_key_policy(_AcceptAnyHostKey())
    else:
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.RejectPolicy())


def _load_identity(path: Path, passphrase_prompt: Optional[Callable[[Path], str]]) -> paramiko.PKey:
    try:
        return load_private_key(path)
    except PassphraseRequiredError as e:
        if passphrase_prompt is None:
            raise ConfigurationError(str(e), option="key") from e
        try:
            return load_private_key(path, passphrase=passphrase_prompt(path))
        except KeyLoadError as e2:
            raise ConfigurationError(str(e2), option="key") from e2
    except KeyLoadError as e:
        raise ConfigurationError(str(e), option="key") from e


def _dial(network: str, host: str, port: int, timeout: float = DIAL_TIMEOUT) -> socket.socket:
    try:
        infos = socket.getaddrinfo(host, port, _FAMILIES[network], socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise DialError(f"Failed to dial {host}:{port}: {e}", host=host, port=port) from e

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, addr in infos:
        sock = socket.socket(family, socktype, proto)
        sock.settimeout(timeout)
        try:
            sock.connect(addr)
        except OSError as e:
            last_error = e
            sock.close()
            continue
        sock.settimeout(None)
        # Keystrokes go out one at a time.
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return sock

    raise DialError(f"Failed to dial {host}:{port}: {last_error}", host=host, port=port)


def connect(
    options: ClientOptions,
    passphrase_prompt: Optional[Callable[[Path], str]] = None,
) -> Session:
    """Authenticate to options.host. Exactly one dial attempt is made.

    Args:
        options: Client options (host, port, user, network, key files)
        passphrase_prompt: Called with the key path when the key is encrypted

    Raises:
        ConfigurationError: If the identity or host key cannot be loaded
        DialError: If the connection or authentication fails
    """
    pkey = _load_identity(options.key_file, passphrase_prompt)
    client = paramiko.SSHClient()
    _configure_host_keys(client, options)

    sock = _dial(options.network, options.host, options.port)
    try:
        client.connect(
            options.host,
            port=options.port,
            username=options.user,
            pkey=pkey,
            sock=sock,
            look_for_keys=False,
            allow_agent=False,
        )
    except (paramiko.SSHException, OSError) as e:
        client.close()
        sock.close()
        raise DialError(
            f"Failed to dial {options.host}:{options.port}: {e}",
            host=options.host, port=options.port
        ) from e

    logger.debug(f"connected to {options.user}@{options.host}:{options.port}")
    return Session(client, options.host, options.port)
