"""One-time secret used to admit the remote end of the namespace tunnel.

A nonce is created once per session, right before the reverse tunnel is
armed, and travels to the remote command only through its environment.
The remote side writes it back over the tunnel and the gate compares it
with `Nonce.matches`.
"""

import hmac
from dataclasses import dataclass
from typing import Callable

import nacl.utils
from nacl.encoding import HexEncoder


# Random bytes per nonce; the hex rendering is twice as long.
NONCE_BYTES = 16
NONCE_LENGTH = NONCE_BYTES * 2

# Environment variable carrying the nonce to the remote command
NONCE_ENV = "CPUNONCE"


class RandomSourceError(Exception):
    """The random source failed; no weaker source is substituted."""
    pass


@dataclass(frozen=True)
class Nonce:
    """A printable, lowercase hex secret."""
    value: str

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"Nonce(<{len(self.value)} chars>)"

    def __len__(self) -> int:
        return len(self.value)

    def encode(self) -> bytes:
        return self.value.encode("ascii")

    def matches(self, candidate: bytes) -> bool:
        """Constant-time comparison against bytes read off the wire."""
        return hmac.compare_digest(self.encode(), candidate)


def generate_nonce(random_bytes: Callable[[int], bytes] = nacl.utils.random) -> Nonce:
    """Generate a fresh nonce.

    Args:
        random_bytes: Source of cryptographically secure random bytes.
            Tests may inject a deterministic source.

    Returns:
        A Nonce of exactly NONCE_LENGTH hex characters

    Raises:
        RandomSourceError: If the random source fails or comes up short
    """
    try:
        raw = random_bytes(NONCE_BYTES)
    except Exception as e:
        raise RandomSourceError(f"Reading {NONCE_BYTES} random bytes: {e}") from e

    if len(raw) != NONCE_BYTES:
        raise RandomSourceError(
            f"Random source returned {len(raw)} bytes, wanted {NONCE_BYTES}"
        )

    return Nonce(HexEncoder.encode(raw).decode("ascii"))
