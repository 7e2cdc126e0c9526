"""Loading of SSH identity keys and pinned host keys.

Identity keys are whatever paramiko can read from a file (OpenSSH or PEM,
optionally passphrase protected). Host keys may be given either as a raw
SSH wire-format public key blob or as a text line in authorized_keys /
known_hosts style:

    ssh-ed25519 AAAAC3Nza... comment
    restrict,no-pty ssh-rsa AAAAB3Nza... comment
    myhost ecdsa-sha2-nistp256 AAAAE2Vj...
"""

import base64
import binascii
from pathlib import Path
from typing import Optional, Union

import paramiko


# Tried in order; each reads its own PEM flavour and the OpenSSH format.
_PRIVATE_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class KeyLoadError(Exception):
    """Error loading a key from file."""

    def __init__(self, message: str, path: Union[str, Path] = ""):
        super().__init__(message)
        self.path = str(path)


class PassphraseRequiredError(KeyLoadError):
    """The private key is encrypted and no passphrase was supplied."""
    pass


def load_private_key(path: Union[str, Path], passphrase: Optional[str] = None) -> paramiko.PKey:
    """Load an identity key from file.

    Args:
        path: Path to the private key file
        passphrase: Passphrase for encrypted keys

    Returns:
        The paramiko private key

    Raises:
        PassphraseRequiredError: If the key is encrypted and passphrase is None
        KeyLoadError: If the key cannot be read or parsed
    """
    path = Path(path).expanduser()
    if not path.is_file():
        raise KeyLoadError(f"unable to read private key {path}: no such file", path)

    errors = []
    for key_class in _PRIVATE_KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path), password=passphrase)
        except paramiko.PasswordRequiredException:
            raise PassphraseRequiredError(f"private key {path} is encrypted", path)
        except OSError as e:
            raise KeyLoadError(f"unable to read private key {path}: {e}", path)
        except Exception as e:
            errors.append(f"{key_class.__name__}: {e}")

    raise KeyLoadError(f"parse private key {path}: {'; '.join(errors)}", path)


def _blob_type(blob: bytes) -> Optional[str]:
    # A wire-format key starts with its own type name.
    try:
        return paramiko.Message(blob).get_text()
    except Exception:
        return None


def parse_public_key(data: bytes) -> paramiko.PKey:
    """Parse a raw public key blob or a single authorized-key style line.

    Raises:
        ValueError: If no supported key is found
    """
    key_type = _blob_type(data)
    if key_type:
        try:
            return paramiko.PKey.from_type_string(key_type, data)
        except Exception:
            pass

    text = data.decode("utf-8", errors="replace")
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        for i in range(len(fields) - 1):
            try:
                blob = base64.b64decode(fields[i + 1], validate=True)
            except (binascii.Error, ValueError):
                continue
            if _blob_type(blob) == fields[i]:
                return paramiko.PKey.from_type_string(fields[i], blob)

    raise ValueError("no public key found")


def load_host_key(path: Union[str, Path]) -> paramiko.PKey:
    """Load the single host key a server must present.

    Raises:
        KeyLoadError: If the file cannot be read or holds no usable key
    """
    path = Path(path).expanduser()
    try:
        data = path.read_bytes()
    except OSError as e:
        raise KeyLoadError(f"unable to read host key {path}: {e}", path)

    try:
        return parse_public_key(data)
    except Exception as e:
        raise KeyLoadError(f"parse host key {path}: {e}", path)
