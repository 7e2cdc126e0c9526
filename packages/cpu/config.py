"""Configuration for the cpu client.

All options are collected once at startup into a frozen `ClientOptions`
value that is passed to the components that need it.
"""

import argparse
import os
import re
from pathlib import Path
from typing import Literal, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigurationError


DEFAULT_BIN = "cpud"
DEFAULT_PORT = 23
DEFAULT_MSIZE = 1048576
DEFAULT_TIMEOUT9P = "100ms"
DEFAULT_KEY_NAME = ".ssh/cpu_rsa"

# Set to an empty string to run without exporting the namespace
NAMESPACE_ENV = "CPU_NAMESPACE"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a Go-style duration string ("100ms", "1.5s", "1m30s") into seconds.

    Raises:
        ValueError: If the string is not a valid duration
    """
    s = text.strip()
    sign = 1.0
    if s[:1] in ("+", "-"):
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")

    total = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_PART.match(s, pos)
        if not match:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return sign * total


def namespace_enabled(environ: Mapping[str, str]) -> bool:
    """Namespace export is on unless CPU_NAMESPACE is present and empty."""
    value = environ.get(NAMESPACE_ENV)
    return not (value is not None and len(value) == 0)


def default_key_file(environ: Mapping[str, str]) -> Path:
    return Path(environ.get("HOME", "")) / DEFAULT_KEY_NAME


class ClientOptions(BaseModel):
    """Validated client options."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(..., min_length=1, description="Remote host to connect to")
    command: str = Field(default="", description="Command line to run remotely; empty means the local SHELL")
    user: str = Field(default="", description="Remote user name")

    bin: str = Field(default=DEFAULT_BIN, description="Path of the cpu binary on the remote host")
    debug: bool = False
    dbg9p: bool = False
    dump: bool = False

    key_file: Path = Field(..., description="Identity key file")
    host_key_file: Optional[Path] = Field(default=None, description="Pinned host key file")
    insecure: bool = Field(default=False, description="Accept any host key")

    mountopts: str = ""
    msize: int = Field(default=DEFAULT_MSIZE, ge=4096)
    network: Literal["tcp", "tcp4", "tcp6"] = "tcp"
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    port9p: int = Field(default=0, ge=0, le=65535)
    root: Path = Path("/")
    timeout9p: float = Field(default=0.1, gt=0, description="Rendezvous deadline in seconds")

    @field_validator("timeout9p", mode="before")
    @classmethod
    def _parse_timeout(cls, value):
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @model_validator(mode="after")
    def _check_exclusive(self):
        if self.debug and self.dump:
            raise ValueError("You can only set either dump OR debug")
        return self


def get_config(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> ClientOptions:
    """Build ClientOptions from parsed arguments and the environment.

    Environment variables consumed:
        HOME: Base directory for the default identity key
        USER: Remote user name

    Returns:
        The validated options

    Raises:
        ConfigurationError: If any option is invalid
    """
    if environ is None:
        # .env in the working directory may supply USER, HOME or CPU_NAMESPACE
        load_dotenv()
        environ = os.environ

    try:
        return ClientOptions(
            host=args.host or "",
            command=" ".join(args.command or []),
            user=environ.get("USER", ""),
            bin=args.bin,
            debug=args.debug,
            dbg9p=args.dbg9p,
            dump=args.dump,
            key_file=Path(args.key) if args.key else default_key_file(environ),
            host_key_file=Path(args.hk) if args.hk else None,
            insecure=args.insecure,
            mountopts=args.mountopts,
            msize=args.msize,
            network=args.network,
            port=args.sp,
            port9p=args.port9p,
            root=Path(args.root),
            timeout9p=args.timeout9p,
        )
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}"
            for err in e.errors()
        )
        option = ".".join(str(p) for p in e.errors()[0]["loc"]) if e.errors() else ""
        raise ConfigurationError(f"invalid options: {problems}", option=option) from e
