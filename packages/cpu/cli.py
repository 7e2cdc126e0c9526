#!/usr/bin/env python3
"""
cpu - run a command on a remote host with the local namespace exported to it.

Usage:
    cpu [options] host [command...]

With no command the local $SHELL is run. Set CPU_NAMESPACE= (empty) to run
without exporting the local namespace.
"""

import argparse
import getpass
import sys
from functools import partial
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import DEFAULT_BIN, DEFAULT_MSIZE, DEFAULT_PORT, DEFAULT_TIMEOUT9P, get_config
from .exceptions import ConfigurationError
from .log_utils import setup_logging
from .session import EXIT_FAILURE, run_client
from .transport import connect


class CPUArgumentParser(argparse.ArgumentParser):
    """Usage errors print the full flag documentation and exit 1."""

    def error(self, message: str):
        self.print_help(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CPUArgumentParser(
        prog="cpu",
        usage="%(prog)s [options] host [shell command]",
        description="Run a command on a remote host with the local namespace exported to it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
    HOME            Base of the default identity key ($HOME/.ssh/cpu_rsa)
    USER            Remote user name
    SHELL           Command to run when none is given
    CPU_NAMESPACE   Set to an empty value to skip the namespace export
    CPU_FILESHARE   File-share server entry point to use (default: 9p)
"""
    )
    parser.add_argument("-bin", default=DEFAULT_BIN, help="path of cpu binary (default: %(default)s)")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-d", dest="debug", action="store_true", help="enable debug prints")
    verbosity.add_argument(
        "-dump",
        action="store_true",
        help="Dump copious output, including a 9p trace, to a temp file at exit"
    )
    parser.add_argument("-dbg9p", action="store_true", help="show 9p io")

    parser.add_argument("-hk", default="", help="file for host key")
    parser.add_argument(
        "-insecure",
        action="store_true",
        help="DANGEROUS: accept any host key when -hk is not given"
    )
    parser.add_argument("-key", default="", help="key file (default: $HOME/.ssh/cpu_rsa)")
    parser.add_argument("-mountopts", default="", help="Extra options to add to the 9p mount")
    parser.add_argument("-msize", type=int, default=DEFAULT_MSIZE, help="msize to use (default: %(default)s)")
    parser.add_argument(
        "-network",
        default="tcp",
        choices=["tcp", "tcp4", "tcp6"],
        help="network to use (default: %(default)s)"
    )
    parser.add_argument("-sp", type=int, default=DEFAULT_PORT, help="cpu default port (default: %(default)s)")
    parser.add_argument(
        "-port9p",
        type=int,
        default=0,
        help="port9p # on remote machine for 9p mount (default: any free port)"
    )
    parser.add_argument("-root", default="/", help="9p root (default: %(default)s)")
    parser.add_argument(
        "-timeout9p",
        default=DEFAULT_TIMEOUT9P,
        help="time to wait for the 9p mount to happen (default: %(default)s)"
    )
    parser.add_argument("-version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("host", nargs="?", help="remote host")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="command to run remotely")
    return parser


def _prompt_passphrase(path: Path) -> str:
    return getpass.getpass(f"Passphrase for {path}: ")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # -version exits 0, usage errors exit EXIT_FAILURE
        return e.code

    if not args.host:
        parser.print_help(sys.stderr)
        return EXIT_FAILURE

    try:
        options = get_config(args)
    except ConfigurationError as e:
        print(f"cpu: {e}", file=sys.stderr)
        return EXIT_FAILURE

    setup_logging(options)
    return run_client(options, connect=partial(connect, passphrase_prompt=_prompt_passphrase))


if __name__ == "__main__":
    sys.exit(main())
