"""Custom exceptions for the cpu client."""


class CPUError(Exception):
    """Base exception for the cpu client."""
    pass


class ConfigurationError(CPUError):
    """Raised when flags, keys or host-key files are invalid."""

    def __init__(self, message: str, option: str = ""):
        super().__init__(message)
        self.option = option


class DialError(CPUError):
    """Raised when the SSH connection or authentication fails."""

    def __init__(self, message: str, host: str = "", port: int = 0):
        super().__init__(message)
        self.host = host
        self.port = port


class TunnelError(CPUError):
    """Raised when the reverse listener cannot be set up."""
    pass


class RendezvousTimeout(CPUError):
    """No authenticated namespace connection arrived before the deadline.

    Never fatal; the session runs on without the exported namespace.
    """

    def __init__(self, message: str, deadline: float = 0.0):
        super().__init__(message)
        self.deadline = deadline


class RemoteCommandError(CPUError):
    """Raised when the remote command exits unsuccessfully."""

    def __init__(self, message: str, exit_status: int = -1):
        super().__init__(message)
        self.exit_status = exit_status
