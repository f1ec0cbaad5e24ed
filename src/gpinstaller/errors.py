"""Domain errors for gpinstaller."""

from typing import Optional

from gpinstaller.constants import (
    EXIT_AUTHENTICATION,
    EXIT_CONNECTIVITY,
    EXIT_FAILED,
    EXIT_INTERRUPTED,
    EXIT_VALIDATION,
)


class InstallerError(RuntimeError):
    """Raised when the installation cannot continue safely."""

    exit_code = EXIT_FAILED

    def __init__(
        self,
        message: str,
        host: Optional[str] = None,
        phase: Optional[str] = None,
        step: Optional[str] = None,
        remediation: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.host = host
        self.phase = phase
        self.step = step
        self.remediation = remediation

    def with_context(self, host=None, phase=None, step=None) -> "InstallerError":
        """Fills in location details that are still unknown."""
        self.host = self.host or host
        self.phase = self.phase or phase
        self.step = self.step or step
        return self

    def __str__(self) -> str:
        return self.message


class InputError(InstallerError):
    """Interactive input was rejected (password mismatch, weak password)."""

    exit_code = EXIT_VALIDATION


class ValidationError(InstallerError):
    """Configuration is incomplete or inconsistent."""

    exit_code = EXIT_VALIDATION


class ConnectivityError(InstallerError):
    """A host could not be reached."""

    exit_code = EXIT_CONNECTIVITY


class ChannelLostError(ConnectivityError):
    """The multiplexed channel of a host went away while a command was running."""


class AuthenticationError(InstallerError):
    """Credentials were rejected by a host. Never retried automatically."""

    exit_code = EXIT_AUTHENTICATION


class CommandTimeoutError(InstallerError):
    """A remote command exceeded its wall-clock bound."""

    def __init__(self, message: str, command: str = "", timeout_seconds=None, **kwargs):
        super().__init__(message, **kwargs)
        self.command = command
        self.timeout_seconds = timeout_seconds


class CommandFailure(InstallerError):
    """A command returned a non-retryable failure."""

    def __init__(self, command: str, exit_code: int, stderr: str = "", **kwargs):
        message = f"Command failed ({exit_code}): {command}"
        if stderr:
            message = f"{message}\n{stderr}"
        super().__init__(message, **kwargs)
        self.command = command
        self.returncode = exit_code
        self.stderr = stderr


class PartialInstallError(InstallerError):
    """A phase barrier could not be satisfied because a host failed."""


class CancelledError(InstallerError):
    """The run was interrupted by the user."""

    exit_code = EXIT_INTERRUPTED


class TrustWarning(Warning):
    """A host key is missing or changed and needs a one-time acknowledgement."""

    def __init__(self, host: str, detail: str = "", changed: bool = False):
        super().__init__(f"Host key for {host} is {'changed' if changed else 'not trusted'}: {detail}")
        self.host = host
        self.detail = detail
        self.changed = changed
