"""Error taxonomy shared by every ghostctl component.

Errors are classified by *effect* rather than by origin:

* :class:`ValidationError` - bad user input; surfaced immediately.
* :class:`SystemEnvironmentError` - host problems (permissions, missing
  binaries or directories); carries a remediation hint. Its
  :class:`FilesystemError` subtype covers writes that fail half-way through
  an update.
* :class:`ProcessError` - a spawned command failed.
* :class:`ApplicationError` - the managed application misbehaved (migration
  failure, start timeout, theme incompatibility).

Lower level components raise these; only the update orchestrator decides
whether an error warrants a rollback (see ``triggers_rollback``).
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class CliError(RuntimeError):
    """Base class for all errors rendered by the CLI."""

    exit_code: ExitCode = ExitCode.FAILURE
    triggers_rollback: bool = False
    show_stack: bool = True

    def __init__(
        self,
        message: str = "An error occurred.",
        *,
        help: str | None = None,  # noqa: A002 - mirrors the user-facing label
        suggestion: str | None = None,
        log_message_only: bool = False,
    ) -> None:
        """Store the message plus optional remediation hints."""
        super().__init__(message)
        self.message = message
        self.help = help
        self.suggestion = suggestion
        self.log_message_only = log_message_only

    @property
    def kind(self) -> str:
        """Return the error class name (used in structured logs)."""
        return type(self).__name__

    def render(self, *, verbose: bool = False) -> str:
        """Return the console representation for this error."""
        lines = [f"Message: {self.message}"]
        if self.help:
            lines.append(f"Help: {self.help}")
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)

    def wants_traceback(self, *, verbose: bool) -> bool:
        """Return True when a stack trace should accompany the message."""
        return verbose and self.show_stack and not self.log_message_only


class ValidationError(CliError):
    """Raised for invalid user input (versions, zip files, flags)."""

    exit_code = ExitCode.VALIDATION


class InstanceConfigError(CliError):
    """Raised when the instance configuration itself is wrong."""

    exit_code = ExitCode.VALIDATION
    show_stack = False


class SystemEnvironmentError(CliError):
    """Raised when the host environment prevents an operation."""

    exit_code = ExitCode.ENVIRONMENT
    show_stack = False


class FilesystemError(SystemEnvironmentError):
    """Raised when the instance directory cannot be changed part-way through an operation."""

    triggers_rollback = True


class ProcessError(CliError):
    """Raised when a spawned command exits unsuccessfully."""

    exit_code = ExitCode.PROVIDER
    triggers_rollback = True

    def __init__(
        self,
        message: str | None = None,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        killed: bool = False,
        help: str | None = None,  # noqa: A002
        suggestion: str | None = None,
    ) -> None:
        """Capture the failed command and its output."""
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        self.killed = killed
        joined = " ".join(self.command)
        super().__init__(
            message or f"Error occurred running command: '{joined}'",
            help=help,
            suggestion=suggestion,
        )

    def render(self, *, verbose: bool = False) -> str:
        """Include exit details and, when verbose, the captured output."""
        lines = [super().render(verbose=verbose)]
        if self.killed:
            lines.append(
                "Process was killed, meaning your system ran out of memory. "
                "Increase the available RAM or add swap space."
            )
        elif self.returncode:
            lines.append(f"Exit code: {self.returncode}")
        if verbose and (self.stdout or self.stderr):
            lines.append("--------------- stdout ---------------")
            lines.append(self.stdout.rstrip())
            lines.append("--------------- stderr ---------------")
            lines.append(self.stderr.rstrip())
        return "\n".join(lines)


class ApplicationError(CliError):
    """Raised when the managed application fails (migrations, startup)."""

    exit_code = ExitCode.PROVIDER
    triggers_rollback = True


class StartTimeoutError(ApplicationError):
    """Raised when the application does not become reachable in time."""


__all__ = [
    "ApplicationError",
    "CliError",
    "FilesystemError",
    "InstanceConfigError",
    "ProcessError",
    "StartTimeoutError",
    "SystemEnvironmentError",
    "ValidationError",
]
