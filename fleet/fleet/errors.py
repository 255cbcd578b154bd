"""Error taxonomy for the update engine.

Errors raised synchronously from ``submit``/``poll``/``cancel`` are
subclasses of :class:`FleetError`. Errors raised inside an operation are
caught by the orchestrator and recorded on the Job and HistoryEntry; they
never escape the background task.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable classification of a failure."""

    TARGET_BUSY = "target_busy"
    NOT_FOUND = "not_found"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    COMMAND_FAILED = "command_failed"
    AMBIGUOUS = "ambiguous"
    CANCELLED = "cancelled"
    UNSUPPORTED = "unsupported"
    INTERNAL = "internal"


_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.TARGET_BUSY: "An operation is already running on this system. Retry once it finishes.",
    ErrorKind.NOT_FOUND: "Not found.",
    ErrorKind.UNREACHABLE: "System is unreachable. Check the network and credentials, then re-check.",
    ErrorKind.TIMEOUT: "Command timed out. The remote process may still be running; wait before retrying.",
    ErrorKind.COMMAND_FAILED: "Command failed on the remote system.",
    ErrorKind.AMBIGUOUS: "Completed with warning: the connection dropped, the result was inferred.",
    ErrorKind.CANCELLED: "Operation was cancelled.",
    ErrorKind.UNSUPPORTED: "Operation is not supported for this system.",
    ErrorKind.INTERNAL: "Internal error.",
}


def describe_error(kind: ErrorKind) -> str:
    """Return the user-facing message for an error kind."""
    return _MESSAGES[kind]


class FleetError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INTERNAL


class TargetBusyError(FleetError):
    """Raised when the target already has an active operation."""

    kind = ErrorKind.TARGET_BUSY

    def __init__(self, target_id: int, active_operation: str | None = None) -> None:
        self.target_id = target_id
        self.active_operation = active_operation
        detail = f" ({active_operation})" if active_operation else ""
        super().__init__(f"System {target_id} is busy{detail}")


class TargetNotFoundError(FleetError):
    """Raised when a target id or name is not known to the target store."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, target_id: int | str) -> None:
        self.target_id = target_id
        super().__init__(f"System {target_id} not found")


class JobNotFoundError(FleetError):
    """Raised when polling an unknown or already discarded job."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ConnectionFailedError(FleetError):
    """Error establishing the SSH connection (network or authentication)."""

    kind = ErrorKind.UNREACHABLE


class CommandTimeoutError(FleetError):
    """A remote command exceeded its execution timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, command: str, timeout: float, output: str = "") -> None:
        self.command = command
        self.timeout = timeout
        self.output = output
        super().__init__(f"Command timed out after {timeout:g}s")


class CommandFailedError(FleetError):
    """A remote command exited with a non-zero status."""

    kind = ErrorKind.COMMAND_FAILED

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class AmbiguousOutcomeError(FleetError):
    """The transport dropped before a final exit code was received."""

    kind = ErrorKind.AMBIGUOUS


class ParseError(FleetError):
    """A line of package manager output could not be parsed."""

    kind = ErrorKind.INTERNAL


class OperationCancelledError(FleetError):
    """The job was cancelled."""

    kind = ErrorKind.CANCELLED


class UnsupportedOperationError(FleetError):
    """The operation cannot run on this target (no manager, no full upgrade)."""

    kind = ErrorKind.UNSUPPORTED


class InvalidPackageNameError(FleetError, ValueError):
    """Package name contains characters unsafe for a shell command."""

    kind = ErrorKind.UNSUPPORTED


class HistoryError(FleetError):
    """Invalid history transition (finalizing a finished entry)."""


class ConfigError(FleetError):
    """Configuration file is invalid."""
