"""Error taxonomy for upstream-sync.

Every failure surfaced to an operator is a ``SyncError`` subclass carrying a
machine-readable ``kind``, a human message, an optional wrapped ``cause`` and
optional structured ``context``.  ``handle_error()`` is the single place that
turns an exception into console output and a process exit code.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from typing import Any, TextIO

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Machine-readable error categories."""

    CONFIG = "config"
    VCS = "vcs"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    USER_CANCEL = "user-cancel"
    SYNC_PROCESS = "sync-process"
    CONFLICT = "conflict"
    AUTH = "auth"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    VALIDATION = "validation"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_LOG_LEVELS: dict[Severity, int] = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


class SyncError(Exception):
    """Base class for all upstream-sync errors.

    Args:
        message: Human-readable description.
        cause: The underlying exception, if any.  Also set as
            ``__cause__`` so tracebacks show the chain.
        context: Structured details (paths, stage names, counts).
    """

    kind: ErrorKind = ErrorKind.SYNC_PROCESS
    severity: Severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: dict[str, Any] = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    def describe(self) -> str:
        """Render kind, message and the cause's message on one line each."""
        lines = [f"[{self.kind.value}] {self.message}"]
        if self.cause is not None:
            lines.append(f"  caused by: {self.cause}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "cause": str(self.cause) if self.cause is not None else None,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Concrete kinds
# ---------------------------------------------------------------------------


class ConfigError(SyncError):
    kind = ErrorKind.CONFIG


class VcsError(SyncError):
    """Remote, branch, commit or push failure in the version-control client."""

    kind = ErrorKind.VCS


class FilesystemError(SyncError):
    kind = ErrorKind.FILESYSTEM


class NotAFileError(FilesystemError):
    """A regular file was required but a directory (or nothing) was found."""


class NetworkError(SyncError):
    """Connectivity failure.  The retry policy treats these as retryable."""

    kind = ErrorKind.NETWORK
    severity = Severity.WARNING


class RetryExhaustedError(NetworkError):
    """Raised when a network operation still fails after every retry.

    Attributes:
        attempts: Number of attempts that were made.
    """

    severity = Severity.ERROR

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message, cause, context)
        self.attempts = attempts


class UserCancelled(SyncError):
    """The operator declined to continue.  Reported, not treated as failure."""

    kind = ErrorKind.USER_CANCEL
    severity = Severity.INFO


class SyncProcessError(SyncError):
    kind = ErrorKind.SYNC_PROCESS


class ConflictError(SyncError):
    kind = ErrorKind.CONFLICT


class AuthenticationError(SyncError):
    """Credentials were rejected.  Always fatal, never retried."""

    kind = ErrorKind.AUTH
    severity = Severity.CRITICAL


class PermissionDeniedError(SyncError):
    kind = ErrorKind.PERMISSION


class OperationTimeoutError(SyncError):
    kind = ErrorKind.TIMEOUT
    severity = Severity.WARNING


class ValidationFailedError(SyncError):
    """A gray-release validation script (or input validation) failed."""

    kind = ErrorKind.VALIDATION
    severity = Severity.WARNING


# ---------------------------------------------------------------------------
# Top-level handler
# ---------------------------------------------------------------------------


def handle_error(exc: BaseException, stream: TextIO | None = None) -> int:
    """Report *exc* to the operator and return the process exit code.

    ``UserCancelled`` exits cleanly with ``0``; every other error exits
    with ``1``.  Exceptions outside the taxonomy are wrapped in
    ``SyncProcessError`` first so the output shape is uniform.

    Args:
        exc: The exception that ended the run.
        stream: Where to print the description (default: stderr).

    Returns:
        Process exit code.
    """
    out = stream if stream is not None else sys.stderr

    if isinstance(exc, SyncError):
        error = exc
    else:
        error = SyncProcessError(str(exc) or type(exc).__name__, cause=exc)

    logger.log(
        _LOG_LEVELS[error.severity],
        "%s: %s",
        error.kind.value,
        error.message,
        extra={"error": error.to_dict()},
    )
    print(error.describe(), file=out)

    if isinstance(error, UserCancelled):
        return 0
    return 1
