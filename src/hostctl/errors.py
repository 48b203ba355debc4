"""Error taxonomy shared by probes, mutators, providers and the CLI.

Every error raised on purpose by hostctl derives from :class:`HostctlError` and
carries the exit code the CLI should terminate with when the error aborts a
run. Idempotency conflicts (a line already present, a package already
installed) are never errors; probes report them as already-satisfied state.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class HostctlError(RuntimeError):
    """Base class for expected hostctl failures."""

    exit_code: ExitCode = ExitCode.PROVIDER
    kind: str = "error"


class ValidationError(HostctlError):
    """Raised for bad input: arguments, device paths, downloaded files, checksums."""

    exit_code = ExitCode.VALIDATION
    kind = "validation"


class PrivilegeError(HostctlError):
    """Raised when a mutating command runs without superuser privileges."""

    exit_code = ExitCode.ENVIRONMENT
    kind = "privilege"


class ExternalToolError(HostctlError):
    """Raised when an external command exits non-zero."""

    exit_code = ExitCode.PROVIDER
    kind = "external-tool"

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] | None = None,
        returncode: int | None = None,
        stdout: str | None = None,
        stderr: str | None = None,
    ) -> None:
        """Record the failing command alongside the message."""
        super().__init__(message)
        self.command = list(command) if command is not None else None
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class MissingToolError(ExternalToolError):
    """Raised when an external binary is not installed on the host."""

    exit_code = ExitCode.ENVIRONMENT
    kind = "missing-tool"


__all__ = [
    "ExternalToolError",
    "HostctlError",
    "MissingToolError",
    "PrivilegeError",
    "ValidationError",
]
