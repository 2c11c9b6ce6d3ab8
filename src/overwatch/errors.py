"""Error taxonomy shared by the orchestration core.

Every error raised by the core derives from :class:`OverwatchError` and carries
the :class:`~overwatch.exit_codes.ExitCode` the CLI should terminate with.
``ExternalToolError`` keeps the full tool output for server-side logging while
its ``str()`` stays short enough to show to callers.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class OverwatchError(RuntimeError):
    """Base class for errors raised by the orchestration core."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(OverwatchError):
    """Raised when an identifier, key, or required field is malformed."""

    exit_code = ExitCode.VALIDATION


class ConflictError(OverwatchError):
    """Raised when creating something that already exists."""

    exit_code = ExitCode.CONFLICT


class NotFoundError(OverwatchError):
    """Raised when an app, tenant, override, or key does not exist."""

    exit_code = ExitCode.NOT_FOUND


class ExternalToolError(OverwatchError):
    """Raised when the container runtime or backup tool exits unsuccessfully."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Record the failing command alongside its captured output."""
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        """Return stderr followed by stdout, for pattern matching."""
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


__all__ = [
    "ConflictError",
    "ExternalToolError",
    "NotFoundError",
    "OverwatchError",
    "ValidationError",
]
