"""Subprocess helper shared by the external tool providers."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from typing import IO

from ..errors import ExternalToolError

LOGGER = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    *,
    error_prefix: str,
    timeout: float,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* without a shell and wrap failures in :class:`ExternalToolError`.

    The error message names the command and exit status only; captured output
    is attached to the exception and logged at debug level so it never reaches
    callers verbatim.
    """
    command = list(args)
    merged_env = {**os.environ, **env} if env else None
    try:
        result = subprocess.run(  # noqa: S603, S607
            command,
            input=input_text,
            stdin=stdin,
            stdout=stdout if stdout is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            timeout=timeout,
            env=merged_env,
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(f"{command[0]} not found: {exc}", command=command) from exc
    except subprocess.TimeoutExpired as exc:
        raise ExternalToolError(
            f"{error_prefix} timed out after {timeout:g}s",
            command=command,
            stdout=_text(exc.stdout),
            stderr=_text(exc.stderr),
        ) from exc
    if check and result.returncode != 0:
        stdout_text = getattr(result, "stdout", "") or ""
        stderr_text = getattr(result, "stderr", "") or ""
        LOGGER.debug(
            "%s failed (exit %s): %s",
            error_prefix,
            result.returncode,
            stderr_text.strip() or stdout_text.strip() or "no output",
        )
        raise ExternalToolError(
            f"{error_prefix} failed (exit {result.returncode})",
            command=command,
            returncode=result.returncode,
            stdout=stdout_text,
            stderr=stderr_text,
        )
    return result


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


__all__ = ["run_command"]
