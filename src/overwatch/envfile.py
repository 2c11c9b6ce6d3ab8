"""Reading and writing tenant ``KEY=VALUE`` environment files.

The format is line oriented: blank lines and ``#`` comments are ignored, each
remaining line is split on its first ``=``, and values are never quoted.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

ENV_FILE_NAME = ".env"
SHARED_ENV_FILE_NAME = "shared.env"
COMPOSE_FILE_NAME = "docker-compose.yml"


def parse_env(text: str) -> dict[str, str]:
    """Parse env-file *text* into a mapping (later duplicates win)."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip()
    return values


def read_env_file(path: Path) -> dict[str, str]:
    """Parse the env file at *path*."""
    return parse_env(path.read_text(encoding="utf-8"))


def render_env(
    values: Mapping[str, object] | Iterable[tuple[str, object]],
    *,
    header: Iterable[str] = (),
) -> str:
    """Render *values* as env-file text preceded by ``#`` *header* lines."""
    items = values.items() if isinstance(values, Mapping) else values
    lines = [f"# {line}" if line else "" for line in header]
    lines.extend(f"{key}={value}" for key, value in items)
    return "\n".join(lines) + "\n"


def replace_value(text: str, key: str, value: str) -> str:
    """Replace the first ``KEY=...`` line in *text*, keeping every other line.

    When the key is absent it is appended.
    """
    pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
    replacement = f"{key}={value}"
    updated, count = pattern.subn(lambda _match: replacement, text, count=1)
    if count:
        return updated
    suffix = "" if not text or text.endswith("\n") else "\n"
    return f"{text}{suffix}{replacement}\n"


def write_text_atomic(path: Path, content: str, *, mode: int = 0o640) -> None:
    """Write *content* to *path* via a temporary file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "COMPOSE_FILE_NAME",
    "ENV_FILE_NAME",
    "SHARED_ENV_FILE_NAME",
    "parse_env",
    "read_env_file",
    "render_env",
    "replace_value",
    "write_text_atomic",
]
