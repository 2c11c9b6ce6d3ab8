"""Docker provider: container listing, compose lifecycle, exec and copy."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError
from ..models import ContainerInfo
from .process import run_command


@dataclass(slots=True)
class DockerRuntime:
    """Thin wrapper around the ``docker`` CLI.

    Every call carries an explicit timeout; listing uses the shorter
    ``list_timeout`` because it sits on the health monitor's hot path.
    """

    docker_bin: str = "docker"
    timeout: float = 120.0
    list_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def list_containers(self, *, include_stopped: bool = True) -> list[ContainerInfo]:
        """Return every container known to the daemon."""
        args = [self.docker_bin, "ps", "--no-trunc", "--format", "{{json .}}"]
        if include_stopped:
            args.append("--all")
        result = run_command(args, error_prefix="docker ps", timeout=self.list_timeout)
        containers: list[ContainerInfo] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(raw, Mapping):
                continue
            containers.append(_container_from_ps(raw))
        return containers

    def container_state(self, name: str) -> str | None:
        """Return the state of container *name* or ``None`` when it does not exist."""
        result = run_command(
            [self.docker_bin, "inspect", "--format", "{{.State.Status}}", name],
            error_prefix=f"docker inspect {name}",
            timeout=self.list_timeout,
            check=False,
        )
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    def container_exists(self, name: str) -> bool:
        return self.container_state(name) is not None

    # ------------------------------------------------------------------
    # Compose lifecycle
    # ------------------------------------------------------------------
    def compose_up(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Create and start the tenant's containers."""
        return self._compose(compose_file, "up", "-d")

    def compose_down(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Stop and remove the tenant's containers."""
        return self._compose(compose_file, "down")

    def compose_pull(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        return self._compose(compose_file, "pull")

    def compose_recreate(self, compose_file: Path) -> subprocess.CompletedProcess[str]:
        """Recreate containers so new images and env files take effect."""
        return self._compose(compose_file, "up", "-d", "--force-recreate")

    # ------------------------------------------------------------------
    # Exec and copy
    # ------------------------------------------------------------------
    def exec(
        self,
        container: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        input_text: str | None = None,
        input_path: Path | None = None,
        output_path: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* inside *container*.

        Values in *env* are handed to the docker client through its own
        environment and forwarded with ``-e NAME`` so secrets never appear in
        the process arguments.
        """
        args = [self.docker_bin, "exec"]
        if input_text is not None or input_path is not None:
            args.append("-i")
        for name in env or {}:
            args.extend(["-e", name])
        args.append(container)
        args.extend(command)
        prefix = f"docker exec {container} {command[0] if command else ''}".rstrip()
        if input_path is not None:
            with input_path.open("r", encoding="utf-8") as source:
                return run_command(
                    args,
                    error_prefix=prefix,
                    timeout=self.timeout,
                    env=env,
                    stdin=source,
                    check=check,
                )
        if output_path is not None:
            with output_path.open("w", encoding="utf-8") as sink:
                return run_command(
                    args,
                    error_prefix=prefix,
                    timeout=self.timeout,
                    env=env,
                    stdout=sink,
                    check=check,
                )
        return run_command(
            args,
            error_prefix=prefix,
            timeout=self.timeout,
            env=env,
            input_text=input_text,
            check=check,
        )

    def path_has_content(self, container: str, path: str) -> bool:
        """Return whether *path* exists in *container* and is non-empty."""
        try:
            result = self.exec(container, ["ls", "-A", path], check=False)
        except ExternalToolError:
            return False
        return result.returncode == 0 and bool((result.stdout or "").strip())

    def copy_from(self, container: str, path: str, destination: Path) -> None:
        """Copy the contents of ``container:path`` into *destination*."""
        destination.mkdir(parents=True, exist_ok=True)
        run_command(
            [self.docker_bin, "cp", f"{container}:{path}/.", f"{destination}/"],
            error_prefix=f"docker cp {container}:{path}",
            timeout=self.timeout,
        )

    def copy_to(self, source: Path, container: str, path: str) -> None:
        """Copy the contents of *source* into ``container:path``."""
        self.exec(container, ["mkdir", "-p", path])
        run_command(
            [self.docker_bin, "cp", f"{source}/.", f"{container}:{path}/"],
            error_prefix=f"docker cp {container}:{path}",
            timeout=self.timeout,
        )

    # ------------------------------------------------------------------
    def _compose(self, compose_file: Path, *args: str) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, "compose", "-f", str(compose_file), *args]
        return run_command(
            command,
            error_prefix=f"docker compose {' '.join(args)}",
            timeout=self.timeout,
        )


def _container_from_ps(raw: Mapping[str, object]) -> ContainerInfo:
    names = str(raw.get("Names", ""))
    name = names.split(",")[0].lstrip("/")
    return ContainerInfo(
        id=str(raw.get("ID", ""))[:12],
        name=name,
        state=str(raw.get("State", "")).lower(),
        status=str(raw.get("Status", "")),
        image=str(raw.get("Image", "")),
        created_at=str(raw.get("CreatedAt", "")),
    )


__all__ = ["DockerRuntime"]
