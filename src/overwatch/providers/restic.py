"""Restic provider: repository probing, backup, restore and retention."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..models import BackupSnapshot
from .process import run_command

STATUS_TIMEOUT = 30.0
DELETE_TIMEOUT = 60.0


@dataclass(slots=True)
class ResticClient:
    """Run ``restic`` against one repository described by *env*.

    *env* carries ``RESTIC_REPOSITORY``, ``RESTIC_PASSWORD`` and any storage
    credentials; it is merged into the child environment and never placed on
    the command line.
    """

    env: Mapping[str, str]
    restic_bin: str = "restic"
    timeout: float = 120.0

    def cat_config(self) -> subprocess.CompletedProcess[str]:
        """Perform the trivial read used to probe repository state."""
        return self._run(["cat", "config"], "restic cat config", timeout=STATUS_TIMEOUT)

    def init(self) -> subprocess.CompletedProcess[str]:
        return self._run(["init"], "restic init")

    def unlock(self) -> subprocess.CompletedProcess[str]:
        """Remove every lock, including those held by live processes."""
        return self._run(["unlock", "--remove-all"], "restic unlock", timeout=STATUS_TIMEOUT)

    def snapshots(self, tags: Sequence[str] = ()) -> list[BackupSnapshot]:
        """Return snapshots carrying every tag in *tags*, newest first."""
        args = ["snapshots", "--json"]
        for tag in tags:
            args.extend(["--tag", tag])
        result = self._run(args, "restic snapshots")
        raw = json.loads(result.stdout or "[]") or []
        snapshots = [BackupSnapshot.from_dict(item) for item in raw if isinstance(item, Mapping)]
        snapshots.sort(key=lambda snapshot: snapshot.time, reverse=True)
        return snapshots

    def backup(self, source: Path, tags: Sequence[str]) -> str | None:
        """Back up *source* and return the new snapshot id from the summary record."""
        args = ["backup", str(source), "--json"]
        for tag in tags:
            args.extend(["--tag", tag])
        result = self._run(args, "restic backup")
        return parse_summary_snapshot_id(result.stdout or "")

    def restore(self, snapshot_id: str, target: Path) -> subprocess.CompletedProcess[str]:
        return self._run(["restore", snapshot_id, "--target", str(target)], "restic restore")

    def forget(self, snapshot_id: str) -> subprocess.CompletedProcess[str]:
        return self._run(["forget", snapshot_id], "restic forget", timeout=DELETE_TIMEOUT)

    def prune(
        self, *, keep_daily: int, keep_weekly: int, keep_monthly: int
    ) -> subprocess.CompletedProcess[str]:
        """Apply the retention policy and prune unreferenced data."""
        return self._run(
            [
                "forget",
                "--keep-daily",
                str(keep_daily),
                "--keep-weekly",
                str(keep_weekly),
                "--keep-monthly",
                str(keep_monthly),
                "--prune",
            ],
            "restic prune",
        )

    # ------------------------------------------------------------------
    def _run(
        self, args: Sequence[str], prefix: str, *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        return run_command(
            [self.restic_bin, *args],
            error_prefix=prefix,
            timeout=self.timeout if timeout is None else timeout,
            env=self.env,
        )


def parse_summary_snapshot_id(output: str) -> str | None:
    """Extract ``snapshot_id`` from restic's JSON-lines ``summary`` message."""
    for line in output.splitlines():
        line = line.strip()
        if not line or '"summary"' not in line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, Mapping) and record.get("message_type") == "summary":
            snapshot_id = record.get("snapshot_id")
            return str(snapshot_id) if snapshot_id else None
    return None


__all__ = ["DELETE_TIMEOUT", "STATUS_TIMEOUT", "ResticClient", "parse_summary_snapshot_id"]
