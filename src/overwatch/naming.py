"""Container naming protocol.

Managed containers are named::

    {prefix}-{app_id}-{tenant_id}-{service}[-{replica}]

Tenant ids may contain hyphens, so a name can only be split reliably against
the set of known app ids. :class:`ContainerNameParser` tries app ids longest
first and returns a tagged result instead of raising: names that belong to no
known app are :class:`Unmatched`, never errors.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_REPLICA_RE = re.compile(r"^\d+$")


@dataclass(slots=True, frozen=True)
class ParsedName:
    """Identity recovered from a managed container name."""

    app_id: str
    tenant_id: str
    service: str
    replica: int | None = None


@dataclass(slots=True, frozen=True)
class Unmatched:
    """A container name that does not belong to any known app."""

    name: str
    reason: str


ParseResult = ParsedName | Unmatched


def container_name(
    prefix: str,
    app_id: str,
    tenant_id: str,
    service: str,
    replica: int | None = None,
) -> str:
    """Return the container name for the given identity."""
    name = f"{prefix}-{app_id}-{tenant_id}-{service}"
    if replica is not None:
        name = f"{name}-{replica}"
    return name


def tenant_container_prefix(prefix: str, app_id: str, tenant_id: str) -> str:
    """Return the name prefix shared by every container of one tenant."""
    return f"{prefix}-{app_id}-{tenant_id}-"


def is_service_container(name: str, service: str) -> bool:
    """Return whether *name* ends in ``-{service}`` or ``-{service}-{digits}``."""
    if name.endswith(f"-{service}"):
        return True
    head, _, tail = name.rpartition("-")
    return bool(head) and _REPLICA_RE.match(tail) is not None and head.endswith(f"-{service}")


class ContainerNameParser:
    """Longest-prefix parser over a fixed set of app ids."""

    def __init__(self, prefix: str, app_ids: Iterable[str]) -> None:
        """Create a parser for names under *prefix* belonging to *app_ids*."""
        self.prefix = prefix
        self.app_ids = tuple(sorted(set(app_ids), key=lambda value: (-len(value), value)))

    def parse(self, name: str) -> ParseResult:
        """Parse *name* into a :class:`ParsedName` or explain why it is unmatched."""
        lead = f"{self.prefix}-"
        if not name.startswith(lead):
            return Unmatched(name, "missing prefix")
        remainder = name[len(lead) :]
        for app_id in self.app_ids:
            head = f"{app_id}-"
            if not remainder.startswith(head):
                continue
            parsed = self._split_tail(app_id, remainder[len(head) :])
            if parsed is not None:
                return parsed
        return Unmatched(name, "no known app id")

    def parse_many(self, names: Iterable[str]) -> dict[str, ParsedName]:
        """Return the parseable subset of *names* keyed by name."""
        parsed: dict[str, ParsedName] = {}
        for name in names:
            result = self.parse(name)
            if isinstance(result, ParsedName):
                parsed[name] = result
        return parsed

    @staticmethod
    def _split_tail(app_id: str, tail: str) -> ParsedName | None:
        segments = tail.split("-")
        if any(not segment for segment in segments):
            return None
        replica: int | None = None
        # Tenant and service must both survive the replica strip.
        if len(segments) > 2 and _REPLICA_RE.match(segments[-1]):
            replica = int(segments.pop())
        if len(segments) < 2:
            return None
        return ParsedName(
            app_id=app_id,
            tenant_id="-".join(segments[:-1]),
            service=segments[-1],
            replica=replica,
        )


__all__ = [
    "ContainerNameParser",
    "ParseResult",
    "ParsedName",
    "Unmatched",
    "container_name",
    "is_service_container",
    "tenant_container_prefix",
]
