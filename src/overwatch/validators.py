"""Input validation helpers shared across the orchestration core.

Every helper returns the validated value (stripped where relevant) or raises
:class:`~overwatch.errors.ValidationError` naming the rule that was violated.
"""
from __future__ import annotations

import re

from .errors import ValidationError

SLUG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$")
MAX_SLUG_LENGTH = 63
SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")
_LABEL = r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
DOMAIN_RE = re.compile(rf"^(?=.{{1,253}}$){_LABEL}(?:\.{_LABEL})+$")
IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
SNAPSHOT_ID_RE = re.compile(r"^[a-f0-9]{8,64}$")
CONTAINER_PATH_RE = re.compile(r"^[A-Za-z0-9/_.-]+$")
LOCAL_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
# Staging entries written next to the backed-up paths of a tenant.
RESERVED_LOCAL_NAMES = {".", "..", ".env", "database.sql"}


def validate_slug(value: str, label: str) -> str:
    """Validate a lowercase hyphenated identifier such as an app or tenant id."""
    candidate = (value or "").strip()
    if not candidate:
        raise ValidationError(f"{label} must be a non-empty string.")
    if len(candidate) > MAX_SLUG_LENGTH:
        raise ValidationError(f"{label} must be at most {MAX_SLUG_LENGTH} characters.")
    if not SLUG_RE.match(candidate):
        raise ValidationError(
            f"{label} '{candidate}' must be lowercase letters, digits, and hyphens, "
            "starting and ending with a letter or digit."
        )
    return candidate


def validate_app_id(value: str) -> str:
    """Validate an app id."""
    return validate_slug(value, "App id")


def validate_tenant_id(value: str) -> str:
    """Validate a tenant id."""
    return validate_slug(value, "Tenant id")


def validate_service_name(value: str) -> str:
    """Validate a service name; it forms the last segment of container names."""
    candidate = (value or "").strip()
    if not SERVICE_NAME_RE.match(candidate):
        raise ValidationError(
            f"Service name '{candidate}' must start with a lowercase letter and contain "
            "only lowercase letters, digits, and underscores."
        )
    return candidate


def validate_domain(value: str) -> str:
    """Validate a tenant domain name."""
    candidate = (value or "").strip().lower()
    if not DOMAIN_RE.match(candidate):
        raise ValidationError(f"Invalid domain '{value}'.")
    return candidate


def validate_image_tag(value: str) -> str:
    """Validate a container image tag."""
    candidate = (value or "").strip()
    if not IMAGE_TAG_RE.match(candidate):
        raise ValidationError(f"Invalid image tag '{value}'.")
    return candidate


def validate_snapshot_id(value: str) -> str:
    """Validate a backup snapshot id (short or full hex form)."""
    candidate = (value or "").strip()
    if not SNAPSHOT_ID_RE.match(candidate):
        raise ValidationError(f"Invalid snapshot id '{value}'.")
    return candidate


def validate_container_path(value: str) -> str:
    """Validate a container-internal path before it is passed to an external tool."""
    candidate = (value or "").strip()
    if not candidate or not CONTAINER_PATH_RE.match(candidate):
        raise ValidationError(
            f"Container path '{value}' may only contain letters, digits, '/', '_', '.', and '-'."
        )
    if ".." in candidate:
        raise ValidationError(f"Container path '{value}' must not contain '..'.")
    return candidate


def validate_local_name(value: str) -> str:
    """Validate the archive subdirectory a backed-up path is stored under."""
    candidate = (value or "").strip()
    if not LOCAL_NAME_RE.match(candidate):
        raise ValidationError(f"Invalid backup directory name '{value}'.")
    if candidate in RESERVED_LOCAL_NAMES:
        raise ValidationError(f"Backup directory name '{candidate}' is reserved.")
    return candidate


__all__ = [
    "MAX_SLUG_LENGTH",
    "SLUG_RE",
    "SNAPSHOT_ID_RE",
    "validate_app_id",
    "validate_container_path",
    "validate_domain",
    "validate_image_tag",
    "validate_local_name",
    "validate_service_name",
    "validate_slug",
    "validate_snapshot_id",
    "validate_tenant_id",
]
