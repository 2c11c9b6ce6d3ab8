"""Tests for the container naming protocol."""
from __future__ import annotations

import pytest

from overwatch.naming import (
    ContainerNameParser,
    ParsedName,
    Unmatched,
    container_name,
    is_service_container,
    tenant_container_prefix,
)


def test_container_name_formats_identity() -> None:
    """Names join prefix, app, tenant, service and optional replica."""
    assert container_name("overwatch", "blog", "acme", "api") == "overwatch-blog-acme-api"
    assert container_name("overwatch", "blog", "acme", "api", 2) == "overwatch-blog-acme-api-2"
    assert tenant_container_prefix("overwatch", "blog", "acme") == "overwatch-blog-acme-"


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("overwatch-blog-acme-api", ParsedName("blog", "acme", "api")),
        ("overwatch-blog-acme-corp-web", ParsedName("blog", "acme-corp", "web")),
        ("overwatch-blog-acme-api-3", ParsedName("blog", "acme", "api", 3)),
        # A numeric second segment is a tenant, not a replica.
        ("overwatch-blog-7-api", ParsedName("blog", "7", "api")),
    ],
)
def test_parser_recovers_identity(name: str, expected: ParsedName) -> None:
    """Tenant ids containing hyphens and replica suffixes are parsed."""
    parser = ContainerNameParser("overwatch", ["blog"])

    assert parser.parse(name) == expected


def test_parser_prefers_longest_app_id() -> None:
    """The longest matching app id wins over a shorter hyphen-prefix."""
    parser = ContainerNameParser("overwatch", ["shop", "shop-admin"])

    result = parser.parse("overwatch-shop-admin-acme-api")

    assert result == ParsedName("shop-admin", "acme", "api")


def test_parser_falls_back_to_shorter_app_id() -> None:
    """When the longer id leaves too few segments the shorter one is tried."""
    parser = ContainerNameParser("overwatch", ["shop", "shop-admin"])

    assert parser.parse("overwatch-shop-admin-api") == ParsedName("shop", "admin", "api")


@pytest.mark.parametrize(
    ("name", "reason"),
    [
        ("postgres", "missing prefix"),
        ("other-blog-acme-api", "missing prefix"),
        ("overwatch-wiki-acme-api", "no known app id"),
        ("overwatch-blog-api", "no known app id"),
        ("overwatch-blog--api", "no known app id"),
    ],
)
def test_parser_reports_unmatched(name: str, reason: str) -> None:
    """Foreign or malformed names are reported rather than raised."""
    parser = ContainerNameParser("overwatch", ["blog"])

    result = parser.parse(name)

    assert isinstance(result, Unmatched)
    assert result.name == name
    assert result.reason == reason


def test_parse_many_keeps_only_managed_names() -> None:
    """Bulk parsing drops unmatched names."""
    parser = ContainerNameParser("overwatch", ["blog"])

    parsed = parser.parse_many(["overwatch-blog-acme-api", "overwatch-db", "traefik"])

    assert list(parsed) == ["overwatch-blog-acme-api"]


@pytest.mark.parametrize(
    ("name", "service", "expected"),
    [
        ("overwatch-blog-acme-api", "api", True),
        ("overwatch-blog-acme-api-2", "api", True),
        ("overwatch-blog-acme-api-x", "api", False),
        ("overwatch-blog-acme-webapi", "api", False),
    ],
)
def test_is_service_container(name: str, service: str, expected: bool) -> None:
    """Service membership honours the replica suffix."""
    assert is_service_container(name, service) is expected
