"""Per-tenant database provisioning on the shared database container.

Adapters run the engine's own client tools inside the database container via
``docker exec``. SQL is sent over stdin and the root password travels through
the docker client's environment, so neither credentials nor statements appear
in process arguments.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..config import ConfigError, OverwatchConfig
from ..errors import ValidationError
from .docker import DockerRuntime

_IDENTIFIER_RE = re.compile(r"^[a-z0-9_]+$")


def assert_safe_identifier(name: str, max_length: int) -> str:
    """Reject identifiers that could escape SQL quoting or exceed engine limits."""
    if not _IDENTIFIER_RE.match(name):
        raise ValidationError(
            f"Database identifier '{name}' may only contain lowercase letters, digits, "
            "and underscores."
        )
    if len(name) > max_length:
        raise ValidationError(
            f"Database identifier '{name}' exceeds the {max_length}-character limit."
        )
    return name


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class DatabaseAdapter(Protocol):
    """Operations the lifecycle manager and backup coordinator rely on."""

    max_identifier_length: int

    def database_name(self, app_id: str, tenant_id: str) -> str: ...

    def create_database(self, name: str, password: str) -> None: ...

    def drop_database(self, name: str) -> None: ...

    def dump_database(self, name: str, output_path: Path) -> None: ...

    def restore_database(self, name: str, input_path: Path) -> None: ...


@dataclass(slots=True)
class _ContainerDatabaseAdapter:
    runtime: DockerRuntime
    container_name: str
    db_prefix: str
    root_user: str = "root"
    root_password_env: str = "DB_ROOT_PASSWORD"
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)

    max_identifier_length = 63

    def database_name(self, app_id: str, tenant_id: str) -> str:
        """Return ``{db_prefix}_{app_id}_{tenant_id}`` as a safe SQL identifier."""
        raw = f"{self.db_prefix}_{app_id}_{tenant_id}".replace("-", "_")
        return assert_safe_identifier(raw, self.max_identifier_length)

    def _root_password(self) -> str:
        value = self.env.get(self.root_password_env)
        if not value:
            raise ConfigError(
                f"Environment variable {self.root_password_env} (database root password) "
                "is not set."
            )
        return value


@dataclass(slots=True)
class PostgresAdapter(_ContainerDatabaseAdapter):
    """PostgreSQL adapter using ``psql`` and ``pg_dump``."""

    max_identifier_length = 63

    def create_database(self, name: str, password: str) -> None:
        """Create (or re-password) the tenant role and create its database."""
        assert_safe_identifier(name, self.max_identifier_length)
        secret = _quote_literal(password)
        statements = (
            "DO $$ BEGIN\n"
            f"  IF NOT EXISTS (SELECT FROM pg_roles WHERE rolname = '{name}') THEN\n"
            f'    CREATE ROLE "{name}" LOGIN PASSWORD {secret};\n'
            "  ELSE\n"
            f'    ALTER ROLE "{name}" WITH LOGIN PASSWORD {secret};\n'
            "  END IF;\n"
            "END $$;\n"
            f'CREATE DATABASE "{name}" OWNER "{name}";\n'
            f'GRANT ALL PRIVILEGES ON DATABASE "{name}" TO "{name}";\n'
        )
        self._psql("postgres", statements)

    def drop_database(self, name: str) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self._psql(
            "postgres",
            f'DROP DATABASE IF EXISTS "{name}";\nDROP ROLE IF EXISTS "{name}";\n',
        )

    def dump_database(self, name: str, output_path: Path) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self.runtime.exec(
            self.container_name,
            ["pg_dump", "-U", self.root_user, "-d", name],
            env={"PGPASSWORD": self._root_password()},
            output_path=output_path,
        )

    def restore_database(self, name: str, input_path: Path) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self.runtime.exec(
            self.container_name,
            ["psql", "-v", "ON_ERROR_STOP=1", "-q", "-U", self.root_user, "-d", name],
            env={"PGPASSWORD": self._root_password()},
            input_path=input_path,
        )

    def _psql(self, database: str, sql: str) -> None:
        self.runtime.exec(
            self.container_name,
            ["psql", "-v", "ON_ERROR_STOP=1", "-q", "-U", self.root_user, "-d", database],
            env={"PGPASSWORD": self._root_password()},
            input_text=sql,
        )


@dataclass(slots=True)
class MySQLAdapter(_ContainerDatabaseAdapter):
    """MySQL / MariaDB adapter using ``mysql`` and ``mysqldump``."""

    max_identifier_length = 64

    def create_database(self, name: str, password: str) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        statements = (
            f"CREATE DATABASE IF NOT EXISTS `{name}` "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;\n"
            f"CREATE USER IF NOT EXISTS '{name}'@'%' IDENTIFIED BY {_quote_literal(password)};\n"
            f"GRANT ALL PRIVILEGES ON `{name}`.* TO '{name}'@'%';\n"
            "FLUSH PRIVILEGES;\n"
        )
        self._mysql(None, input_text=statements)

    def drop_database(self, name: str) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self._mysql(
            None,
            input_text=f"DROP DATABASE IF EXISTS `{name}`;\nDROP USER IF EXISTS '{name}'@'%';\n",
        )

    def dump_database(self, name: str, output_path: Path) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self.runtime.exec(
            self.container_name,
            ["mysqldump", "-u", self.root_user, "--single-transaction", "--routines", name],
            env={"MYSQL_PWD": self._root_password()},
            output_path=output_path,
        )

    def restore_database(self, name: str, input_path: Path) -> None:
        assert_safe_identifier(name, self.max_identifier_length)
        self._mysql(name, input_path=input_path)

    def _mysql(
        self,
        database: str | None,
        *,
        input_text: str | None = None,
        input_path: Path | None = None,
    ) -> None:
        command = ["mysql", "-u", self.root_user]
        if database is not None:
            command.append(database)
        self.runtime.exec(
            self.container_name,
            command,
            env={"MYSQL_PWD": self._root_password()},
            input_text=input_text,
            input_path=input_path,
        )


def create_database_adapter(
    config: OverwatchConfig,
    runtime: DockerRuntime,
    *,
    env: Mapping[str, str] | None = None,
) -> DatabaseAdapter:
    """Return the adapter matching ``config.database.type``."""
    database = config.database
    adapter_cls: type[_ContainerDatabaseAdapter]
    if database.type == "postgres":
        adapter_cls = PostgresAdapter
    elif database.type in {"mysql", "mariadb"}:
        adapter_cls = MySQLAdapter
    else:  # pragma: no cover - rejected by the config loader
        raise ConfigError(f"Unsupported database type '{database.type}'.")
    return adapter_cls(
        runtime=runtime,
        container_name=database.container_name,
        db_prefix=config.project.db_prefix,
        root_user=database.root_user,
        root_password_env=database.root_password_env,
        env=os.environ if env is None else env,
    )


__all__ = [
    "DatabaseAdapter",
    "MySQLAdapter",
    "PostgresAdapter",
    "assert_safe_identifier",
    "create_database_adapter",
]
