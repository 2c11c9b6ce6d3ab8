"""Provider interfaces for Overwatch."""
from __future__ import annotations

from .compose import ComposeGenerator, TemplateComposeGenerator
from .database import DatabaseAdapter, MySQLAdapter, PostgresAdapter, create_database_adapter
from .docker import DockerRuntime
from .process import run_command
from .restic import ResticClient

__all__ = [
    "ComposeGenerator",
    "DatabaseAdapter",
    "DockerRuntime",
    "MySQLAdapter",
    "PostgresAdapter",
    "ResticClient",
    "TemplateComposeGenerator",
    "create_database_adapter",
    "run_command",
]
