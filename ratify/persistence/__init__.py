"""Persistence layer for ratify workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import RatifyConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import IMMUTABLE_STEP_FIELDS, apply_patch
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def repository_for_url(database_url: Optional[str]) -> WorkflowRepository:
    """Build a repository for ``database_url``.

    ``None``, ``""`` and ``memory://`` give an in-memory store;
    ``sqlite:///path/to.db`` and ``postgresql://...`` select the database
    backends.
    """
    if not database_url or database_url.startswith("memory://"):
        return InMemoryWorkflowRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteWorkflowRepository(database_url[len("sqlite://"):])
    if database_url.startswith(("postgres://", "postgresql://")):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("Postgres support not available (install asyncpg)")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RatifyConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    The first call (or any call that passes ``database_url`` or ``config``)
    builds the repository from the explicit URL, ``RATIFY_DATABASE_URL`` /
    ``DATABASE_URL``, or the loaded configuration, in that order. Later
    calls without arguments reuse it.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("RATIFY_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )
    _repository_instance = repository_for_url(database_url)
    return _repository_instance


def set_repository(repository: WorkflowRepository | None) -> None:
    """Install ``repository`` as the process-wide instance (``None`` resets)."""
    global _repository_instance
    _repository_instance = repository


__all__ = [
    "IMMUTABLE_STEP_FIELDS",
    "InMemoryWorkflowRepository",
    "PostgresWorkflowRepository",
    "SQLiteWorkflowRepository",
    "WorkflowRepository",
    "apply_patch",
    "get_repository",
    "repository_for_url",
    "set_repository",
]
