"""Persistence layer for the flowmail engine."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowmailConfig, load_config
from .inmemory import InMemoryEngineRepository
from .models import (
    AutomationRecord,
    Contact,
    ContactEvent,
    EventCursor,
    QueueItem,
    QueueStatus,
    Run,
    RunStatus,
)
from .repository import EngineRepository
from .sqlite import SQLiteEngineRepository

_repository_instance: EngineRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowmailConfig] = None
) -> EngineRepository:
    """Factory function to obtain an engine repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWMAIL_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWMAIL_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryEngineRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteEngineRepository(path or ":memory:")
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        from .postgres import PostgresEngineRepository

        _repository_instance = PostgresEngineRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def set_repository(repository: EngineRepository | None) -> None:
    """Install ``repository`` as the process-wide instance (``None`` resets)."""
    global _repository_instance
    _repository_instance = repository


__all__ = [
    "AutomationRecord",
    "Contact",
    "ContactEvent",
    "EventCursor",
    "QueueItem",
    "QueueStatus",
    "Run",
    "RunStatus",
    "EngineRepository",
    "InMemoryEngineRepository",
    "SQLiteEngineRepository",
    "get_repository",
    "set_repository",
]
