"""Journey storage: record models, the repository protocol and its backends."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .inmemory import InMemoryJourneyRepository
from .models import JourneyRecord, TransitionRecord
from .postgres import PostgresJourneyRepository
from .repository import JourneyRepository, LockedJourney
from .sqlite import SQLiteJourneyRepository

_repository_instance: JourneyRepository | None = None

_POSTGRES_SCHEMES = ("postgres://", "postgresql://")


def _open_repository(database_url: str, config: WaypointConfig) -> JourneyRepository:
    if database_url.startswith("sqlite://"):
        return SQLiteJourneyRepository(
            database_url[len("sqlite://"):], lock_timeout=config.lock_timeout_seconds
        )
    if database_url.startswith(_POSTGRES_SCHEMES):
        return PostgresJourneyRepository(
            database_url, lock_timeout=config.lock_timeout_seconds
        )
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> JourneyRepository:
    """Return the process-wide journey repository, creating it on first use.

    ``database_url`` wins over ``WAYPOINT_DATABASE_URL``/``DATABASE_URL`` and
    ``config.database_url``. ``sqlite://<path>`` selects SQLite and
    ``postgres://`` or ``postgresql://`` selects PostgreSQL. With no URL at
    all, journeys live in memory. Passing either argument builds a fresh
    repository and makes it the shared one.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("WAYPOINT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if database_url:
        _repository_instance = _open_repository(database_url, config)
    else:
        _repository_instance = InMemoryJourneyRepository()
    return _repository_instance


__all__ = [
    "InMemoryJourneyRepository",
    "JourneyRecord",
    "JourneyRepository",
    "LockedJourney",
    "PostgresJourneyRepository",
    "SQLiteJourneyRepository",
    "TransitionRecord",
    "get_repository",
]
