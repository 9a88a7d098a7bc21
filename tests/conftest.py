from datetime import datetime, timedelta, timezone

import pytest

from waypoint.config import RetryConfig, WaypointConfig
from waypoint.engine import JourneyEngine
from waypoint.persistence import InMemoryJourneyRepository, SQLiteJourneyRepository
from waypoint.registry import JourneyTypeRegistry
from waypoint.scheduling import InMemoryScheduler


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return WaypointConfig(
        retry=RetryConfig(
            max_attempts=3, base_seconds=10, factor=2, max_seconds=100, jitter=0
        )
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteJourneyRepository(tmp_path / "journeys.db")
    return InMemoryJourneyRepository()


@pytest.fixture
def registry():
    return JourneyTypeRegistry()


@pytest.fixture
def scheduler(clock):
    return InMemoryScheduler(clock=clock, poll_interval=0.01)


@pytest.fixture
def engine(repository, scheduler, registry, config, clock):
    return JourneyEngine(
        repository=repository,
        scheduler=scheduler,
        registry=registry,
        config=config,
        clock=clock,
    )
