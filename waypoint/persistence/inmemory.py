"""In-memory implementation of the journey repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional

from ..contracts import HeroRef, JourneyState
from ..signals import JourneyAlreadyExists
from .models import JourneyRecord, TransitionRecord
from .repository import JourneyRepository, LockedJourney


class InMemoryJourneyRepository(JourneyRepository):
    """Store journey state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied in and out so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._journeys: Dict[str, JourneyRecord] = {}
        self._transitions: Dict[str, list[TransitionRecord]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()
        self._transition_id = 0

    def _append(self, transition: TransitionRecord) -> None:
        self._transition_id += 1
        stored = transition.model_copy(update={"id": self._transition_id})
        self._transitions.setdefault(transition.journey_id, []).append(stored)

    # ------------------------------------------------------------------
    async def create_journey(
        self, journey: JourneyRecord, transition: Optional[TransitionRecord] = None
    ) -> None:
        async with self._create_lock:
            if journey.id in self._journeys:
                raise JourneyAlreadyExists(f"Journey {journey.id} already exists")
            if journey.hero is not None and not journey.allow_multiple:
                existing = await self.find_active_for_hero(
                    journey.hero, journey.journey_type
                )
                if existing is not None and not existing.allow_multiple:
                    raise JourneyAlreadyExists(
                        f"{journey.journey_type} already active for {journey.hero} "
                        f"as journey {existing.id}"
                    )
            self._journeys[journey.id] = journey.model_copy(deep=True)
            if transition is not None:
                self._append(transition)

    @asynccontextmanager
    async def lock(self, journey_id: str) -> AsyncIterator[LockedJourney]:
        lock = self._locks.setdefault(journey_id, asyncio.Lock())
        async with lock:
            current = self._journeys.get(journey_id)
            handle = LockedJourney(current.model_copy(deep=True) if current else None)
            yield handle
            if handle.changed and handle.journey is not None:
                self._journeys[journey_id] = handle.journey.model_copy(deep=True)
                for transition in handle.transitions:
                    self._append(transition)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        yield None

    async def get_journey(self, journey_id: str) -> JourneyRecord | None:
        journey = self._journeys.get(journey_id)
        return journey.model_copy(deep=True) if journey else None

    async def find_active_for_hero(
        self, hero: HeroRef, journey_type: Optional[str] = None
    ) -> JourneyRecord | None:
        for journey in self._journeys.values():
            if journey.hero != hero or journey.is_terminal:
                continue
            if journey_type is not None and journey.journey_type != journey_type:
                continue
            return journey.model_copy(deep=True)
        return None

    async def list_journeys(
        self,
        state: Optional[JourneyState] = None,
        journey_type: Optional[str] = None,
        hero: Optional[HeroRef] = None,
    ) -> list[JourneyRecord]:
        return [
            j.model_copy(deep=True)
            for j in self._journeys.values()
            if (state is None or j.state == state)
            and (journey_type is None or j.journey_type == journey_type)
            and (hero is None or j.hero == hero)
        ]

    async def list_transitions(self, journey_id: str) -> list[TransitionRecord]:
        return [t.model_copy() for t in self._transitions.get(journey_id, [])]

    async def find_stuck(self, older_than: datetime) -> list[JourneyRecord]:
        return [
            j.model_copy(deep=True)
            for j in self._journeys.values()
            if j.state == JourneyState.PERFORMING and j.updated_at < older_than
        ]
