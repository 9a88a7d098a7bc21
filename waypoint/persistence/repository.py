"""Repository abstraction for journey state persistence."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, AsyncContextManager, Mapping, Optional, Protocol

from ..contracts import HeroRef, JourneyState
from .models import JourneyRecord, TransitionRecord


class LockedJourney:
    """A journey row held under the exclusive lock.

    ``journey`` is ``None`` when no row exists. Changes staged with
    :meth:`save` are written when the lock context exits without an error,
    in the same transaction that held the lock.
    """

    def __init__(self, journey: Optional[JourneyRecord]) -> None:
        self.journey = journey
        self.changed = False
        self.transitions: list[TransitionRecord] = []

    def save(
        self, journey: JourneyRecord, transition: Optional[TransitionRecord] = None
    ) -> None:
        self.journey = journey
        self.changed = True
        if transition is not None:
            self.transitions.append(transition)


class JourneyRepository(Protocol):
    """Protocol for journey persistence backends."""

    async def create_journey(
        self, journey: JourneyRecord, transition: Optional[TransitionRecord] = None
    ) -> None:
        """Insert a new journey, enforcing one active journey per hero and type."""

    def lock(self, journey_id: str) -> AsyncContextManager[LockedJourney]:
        """Hold the exclusive row lock for ``journey_id``."""

    def transaction(self) -> AsyncContextManager[Any]:
        """Open a storage transaction for a transactional step body."""

    async def get_journey(self, journey_id: str) -> JourneyRecord | None:
        """Retrieve a journey by id without locking it."""

    async def find_active_for_hero(
        self, hero: HeroRef, journey_type: Optional[str] = None
    ) -> JourneyRecord | None:
        """Return the non-terminal journey for ``hero``, if any."""

    async def list_journeys(
        self,
        state: Optional[JourneyState] = None,
        journey_type: Optional[str] = None,
        hero: Optional[HeroRef] = None,
    ) -> list[JourneyRecord]:
        """Return journeys matching every given filter."""

    async def list_transitions(self, journey_id: str) -> list[TransitionRecord]:
        """Return the transition history of a journey, oldest first."""

    async def find_stuck(self, older_than: datetime) -> list[JourneyRecord]:
        """Return journeys left in ``performing`` since before ``older_than``."""


JOURNEY_COLUMNS = (
    "id",
    "journey_type",
    "hero_kind",
    "hero_id",
    "allow_multiple",
    "state",
    "next_step_name",
    "paused_step_name",
    "scheduled_at",
    "idempotency_token",
    "attempt_count",
    "params",
    "last_error",
    "created_at",
    "updated_at",
)

TRANSITION_COLUMNS = (
    "journey_id",
    "step_name",
    "from_state",
    "to_state",
    "outcome",
    "attempt",
    "error",
    "created_at",
)

TERMINAL_STATE_VALUES = tuple(
    s.value for s in (JourneyState.FINISHED, JourneyState.CANCELED, JourneyState.FAILED)
)


def journey_to_row(journey: JourneyRecord) -> dict[str, Any]:
    """Flatten a journey into column values; timestamps are left as datetimes."""
    return {
        "id": journey.id,
        "journey_type": journey.journey_type,
        "hero_kind": journey.hero.kind if journey.hero else None,
        "hero_id": journey.hero.id if journey.hero else None,
        "allow_multiple": journey.allow_multiple,
        "state": journey.state.value,
        "next_step_name": journey.next_step_name,
        "paused_step_name": journey.paused_step_name,
        "scheduled_at": journey.scheduled_at,
        "idempotency_token": journey.idempotency_token,
        "attempt_count": journey.attempt_count,
        "params": json.dumps(journey.params),
        "last_error": journey.last_error,
        "created_at": journey.created_at,
        "updated_at": journey.updated_at,
    }


def row_to_journey(row: Mapping[str, Any]) -> JourneyRecord:
    hero = None
    if row["hero_kind"] is not None and row["hero_id"] is not None:
        hero = HeroRef(kind=row["hero_kind"], id=row["hero_id"])
    params = row["params"]
    if isinstance(params, str):
        params = json.loads(params)
    return JourneyRecord(
        id=row["id"],
        journey_type=row["journey_type"],
        hero=hero,
        allow_multiple=bool(row["allow_multiple"]),
        state=JourneyState(row["state"]),
        next_step_name=row["next_step_name"],
        paused_step_name=row["paused_step_name"],
        scheduled_at=row["scheduled_at"],
        idempotency_token=row["idempotency_token"],
        attempt_count=row["attempt_count"],
        params=params or {},
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def transition_to_row(transition: TransitionRecord) -> dict[str, Any]:
    return {
        "journey_id": transition.journey_id,
        "step_name": transition.step_name,
        "from_state": transition.from_state.value if transition.from_state else None,
        "to_state": transition.to_state.value,
        "outcome": transition.outcome,
        "attempt": transition.attempt,
        "error": transition.error,
        "created_at": transition.created_at,
    }


def row_to_transition(row: Mapping[str, Any]) -> TransitionRecord:
    return TransitionRecord(
        id=row["id"],
        journey_id=row["journey_id"],
        step_name=row["step_name"],
        from_state=JourneyState(row["from_state"]) if row["from_state"] else None,
        to_state=JourneyState(row["to_state"]),
        outcome=row["outcome"],
        attempt=row["attempt"],
        error=row["error"],
        created_at=row["created_at"],
    )
