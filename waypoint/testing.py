"""Helpers for exercising journeys in tests without waiting for real time."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .engine import AdvanceResult, JourneyEngine
from .persistence.models import JourneyRecord
from .scheduling import InMemoryScheduler


async def speedrun_journey(
    engine: JourneyEngine, journey_id: str, max_steps: int = 100
) -> Optional[JourneyRecord]:
    """Advance a journey step after step, ignoring every wait.

    Stops once the journey no longer holds a token, i.e. it is terminal,
    paused, or left in ``performing``.
    """
    for _ in range(max_steps):
        journey = await engine.repository.get_journey(journey_id)
        if journey is None or journey.idempotency_token is None:
            return journey
        await engine.advance(journey.id, journey.idempotency_token)
    raise RuntimeError(f"Journey {journey_id} did not settle within {max_steps} steps")


async def run_due(
    engine: JourneyEngine, scheduler: InMemoryScheduler, now: Optional[datetime] = None
) -> list[AdvanceResult]:
    """Perform every invocation due at ``now`` once, acking each."""
    results = []
    for invocation in await scheduler.claim_due(now):
        try:
            results.append(await engine.perform(invocation))
        finally:
            await scheduler.ack(invocation.key)
    return results
