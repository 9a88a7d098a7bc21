"""Control signals raised by step bodies and the waypoint error hierarchy."""

from __future__ import annotations

from datetime import timedelta
from typing import Optional


class StepSignal(Exception):
    """Base class for control-flow signals raised from inside a step body.

    Signals are not faults: the engine never applies the step's exception
    policy to them, and a transactional step is committed when one is raised.
    """


class FinishJourney(StepSignal):
    """Finish the journey immediately, skipping any remaining steps."""


class SkipStep(StepSignal):
    """Move on to the next step."""


class PauseJourney(StepSignal):
    """Pause the journey until it is explicitly resumed."""


class CancelJourney(StepSignal):
    """Cancel the journey. Canceled journeys never run again."""


class ReattemptStep(StepSignal):
    """Run the same step again after ``wait``."""

    def __init__(self, wait: Optional[timedelta] = None) -> None:
        super().__init__(f"reattempt after {wait}")
        self.wait = wait


class WaypointError(Exception):
    """Base class for errors raised by waypoint itself."""


class JourneyNotFound(WaypointError):
    """No journey exists with the given id."""


class JourneyAlreadyExists(WaypointError):
    """An active journey of this type already exists for the hero."""


class UnknownJourneyType(WaypointError):
    """The journey type name has not been registered."""


class InvalidTransition(WaypointError):
    """The requested operation is not allowed in the journey's current state."""


class StorageError(WaypointError):
    """The backing store failed; the operation may be retried."""


class LockContention(StorageError):
    """The journey row lock could not be acquired in time."""


__all__ = [
    "StepSignal",
    "FinishJourney",
    "SkipStep",
    "PauseJourney",
    "CancelJourney",
    "ReattemptStep",
    "WaypointError",
    "JourneyNotFound",
    "JourneyAlreadyExists",
    "UnknownJourneyType",
    "InvalidTransition",
    "StorageError",
    "LockContention",
]
