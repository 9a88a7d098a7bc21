"""Waypoint: durable, step-by-step journeys persisted in a relational store."""

from .contracts import (
    ExceptionPolicy,
    HeroRef,
    JourneyState,
    JourneyType,
    JourneyTypeBuilder,
    StepContext,
    StepSpec,
)
from .engine import AdvanceResult, AdvanceStatus, JourneyEngine
from .persistence import JourneyRecord, TransitionRecord, get_repository
from .registry import REGISTRY, register_journey_type
from .scheduling import Invocation, get_scheduler
from .signals import (
    CancelJourney,
    FinishJourney,
    InvalidTransition,
    JourneyAlreadyExists,
    JourneyNotFound,
    LockContention,
    PauseJourney,
    ReattemptStep,
    SkipStep,
    StorageError,
    UnknownJourneyType,
    WaypointError,
)
from .worker import JourneyWorker

__version__ = "0.1.0"
__all__ = [
    "AdvanceResult",
    "AdvanceStatus",
    "CancelJourney",
    "ExceptionPolicy",
    "FinishJourney",
    "HeroRef",
    "InvalidTransition",
    "Invocation",
    "JourneyAlreadyExists",
    "JourneyEngine",
    "JourneyNotFound",
    "JourneyRecord",
    "JourneyState",
    "JourneyType",
    "JourneyTypeBuilder",
    "JourneyWorker",
    "LockContention",
    "PauseJourney",
    "REGISTRY",
    "ReattemptStep",
    "SkipStep",
    "StepContext",
    "StepSpec",
    "StorageError",
    "TransitionRecord",
    "UnknownJourneyType",
    "WaypointError",
    "get_repository",
    "get_scheduler",
    "register_journey_type",
]
