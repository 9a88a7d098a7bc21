"""Maps what a step body did to the journey's next persisted state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .config import RetryConfig
from .contracts import ExceptionPolicy, JourneyState, JourneyType, StepSpec
from .persistence.models import JourneyRecord, TransitionRecord, new_token
from .signals import (
    CancelJourney,
    FinishJourney,
    PauseJourney,
    ReattemptStep,
    SkipStep,
    StepSignal,
)
from .utils.retry import backoff_delay

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    PROCEED = "proceed"
    SKIP = "skip"
    FINISH = "finish"
    PAUSE = "pause"
    CANCEL = "cancel"
    REATTEMPT = "reattempt"
    FAULT = "fault"


_SIGNAL_KINDS = {
    FinishJourney: OutcomeKind.FINISH,
    SkipStep: OutcomeKind.SKIP,
    PauseJourney: OutcomeKind.PAUSE,
    CancelJourney: OutcomeKind.CANCEL,
    ReattemptStep: OutcomeKind.REATTEMPT,
}

_POLICY_KINDS = {
    ExceptionPolicy.CANCEL: OutcomeKind.CANCEL,
    ExceptionPolicy.PAUSE: OutcomeKind.PAUSE,
    ExceptionPolicy.SKIP: OutcomeKind.SKIP,
}


@dataclass(frozen=True)
class StepOutcome:
    """What happened when a step body ran."""

    kind: OutcomeKind
    wait: Optional[timedelta] = None
    error: Optional[BaseException] = None

    @classmethod
    def returned(cls) -> "StepOutcome":
        return cls(OutcomeKind.PROCEED)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "StepOutcome":
        if isinstance(exc, StepSignal):
            for signal_type, kind in _SIGNAL_KINDS.items():
                if isinstance(exc, signal_type):
                    wait = exc.wait if isinstance(exc, ReattemptStep) else None
                    return cls(kind, wait=wait)
        return cls(OutcomeKind.FAULT, error=exc)


@dataclass
class Transition:
    """The next persisted journey state plus its history entry."""

    journey: JourneyRecord
    record: TransitionRecord

    @property
    def needs_invocation(self) -> bool:
        return self.journey.idempotency_token is not None


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


# ----------------------------------------------------------------------
# Journey state builders. Each returns a new record; the input is untouched.
def schedule_step(
    journey: JourneyRecord,
    step: StepSpec,
    now: datetime,
    wait: Optional[timedelta] = None,
    state: Optional[JourneyState] = None,
    attempt_count: int = 0,
) -> JourneyRecord:
    wait = step.wait if wait is None else wait
    if state is None:
        state = JourneyState.SLEEPING if wait > timedelta(0) else JourneyState.READY
    return journey.model_copy(
        update={
            "state": state,
            "next_step_name": step.name,
            "paused_step_name": None,
            "scheduled_at": now + wait,
            "idempotency_token": new_token(),
            "attempt_count": attempt_count,
            "updated_at": now,
        }
    )


def end_journey(
    journey: JourneyRecord,
    state: JourneyState,
    now: datetime,
    error: Optional[str] = None,
) -> JourneyRecord:
    update = {
        "state": state,
        "next_step_name": None,
        "paused_step_name": None,
        "scheduled_at": None,
        "idempotency_token": None,
        "updated_at": now,
    }
    if error is not None:
        update["last_error"] = error
    return journey.model_copy(update=update)


def pause_journey(journey: JourneyRecord, step_name: str, now: datetime) -> JourneyRecord:
    return journey.model_copy(
        update={
            "state": JourneyState.PAUSED,
            "next_step_name": None,
            "paused_step_name": step_name,
            "idempotency_token": None,
            "updated_at": now,
        }
    )


def max_attempts_for(
    step: StepSpec, journey_type: JourneyType, retry: RetryConfig
) -> int:
    return step.max_attempts or journey_type.max_attempts or retry.max_attempts


# ----------------------------------------------------------------------
def interpret(
    journey: JourneyRecord,
    journey_type: JourneyType,
    step: StepSpec,
    outcome: StepOutcome,
    retry: RetryConfig,
    now: datetime,
) -> Transition:
    """Compute the transition out of ``performing`` for ``step``.

    Control signals always decide the transition; a raised fault is first
    translated through the step's exception policy.
    """
    kind = outcome.kind
    error = describe_error(outcome.error) if outcome.error is not None else None
    label: str

    if kind is OutcomeKind.FAULT:
        policy = step.on_exception
        if policy is ExceptionPolicy.FATAL:
            return _record(
                journey,
                end_journey(journey, JourneyState.FAILED, now, error),
                step,
                "failed",
                error,
            )
        if policy is ExceptionPolicy.REATTEMPT:
            kind = OutcomeKind.REATTEMPT
        else:
            kind = _POLICY_KINDS[policy]

    if kind is OutcomeKind.PROCEED or kind is OutcomeKind.SKIP:
        label = "proceeded" if kind is OutcomeKind.PROCEED else "skipped"
        following = journey_type.step_after(step.name)
        if following is None:
            new = end_journey(journey, JourneyState.FINISHED, now)
            return _record(journey, new, step, "finished", error)
        return _record(journey, schedule_step(journey, following, now), step, label, error)

    if kind is OutcomeKind.FINISH:
        return _record(
            journey, end_journey(journey, JourneyState.FINISHED, now), step, "finished", error
        )

    if kind is OutcomeKind.CANCEL:
        return _record(
            journey,
            end_journey(journey, JourneyState.CANCELED, now, error),
            step,
            "canceled",
            error,
        )

    if kind is OutcomeKind.PAUSE:
        new = pause_journey(journey, step.name, now)
        if error is not None:
            new = new.model_copy(update={"last_error": error})
        return _record(journey, new, step, "paused", error)

    # Reattempt, explicit or by exception policy.
    attempts = journey.attempt_count + 1
    limit = max_attempts_for(step, journey_type, retry)
    if attempts >= limit:
        reason = error or f"reattempted {journey.attempt_count} times"
        logger.error(
            f"Step {step.name} of journey {journey.id} exhausted {limit} attempts; failing"
        )
        return _record(
            journey,
            end_journey(journey, JourneyState.FAILED, now, reason),
            step,
            "failed",
            reason,
        )
    wait = outcome.wait if outcome.wait is not None else backoff_delay(attempts, retry)
    new = schedule_step(
        journey,
        step,
        now,
        wait=wait,
        state=JourneyState.SLEEPING,
        attempt_count=attempts,
    )
    if error is not None:
        new = new.model_copy(update={"last_error": error})
    return _record(journey, new, step, "reattempt", error)


def _record(
    before: JourneyRecord,
    after: JourneyRecord,
    step: StepSpec,
    outcome: str,
    error: Optional[str],
) -> Transition:
    return Transition(
        journey=after,
        record=TransitionRecord(
            journey_id=before.id,
            step_name=step.name,
            from_state=before.state,
            to_state=after.state,
            outcome=outcome,
            attempt=before.attempt_count,
            error=error,
            created_at=after.updated_at,
        ),
    )
