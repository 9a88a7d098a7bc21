"""Journey definitions: states, step specs, journey types and the step context."""

from __future__ import annotations

import inspect
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .signals import CancelJourney, FinishJourney, PauseJourney, ReattemptStep, SkipStep

if TYPE_CHECKING:
    from .persistence.models import JourneyRecord


class JourneyState(str, Enum):
    """Every state a persisted journey can be in."""

    READY = "ready"
    PERFORMING = "performing"
    SLEEPING = "sleeping"
    PAUSED = "paused"
    FINISHED = "finished"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def has_next_step(self) -> bool:
        return self in (JourneyState.READY, JourneyState.SLEEPING, JourneyState.PERFORMING)


TERMINAL_STATES = frozenset(
    {JourneyState.FINISHED, JourneyState.CANCELED, JourneyState.FAILED}
)


class ExceptionPolicy(str, Enum):
    """What happens to a journey when its step body raises."""

    FATAL = "fatal"
    REATTEMPT = "reattempt"
    CANCEL = "cancel"
    PAUSE = "pause"
    SKIP = "skip"


class HeroRef(BaseModel):
    """Typed reference to the entity a journey runs for."""

    model_config = ConfigDict(frozen=True)

    kind: str
    id: str

    @classmethod
    def of(cls, kind: str, id: Any) -> "HeroRef":
        return cls(kind=kind, id=str(id))

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


StepBody = Callable[..., Any]
CancelPredicate = Callable[..., Any]


class StepSpec(BaseModel):
    """One step of a journey type."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    body: StepBody
    wait: timedelta = timedelta(0)
    on_exception: ExceptionPolicy = ExceptionPolicy.FATAL
    transactional: bool = False
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @field_validator("wait")
    @classmethod
    def _ensure_non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("wait must not be negative")
        return v


class JourneyType(BaseModel):
    """Immutable, ordered definition of the steps of a journey."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    steps: Tuple[StepSpec, ...]
    cancel_predicates: Tuple[CancelPredicate, ...] = ()
    allow_multiple: bool = False
    max_attempts: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_steps(self) -> "JourneyType":
        if not self.steps:
            raise ValueError(f"Journey type {self.name!r} has no steps")
        names = [s.name for s in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(
                f"Journey type {self.name!r} has duplicate step names: {duplicates}"
            )
        return self

    @classmethod
    def builder(cls, name: str) -> "JourneyTypeBuilder":
        return JourneyTypeBuilder(name)

    @property
    def first_step(self) -> StepSpec:
        return self.steps[0]

    def step_named(self, name: str) -> Optional[StepSpec]:
        return next((s for s in self.steps if s.name == name), None)

    def step_after(self, name: str) -> Optional[StepSpec]:
        """Return the step following ``name`` or ``None`` if it is the last one."""
        for index, step in enumerate(self.steps):
            if step.name == name:
                return self.steps[index + 1] if index + 1 < len(self.steps) else None
        raise KeyError(name)

    async def should_cancel(self, journey: "JourneyRecord") -> bool:
        """Evaluate the cancellation predicates; any truthy result cancels."""
        for predicate in self.cancel_predicates:
            result = predicate(journey)
            if inspect.isawaitable(result):
                result = await result
            if result:
                return True
        return False


class JourneyTypeBuilder:
    """Collects steps in declaration order and builds a :class:`JourneyType`.

    Steps can be added directly or with the decorator form::

        builder = JourneyType.builder("onboarding")

        @builder.step(wait=timedelta(days=1))
        async def send_reminder(ctx):
            ...

        onboarding = builder.build()
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._steps: List[StepSpec] = []
        self._cancel_predicates: List[CancelPredicate] = []
        self._allow_multiple = False
        self._max_attempts: Optional[int] = None

    def step(
        self,
        name: Optional[str] = None,
        body: Optional[StepBody] = None,
        *,
        wait: timedelta = timedelta(0),
        on_exception: ExceptionPolicy | str = ExceptionPolicy.FATAL,
        transactional: bool = False,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Add a step; usable directly, as ``@step`` or as ``@step(...)``.

        The direct form ``step("name", body)`` returns the builder for chaining.
        """
        bare = callable(name) and body is None
        if bare:
            body, name = name, None

        def add(fn: StepBody) -> StepBody:
            step_name = name or getattr(fn, "__name__", None)
            if not step_name or step_name == "<lambda>":
                step_name = f"step_{len(self._steps) + 1}"
            self._steps.append(
                StepSpec(
                    name=step_name,
                    body=fn,
                    wait=wait,
                    on_exception=ExceptionPolicy(on_exception),
                    transactional=transactional,
                    max_attempts=max_attempts,
                )
            )
            return fn

        if body is not None:
            add(body)
            return body if bare else self
        return add

    def cancel_if(self, predicate: CancelPredicate) -> CancelPredicate:
        self._cancel_predicates.append(predicate)
        return predicate

    def allow_multiple(self, value: bool = True) -> "JourneyTypeBuilder":
        self._allow_multiple = value
        return self

    def max_attempts(self, value: int) -> "JourneyTypeBuilder":
        self._max_attempts = value
        return self

    def build(self) -> JourneyType:
        return JourneyType(
            name=self.name,
            steps=tuple(self._steps),
            cancel_predicates=tuple(self._cancel_predicates),
            allow_multiple=self._allow_multiple,
            max_attempts=self._max_attempts,
        )


class StepContext:
    """What a step body gets to see while it runs.

    ``journey`` is a snapshot taken after ``performing`` was committed. It is
    safe to read without the row lock.
    """

    def __init__(
        self,
        journey: "JourneyRecord",
        step: StepSpec,
        transaction: Any = None,
    ) -> None:
        self.journey = journey
        self.step = step
        self.transaction = transaction

    @property
    def journey_id(self) -> str:
        return self.journey.id

    @property
    def hero(self) -> Optional[HeroRef]:
        return self.journey.hero

    @property
    def params(self) -> Mapping[str, Any]:
        return self.journey.params

    @property
    def attempt(self) -> int:
        return self.journey.attempt_count

    def finish(self) -> None:
        raise FinishJourney()

    def skip(self) -> None:
        raise SkipStep()

    def pause(self) -> None:
        raise PauseJourney()

    def cancel(self) -> None:
        raise CancelJourney()

    def reattempt(self, wait: Optional[timedelta] = None) -> None:
        raise ReattemptStep(wait)
