"""Transition engine: runs journey steps under the lock and token protocol."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel

from .config import WaypointConfig, load_config
from .contracts import HeroRef, JourneyState, JourneyType, StepContext, StepSpec
from .outcome import (
    OutcomeKind,
    StepOutcome,
    Transition,
    end_journey,
    interpret,
    pause_journey,
    schedule_step,
)
from .persistence import JourneyRepository, get_repository
from .persistence.models import JourneyRecord, TransitionRecord, utcnow
from .registry import REGISTRY, JourneyTypeRegistry
from .scheduling import BaseScheduler, Invocation, get_scheduler
from .signals import InvalidTransition, JourneyNotFound, StepSignal

logger = logging.getLogger(__name__)


class AdvanceStatus(str, Enum):
    PERFORMED = "performed"
    CANCELED = "canceled"
    STALE = "stale"
    IGNORED = "ignored"
    DEFERRED = "deferred"


class AdvanceResult(BaseModel):
    """What a single ``advance`` call did."""

    status: AdvanceStatus
    journey_id: str
    step_name: Optional[str] = None
    state: Optional[JourneyState] = None
    outcome: Optional[str] = None

    @property
    def performed(self) -> bool:
        return self.status is AdvanceStatus.PERFORMED


class JourneyEngine:
    """Creates journeys and advances them one step per invocation.

    Every mutation happens under the journey's row lock. A step body runs
    unlocked, between two short locked sections: the first moves the journey
    to ``performing`` and invalidates its token, the second persists the
    outcome and mints the token for the next invocation, if any.
    """

    def __init__(
        self,
        repository: JourneyRepository | None = None,
        scheduler: BaseScheduler | None = None,
        registry: JourneyTypeRegistry | None = None,
        config: WaypointConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository(config=self._config)
        self._scheduler = scheduler or get_scheduler(config=self._config)
        self._registry = registry if registry is not None else REGISTRY
        self._clock = clock

    @property
    def repository(self) -> JourneyRepository:
        return self._repository

    @property
    def scheduler(self) -> BaseScheduler:
        return self._scheduler

    def _journey_type(self, journey_type: JourneyType | str) -> JourneyType:
        if isinstance(journey_type, JourneyType):
            if journey_type.name not in self._registry:
                self._registry.register(journey_type)
            return journey_type
        return self._registry.get(journey_type)

    async def _submit(self, journey: JourneyRecord) -> bool:
        invocation = Invocation(
            journey_id=journey.id,
            step_name=journey.next_step_name,
            token=journey.idempotency_token,
            not_before=journey.scheduled_at,
        )
        accepted = await self._scheduler.schedule(invocation)
        logger.debug(
            f"Scheduled {invocation.step_name} of journey {journey.id} "
            f"at {invocation.not_before.isoformat()} (accepted={accepted})"
        )
        return accepted

    # ------------------------------------------------------------------
    # Creation
    async def create_journey(
        self,
        journey_type: JourneyType | str,
        hero: Optional[HeroRef] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> JourneyRecord:
        """Insert a new journey and schedule its first step.

        Raises:
            JourneyAlreadyExists: the hero already has an active journey of
                this type and the type does not allow multiple.
        """
        definition = self._journey_type(journey_type)
        now = self._clock()
        journey = schedule_step(
            JourneyRecord(
                journey_type=definition.name,
                hero=hero,
                allow_multiple=definition.allow_multiple,
                params=dict(params or {}),
                created_at=now,
                updated_at=now,
            ),
            definition.first_step,
            now,
        )
        await self._repository.create_journey(
            journey,
            TransitionRecord(
                journey_id=journey.id,
                step_name=journey.next_step_name,
                to_state=journey.state,
                outcome="created",
                created_at=now,
            ),
        )
        logger.info(
            f"Created {definition.name} journey {journey.id}"
            + (f" for {hero}" if hero else "")
        )
        await self._submit(journey)
        return journey

    # ------------------------------------------------------------------
    # Advancing
    async def perform(self, invocation: Invocation) -> AdvanceResult:
        """Handle an invocation delivered by the scheduler."""
        return await self.advance(
            invocation.journey_id, invocation.token, step_name=invocation.step_name
        )

    async def advance(
        self, journey_id: str, token: str, step_name: Optional[str] = None
    ) -> AdvanceResult:
        """Run the journey's next step if ``token`` is the current one.

        A missing journey, a consumed token, or a terminal journey make this a
        no-op without side effects.
        """
        deferred: Optional[Transition] = None
        async with self._repository.lock(journey_id) as locked:
            journey = locked.journey
            if journey is None:
                logger.info(f"Dropping invocation for unknown journey {journey_id}")
                return AdvanceResult(status=AdvanceStatus.STALE, journey_id=journey_id)
            if journey.is_terminal:
                logger.warning(
                    f"Ignoring invocation for journey {journey_id} in terminal state "
                    f"{journey.state.value}"
                )
                return self._result(AdvanceStatus.IGNORED, journey)
            if journey.idempotency_token is None or token != journey.idempotency_token:
                logger.info(f"Dropping stale invocation for journey {journey_id}")
                return self._result(AdvanceStatus.STALE, journey)
            if step_name is not None and step_name != journey.next_step_name:
                logger.info(
                    f"Dropping invocation of {step_name} for journey {journey_id}; "
                    f"next step is {journey.next_step_name}"
                )
                return self._result(AdvanceStatus.STALE, journey)
            if journey.state not in (JourneyState.READY, JourneyState.SLEEPING):
                logger.warning(
                    f"Ignoring invocation for journey {journey_id} in state "
                    f"{journey.state.value}"
                )
                return self._result(AdvanceStatus.IGNORED, journey)

            definition = self._registry.get(journey.journey_type)
            now = self._clock()
            step = definition.step_named(journey.next_step_name)
            if step is None:
                error = f"Step {journey.next_step_name!r} is not defined on {definition.name}"
                logger.error(f"Failing journey {journey_id}: {error}")
                failed = end_journey(journey, JourneyState.FAILED, now, error)
                locked.save(failed, self._history(journey, failed, "failed", error))
                return self._result(AdvanceStatus.IGNORED, failed, "failed")

            try:
                cancel = await definition.should_cancel(journey)
            except Exception as exc:
                # Counts as an attempt of the step, so the usual bound applies.
                logger.error(
                    f"Cancellation condition of journey {journey_id} raised; "
                    f"deferring step {step.name}",
                    exc_info=True,
                )
                deferred = interpret(
                    journey,
                    definition,
                    step,
                    StepOutcome(OutcomeKind.REATTEMPT, error=exc),
                    self._config.retry,
                    now,
                )
                locked.save(deferred.journey, deferred.record)
            else:
                if cancel:
                    canceled = end_journey(journey, JourneyState.CANCELED, now)
                    locked.save(canceled, self._history(journey, canceled, "canceled"))
                    logger.info(
                        f"Canceled journey {journey_id} before step {step.name}: "
                        "cancellation condition met"
                    )
                    return self._result(AdvanceStatus.CANCELED, canceled, "canceled")

                performing = journey.model_copy(
                    update={
                        "state": JourneyState.PERFORMING,
                        "idempotency_token": None,
                        "updated_at": now,
                    }
                )
                locked.save(performing, self._history(journey, performing, "performing"))

        if deferred is not None:
            if deferred.needs_invocation:
                await self._submit(deferred.journey)
            return self._result(
                AdvanceStatus.DEFERRED, deferred.journey, deferred.record.outcome
            )

        logger.info(f"Performing step {step.name} of journey {journey_id}")
        outcome = await self._run_step(step, performing)

        async with self._repository.lock(journey_id) as locked:
            current = locked.journey
            if (
                current is None
                or current.state is not JourneyState.PERFORMING
                or current.updated_at != performing.updated_at
            ):
                logger.warning(
                    f"Journey {journey_id} changed while step {step.name} was running; "
                    "discarding its outcome"
                )
                return AdvanceResult(
                    status=AdvanceStatus.IGNORED,
                    journey_id=journey_id,
                    step_name=step.name,
                    state=current.state if current else None,
                )
            transition = interpret(
                current, definition, step, outcome, self._config.retry, self._clock()
            )
            locked.save(transition.journey, transition.record)

        self._log_outcome(transition.journey, step, outcome, transition.record.outcome)
        if transition.needs_invocation:
            await self._submit(transition.journey)
        return AdvanceResult(
            status=AdvanceStatus.PERFORMED,
            journey_id=journey_id,
            step_name=step.name,
            state=transition.journey.state,
            outcome=transition.record.outcome,
        )

    async def _run_step(self, step: StepSpec, journey: JourneyRecord) -> StepOutcome:
        try:
            if step.transactional:
                async with self._repository.transaction() as tx:
                    return await self._call_body(step, StepContext(journey, step, tx))
            return await self._call_body(step, StepContext(journey, step))
        except Exception as exc:
            return StepOutcome.from_exception(exc)

    @staticmethod
    async def _call_body(step: StepSpec, ctx: StepContext) -> StepOutcome:
        """Run the body; signals become outcomes, faults propagate."""
        try:
            if inspect.iscoroutinefunction(step.body):
                await step.body(ctx)
            else:
                result = await asyncio.to_thread(step.body, ctx)
                if inspect.isawaitable(result):
                    await result
        except StepSignal as signal:
            return StepOutcome.from_exception(signal)
        return StepOutcome.returned()

    def _log_outcome(
        self, journey: JourneyRecord, step: StepSpec, outcome: StepOutcome, label: str
    ) -> None:
        if outcome.kind is OutcomeKind.FAULT:
            exc = outcome.error
            if journey.state is JourneyState.FAILED:
                logger.error(
                    f"Step {step.name} of journey {journey.id} failed; journey failed",
                    exc_info=(type(exc), exc, exc.__traceback__),
                )
            else:
                logger.warning(
                    f"Step {step.name} of journey {journey.id} raised {exc!r}; "
                    f"{label} per {step.on_exception.value} policy"
                )
        elif journey.state is JourneyState.FAILED:
            logger.error(f"Journey {journey.id} failed at step {step.name}: {journey.last_error}")
        else:
            logger.info(
                f"Step {step.name} of journey {journey.id} {label}; "
                f"journey is {journey.state.value}"
                + (f", next {journey.next_step_name}" if journey.next_step_name else "")
            )

    @staticmethod
    def _history(
        before: JourneyRecord,
        after: JourneyRecord,
        outcome: str,
        error: Optional[str] = None,
    ) -> TransitionRecord:
        return TransitionRecord(
            journey_id=before.id,
            step_name=before.next_step_name or before.paused_step_name,
            from_state=before.state,
            to_state=after.state,
            outcome=outcome,
            attempt=before.attempt_count,
            error=error,
            created_at=after.updated_at,
        )

    @staticmethod
    def _result(
        status: AdvanceStatus, journey: JourneyRecord, outcome: Optional[str] = None
    ) -> AdvanceResult:
        return AdvanceResult(
            status=status,
            journey_id=journey.id,
            step_name=journey.next_step_name,
            state=journey.state,
            outcome=outcome,
        )

    # ------------------------------------------------------------------
    # Operator actions
    async def pause(self, journey_id: str) -> JourneyRecord:
        """Pause a ready or sleeping journey; pausing a paused one is a no-op."""
        async with self._repository.lock(journey_id) as locked:
            journey = self._require(locked.journey, journey_id)
            if journey.state is JourneyState.PAUSED:
                return journey
            if journey.state not in (JourneyState.READY, JourneyState.SLEEPING):
                raise InvalidTransition(
                    f"Cannot pause journey {journey_id} in state {journey.state.value}"
                )
            paused = pause_journey(journey, journey.next_step_name, self._clock())
            locked.save(paused, self._history(journey, paused, "paused"))
        logger.info(f"Paused journey {journey_id} at step {paused.paused_step_name}")
        return paused

    async def resume(self, journey_id: str) -> JourneyRecord:
        """Resume a paused journey at the step it was paused on."""
        async with self._repository.lock(journey_id) as locked:
            journey = self._require(locked.journey, journey_id)
            if journey.state is not JourneyState.PAUSED:
                raise InvalidTransition(
                    f"Cannot resume journey {journey_id} in state {journey.state.value}"
                )
            definition = self._registry.get(journey.journey_type)
            step = definition.step_named(journey.paused_step_name or "")
            if step is None:
                raise InvalidTransition(
                    f"Journey {journey_id} is paused at unknown step "
                    f"{journey.paused_step_name!r}"
                )
            now = self._clock()
            if journey.scheduled_at is not None and journey.scheduled_at > now:
                resumed = schedule_step(
                    journey,
                    step,
                    now,
                    wait=journey.scheduled_at - now,
                    state=JourneyState.SLEEPING,
                    attempt_count=journey.attempt_count,
                )
            else:
                resumed = schedule_step(
                    journey,
                    step,
                    now,
                    wait=timedelta(0),
                    state=JourneyState.READY,
                    attempt_count=journey.attempt_count,
                )
            locked.save(resumed, self._history(journey, resumed, "resumed"))
        logger.info(f"Resumed journey {journey_id} at step {step.name}")
        await self._submit(resumed)
        return resumed

    async def cancel(self, journey_id: str) -> JourneyRecord:
        """Cancel a journey between steps. A running step is never interrupted."""
        async with self._repository.lock(journey_id) as locked:
            journey = self._require(locked.journey, journey_id)
            if journey.state is JourneyState.CANCELED:
                return journey
            if journey.is_terminal or journey.state is JourneyState.PERFORMING:
                raise InvalidTransition(
                    f"Cannot cancel journey {journey_id} in state {journey.state.value}"
                )
            canceled = end_journey(journey, JourneyState.CANCELED, self._clock())
            locked.save(canceled, self._history(journey, canceled, "canceled"))
        logger.info(f"Canceled journey {journey_id}")
        return canceled

    @staticmethod
    def _require(journey: Optional[JourneyRecord], journey_id: str) -> JourneyRecord:
        if journey is None:
            raise JourneyNotFound(f"Journey {journey_id} not found")
        return journey

    # ------------------------------------------------------------------
    # Maintenance
    async def recover_stuck(
        self, older_than: Optional[timedelta] = None, cancel: bool = False
    ) -> list[JourneyRecord]:
        """Rescue journeys left in ``performing`` by a crashed worker.

        Each stuck step is either reattempted (counting as an attempt, so the
        usual bound applies) or the journey is canceled.
        """
        if older_than is None:
            older_than = timedelta(seconds=self._config.stuck_after_seconds)
        cutoff = self._clock() - older_than
        recovered: list[JourneyRecord] = []
        for stuck in await self._repository.find_stuck(cutoff):
            async with self._repository.lock(stuck.id) as locked:
                journey = locked.journey
                if (
                    journey is None
                    or journey.state is not JourneyState.PERFORMING
                    or journey.updated_at != stuck.updated_at
                ):
                    continue
                now = self._clock()
                definition = self._registry.get(journey.journey_type)
                step = definition.step_named(journey.next_step_name)
                if cancel or step is None:
                    updated = end_journey(journey, JourneyState.CANCELED, now)
                    record = self._history(journey, updated, "recovered")
                else:
                    transition = interpret(
                        journey,
                        definition,
                        step,
                        StepOutcome(OutcomeKind.REATTEMPT, wait=timedelta(0)),
                        self._config.retry,
                        now,
                    )
                    updated = transition.journey
                    record = transition.record.model_copy(update={"outcome": "recovered"})
                locked.save(updated, record)
            logger.warning(
                f"Recovered journey {updated.id} stuck in performing since "
                f"{stuck.updated_at.isoformat()}; now {updated.state.value}"
            )
            if updated.idempotency_token is not None:
                await self._submit(updated)
            recovered.append(updated)
        return recovered

    async def resubmit_overdue(
        self, grace: timedelta = timedelta(0), include_future: bool = False
    ) -> int:
        """Re-submit invocations for journeys whose scheduled time has passed.

        Covers a scheduler that lost an invocation after the transition was
        committed, or an in-process queue that died with its worker. With
        ``include_future`` every ready or sleeping journey is submitted,
        whenever it is due. Returns how many submissions the scheduler
        accepted; triples that are still live are deduplicated.
        """
        cutoff = self._clock() - grace
        count = 0
        for state in (JourneyState.READY, JourneyState.SLEEPING):
            for journey in await self._repository.list_journeys(state=state):
                if journey.idempotency_token is None or journey.scheduled_at is None:
                    continue
                if not include_future and journey.scheduled_at > cutoff:
                    continue
                if await self._submit(journey):
                    count += 1
        if count:
            logger.info(f"Resubmitted {count} journey invocation(s)")
        return count
