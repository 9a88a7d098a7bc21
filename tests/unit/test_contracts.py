"""Journey type definition tests."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from waypoint.contracts import (
    ExceptionPolicy,
    HeroRef,
    JourneyState,
    JourneyType,
    StepContext,
    StepSpec,
)
from waypoint.persistence.models import JourneyRecord
from waypoint.signals import (
    CancelJourney,
    FinishJourney,
    PauseJourney,
    ReattemptStep,
    SkipStep,
)


def test_builder_keeps_declaration_order():
    builder = JourneyType.builder("onboarding")

    @builder.step
    def welcome(ctx):
        pass

    @builder.step(wait=timedelta(days=1), on_exception="reattempt", max_attempts=2)
    async def follow_up(ctx):
        pass

    returned = builder.step("survey", lambda ctx: None, transactional=True)
    assert returned is builder
    assert welcome.__name__ == "welcome"
    assert follow_up.__name__ == "follow_up"

    journey_type = builder.build()
    assert [s.name for s in journey_type.steps] == ["welcome", "follow_up", "survey"]
    assert journey_type.first_step.name == "welcome"
    follow = journey_type.step_named("follow_up")
    assert follow.wait == timedelta(days=1)
    assert follow.on_exception is ExceptionPolicy.REATTEMPT
    assert follow.max_attempts == 2
    assert journey_type.step_named("survey").transactional
    assert journey_type.step_named("nope") is None


def test_lambda_steps_get_positional_names():
    builder = JourneyType.builder("anonymous")
    builder.step(body=lambda ctx: None)
    builder.step(body=lambda ctx: None)
    assert [s.name for s in builder.build().steps] == ["step_1", "step_2"]


def test_step_after():
    builder = JourneyType.builder("chain")
    for name in ("a", "b", "c"):
        builder.step(name, lambda ctx: None)
    journey_type = builder.build()

    assert journey_type.step_after("a").name == "b"
    assert journey_type.step_after("c") is None
    with pytest.raises(KeyError):
        journey_type.step_after("z")


def test_journey_type_validation():
    with pytest.raises(ValidationError):
        JourneyType.builder("empty").build()

    builder = JourneyType.builder("dupes")
    builder.step("same", lambda ctx: None)
    builder.step("same", lambda ctx: None)
    with pytest.raises(ValidationError):
        builder.build()

    with pytest.raises(ValidationError):
        StepSpec(name="neg", body=lambda ctx: None, wait=timedelta(seconds=-1))


def test_journey_type_is_immutable():
    builder = JourneyType.builder("frozen")
    builder.step("only", lambda ctx: None)
    journey_type = builder.build()
    with pytest.raises(ValidationError):
        journey_type.name = "thawed"


@pytest.mark.asyncio
async def test_cancel_predicates_any_true_cancels():
    builder = JourneyType.builder("predicates")
    builder.step("only", lambda ctx: None)
    builder.cancel_if(lambda journey: False)

    @builder.cancel_if
    async def vip(journey):
        return journey.params.get("vip", False)

    journey_type = builder.build()
    assert not await journey_type.should_cancel(
        JourneyRecord(journey_type="predicates", params={})
    )
    assert await journey_type.should_cancel(
        JourneyRecord(journey_type="predicates", params={"vip": True})
    )


def test_hero_ref():
    hero = HeroRef.of("user", 7)
    assert hero == HeroRef(kind="user", id="7")
    assert str(hero) == "user:7"


def test_terminal_states():
    assert {s for s in JourneyState if s.is_terminal} == {
        JourneyState.FINISHED,
        JourneyState.CANCELED,
        JourneyState.FAILED,
    }
    assert not JourneyState.PAUSED.has_next_step
    assert JourneyState.SLEEPING.has_next_step


@pytest.mark.parametrize(
    "method,signal",
    [
        ("finish", FinishJourney),
        ("skip", SkipStep),
        ("pause", PauseJourney),
        ("cancel", CancelJourney),
        ("reattempt", ReattemptStep),
    ],
)
def test_context_raises_signals(method, signal):
    step = StepSpec(name="only", body=lambda ctx: None)
    ctx = StepContext(
        JourneyRecord(journey_type="t", hero=HeroRef.of("user", 1), attempt_count=2),
        step,
    )
    assert ctx.attempt == 2
    assert ctx.hero == HeroRef.of("user", 1)
    with pytest.raises(signal):
        getattr(ctx, method)()


def test_reattempt_carries_wait():
    ctx = StepContext(JourneyRecord(journey_type="t"), StepSpec(name="s", body=print))
    with pytest.raises(ReattemptStep) as info:
        ctx.reattempt(wait=timedelta(minutes=3))
    assert info.value.wait == timedelta(minutes=3)
