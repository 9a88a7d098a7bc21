"""Transition engine behaviour: scheduling, tokens, signals and faults."""

import asyncio
import sqlite3
from datetime import timedelta

import pytest

from waypoint import (
    AdvanceStatus,
    ExceptionPolicy,
    HeroRef,
    JourneyAlreadyExists,
    JourneyEngine,
    JourneyState,
    JourneyType,
)
from waypoint.persistence import SQLiteJourneyRepository
from waypoint.signals import InvalidTransition, JourneyNotFound
from waypoint.testing import run_due, speedrun_journey

HERO = HeroRef.of("user", 42)


def two_step_type(calls, name="welcome"):
    builder = JourneyType.builder(name)

    @builder.step
    def step_a(ctx):
        calls.append("a")

    @builder.step(wait=timedelta(minutes=5))
    def step_b(ctx):
        calls.append("b")

    return builder.build()


async def assert_state_invariants(repository, journey_id):
    journey = await repository.get_journey(journey_id)
    assert journey.state in set(JourneyState)
    assert (journey.next_step_name is not None) == journey.state.has_next_step
    if journey.is_terminal:
        assert journey.idempotency_token is None
    return journey


@pytest.mark.asyncio
async def test_create_schedules_first_step_immediately(engine, scheduler, clock):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)

    assert journey.state is JourneyState.READY
    assert journey.next_step_name == "step_a"
    assert journey.scheduled_at == clock.now
    [invocation] = scheduler.pending()
    assert invocation.journey_id == journey.id
    assert invocation.step_name == "step_a"
    assert invocation.token == journey.idempotency_token
    assert invocation.not_before == clock.now


@pytest.mark.asyncio
async def test_first_step_with_wait_starts_sleeping(engine, scheduler, clock):
    builder = JourneyType.builder("delayed")
    builder.step("later", lambda ctx: None, wait=timedelta(hours=1))
    journey = await engine.create_journey(builder.build())

    assert journey.state is JourneyState.SLEEPING
    assert scheduler.pending()[0].not_before == clock.now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_normal_return_moves_to_next_step_after_its_wait(
    engine, repository, scheduler, clock
):
    calls = []
    journey = await engine.create_journey(two_step_type(calls), hero=HERO)

    result = await engine.advance(journey.id, journey.idempotency_token)

    assert result.status is AdvanceStatus.PERFORMED
    assert calls == ["a"]
    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.SLEEPING
    assert stored.next_step_name == "step_b"
    assert stored.scheduled_at == clock.now + timedelta(minutes=5)
    assert stored.idempotency_token not in (None, journey.idempotency_token)
    assert [i.step_name for i in scheduler.pending()] == ["step_a", "step_b"]


@pytest.mark.asyncio
async def test_journey_finishes_after_last_step(engine, repository, scheduler, clock):
    calls = []
    journey = await engine.create_journey(two_step_type(calls), hero=HERO)

    assert [r.status for r in await run_due(engine, scheduler)] == [
        AdvanceStatus.PERFORMED
    ]
    assert await run_due(engine, scheduler) == []

    clock.advance(minutes=5)
    await run_due(engine, scheduler)

    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.FINISHED
    assert calls == ["a", "b"]
    assert scheduler.pending() == []
    outcomes = [t.outcome for t in await repository.list_transitions(journey.id)]
    assert outcomes == ["created", "performing", "proceeded", "performing", "finished"]


@pytest.mark.asyncio
async def test_redelivered_token_is_a_no_op(engine, repository):
    calls = []
    journey = await engine.create_journey(two_step_type(calls), hero=HERO)
    token = journey.idempotency_token

    await engine.advance(journey.id, token)
    before = await repository.get_journey(journey.id)
    again = await engine.advance(journey.id, token)
    after = await repository.get_journey(journey.id)

    assert again.status is AdvanceStatus.STALE
    assert calls == ["a"]
    assert after.state == before.state
    assert after.next_step_name == before.next_step_name
    assert after.idempotency_token == before.idempotency_token


@pytest.mark.asyncio
async def test_unknown_journey_is_stale(engine):
    result = await engine.advance("missing", "token")
    assert result.status is AdvanceStatus.STALE


@pytest.mark.asyncio
async def test_invocation_for_other_step_is_stale(engine):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    result = await engine.advance(
        journey.id, journey.idempotency_token, step_name="step_b"
    )
    assert result.status is AdvanceStatus.STALE


@pytest.mark.asyncio
async def test_concurrent_deliveries_run_the_step_once(engine, repository):
    calls = []
    builder = JourneyType.builder("racy")

    @builder.step
    async def slow(ctx):
        calls.append(ctx.journey_id)
        await asyncio.sleep(0.05)

    journey = await engine.create_journey(builder.build(), hero=HERO)
    token = journey.idempotency_token

    results = await asyncio.gather(
        engine.advance(journey.id, token), engine.advance(journey.id, token)
    )

    assert sorted(r.status.value for r in results) == ["performed", "stale"]
    assert len(calls) == 1
    stored = await repository.get_journey(journey.id)
    assert stored.state is JourneyState.FINISHED


@pytest.mark.asyncio
async def test_reattempt_signal_keeps_step_and_counts_once(
    engine, repository, scheduler, clock
):
    builder = JourneyType.builder("poller")

    @builder.step(max_attempts=10)
    def poll(ctx):
        ctx.reattempt(wait=timedelta(minutes=1))

    journey = await engine.create_journey(builder.build(), hero=HERO)

    await engine.advance(journey.id, journey.idempotency_token)
    first = await repository.get_journey(journey.id)
    assert first.state is JourneyState.SLEEPING
    assert first.next_step_name == "poll"
    assert first.attempt_count == 1
    assert first.scheduled_at == clock.now + timedelta(minutes=1)

    await engine.advance(journey.id, first.idempotency_token)
    second = await repository.get_journey(journey.id)
    assert second.attempt_count == 2
    assert second.next_step_name == "poll"


@pytest.mark.asyncio
async def test_fault_under_reattempt_policy_retries_with_backoff(
    engine, repository, scheduler, clock
):
    failures = {"left": 1}
    builder = JourneyType.builder("flaky")
    builder.step("step_a", lambda ctx: None)

    @builder.step(wait=timedelta(minutes=5), on_exception=ExceptionPolicy.REATTEMPT)
    def step_b(ctx):
        if failures["left"]:
            failures["left"] -= 1
            raise RuntimeError("mail server down")

    journey = await engine.create_journey(builder.build(), hero=HERO)
    await run_due(engine, scheduler)
    clock.advance(minutes=5)
    [result] = await run_due(engine, scheduler)

    assert result.outcome == "reattempt"
    stored = await repository.get_journey(journey.id)
    assert stored.state is JourneyState.SLEEPING
    assert stored.next_step_name == "step_b"
    assert stored.attempt_count == 1
    # base 10s, first retry
    assert stored.scheduled_at == clock.now + timedelta(seconds=10)
    assert "mail server down" in stored.last_error

    clock.advance(seconds=10)
    await run_due(engine, scheduler)
    stored = await repository.get_journey(journey.id)
    assert stored.state is JourneyState.FINISHED


@pytest.mark.asyncio
async def test_reattempts_are_bounded_then_fail(engine, repository):
    calls = []
    builder = JourneyType.builder("doomed")

    @builder.step(on_exception="reattempt")
    def always_fails(ctx):
        calls.append(ctx.attempt)
        raise ValueError("nope")

    journey = await engine.create_journey(builder.build(), hero=HERO)
    stored = await speedrun_journey(engine, journey.id)

    assert calls == [0, 1, 2]
    assert stored.state is JourneyState.FAILED
    assert stored.idempotency_token is None
    assert "ValueError: nope" in stored.last_error


@pytest.mark.asyncio
async def test_fatal_fault_fails_journey(engine, repository, scheduler):
    builder = JourneyType.builder("fragile")

    @builder.step
    def explode(ctx):
        raise KeyError("missing")

    builder.step("never", lambda ctx: pytest.fail("must not run"))
    journey = await engine.create_journey(builder.build(), hero=HERO)
    await run_due(engine, scheduler)

    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.FAILED
    assert scheduler.pending() == []


@pytest.mark.asyncio
async def test_cancel_signal_is_terminal(engine, repository, scheduler):
    calls = []
    builder = JourneyType.builder("cancelable")

    @builder.step
    def check(ctx):
        calls.append("check")
        ctx.cancel()

    builder.step("after", lambda ctx: calls.append("after"))
    journey = await engine.create_journey(builder.build(), hero=HERO)

    await engine.advance(journey.id, journey.idempotency_token)
    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.CANCELED
    # only the original, already consumed invocation remains
    assert [i.token for i in scheduler.pending()] == [journey.idempotency_token]

    resubmitted = await engine.advance(journey.id, journey.idempotency_token)
    assert resubmitted.status is AdvanceStatus.IGNORED
    assert calls == ["check"]


@pytest.mark.asyncio
async def test_cancel_predicate_stops_before_next_step(engine, repository, scheduler):
    flags = {"unsubscribed": False}
    calls = []
    builder = JourneyType.builder("newsletter")
    builder.cancel_if(lambda journey: flags["unsubscribed"])
    builder.step("first", lambda ctx: calls.append("first"))
    builder.step("second", lambda ctx: calls.append("second"))
    journey = await engine.create_journey(builder.build(), hero=HERO)

    await run_due(engine, scheduler)
    flags["unsubscribed"] = True
    [result] = await run_due(engine, scheduler)

    assert result.status is AdvanceStatus.CANCELED
    assert calls == ["first"]
    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.CANCELED


@pytest.mark.asyncio
async def test_async_cancel_predicate(engine, repository):
    builder = JourneyType.builder("async-cancel")

    @builder.cancel_if
    async def hero_deleted(journey):
        return journey.hero.id == "42"

    builder.step("never", lambda ctx: pytest.fail("must not run"))
    journey = await engine.create_journey(builder.build(), hero=HERO)

    result = await engine.advance(journey.id, journey.idempotency_token)
    assert result.status is AdvanceStatus.CANCELED


@pytest.mark.asyncio
async def test_skip_and_finish_signals(engine, repository):
    calls = []
    builder = JourneyType.builder("shortcut")

    @builder.step
    def maybe(ctx):
        calls.append("maybe")
        ctx.skip()

    @builder.step
    def done(ctx):
        calls.append("done")
        ctx.finish()

    builder.step("unreached", lambda ctx: calls.append("unreached"))
    journey = await engine.create_journey(builder.build(), hero=HERO)
    stored = await speedrun_journey(engine, journey.id)

    assert calls == ["maybe", "done"]
    assert stored.state is JourneyState.FINISHED
    outcomes = [t.outcome for t in await repository.list_transitions(journey.id)]
    assert "skipped" in outcomes
    assert outcomes[-1] == "finished"


@pytest.mark.asyncio
async def test_pause_signal_waits_for_resume(engine, repository, scheduler):
    paused_once = {"done": False}
    calls = []
    builder = JourneyType.builder("approval")

    @builder.step
    def wait_for_approval(ctx):
        calls.append("wait")
        if not paused_once["done"]:
            paused_once["done"] = True
            ctx.pause()

    journey = await engine.create_journey(builder.build(), hero=HERO)
    await run_due(engine, scheduler)

    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.PAUSED
    assert stored.next_step_name is None
    assert stored.paused_step_name == "wait_for_approval"
    assert scheduler.pending() == []

    resumed = await engine.resume(journey.id)
    assert resumed.state is JourneyState.READY
    assert resumed.next_step_name == "wait_for_approval"
    await run_due(engine, scheduler)

    stored = await repository.get_journey(journey.id)
    assert stored.state is JourneyState.FINISHED
    assert calls == ["wait", "wait"]


@pytest.mark.asyncio
async def test_exception_policies_pause_and_skip(engine, repository):
    builder = JourneyType.builder("policies")

    @builder.step(on_exception=ExceptionPolicy.SKIP)
    def optional(ctx):
        raise RuntimeError("ignored")

    @builder.step(on_exception=ExceptionPolicy.PAUSE)
    def needs_human(ctx):
        raise RuntimeError("look at me")

    journey = await engine.create_journey(builder.build(), hero=HERO)
    stored = await speedrun_journey(engine, journey.id)

    assert stored.state is JourneyState.PAUSED
    assert stored.paused_step_name == "needs_human"
    assert "look at me" in stored.last_error


@pytest.mark.asyncio
async def test_operator_pause_keeps_schedule_on_resume(engine, repository, clock):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    await engine.advance(journey.id, journey.idempotency_token)

    paused = await engine.pause(journey.id)
    assert paused.state is JourneyState.PAUSED
    assert (await engine.pause(journey.id)).state is JourneyState.PAUSED

    clock.advance(minutes=1)
    resumed = await engine.resume(journey.id)
    assert resumed.state is JourneyState.SLEEPING
    assert resumed.next_step_name == "step_b"
    assert resumed.scheduled_at == clock.now + timedelta(minutes=4)

    with pytest.raises(InvalidTransition):
        await engine.resume(journey.id)


@pytest.mark.asyncio
async def test_operator_cancel(engine, repository):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)

    canceled = await engine.cancel(journey.id)
    assert canceled.state is JourneyState.CANCELED
    assert (await engine.cancel(journey.id)).state is JourneyState.CANCELED
    with pytest.raises(InvalidTransition):
        await engine.pause(journey.id)
    with pytest.raises(JourneyNotFound):
        await engine.cancel("missing")

    result = await engine.advance(journey.id, journey.idempotency_token)
    assert result.status is AdvanceStatus.IGNORED


@pytest.mark.asyncio
async def test_one_active_journey_per_hero(engine, repository):
    journey_type = two_step_type([])
    first = await engine.create_journey(journey_type, hero=HERO)

    with pytest.raises(JourneyAlreadyExists):
        await engine.create_journey(journey_type, hero=HERO)

    other = await engine.create_journey(journey_type, hero=HeroRef.of("user", 7))
    assert other.id != first.id

    await engine.cancel(first.id)
    again = await engine.create_journey(journey_type, hero=HERO)
    assert (await repository.find_active_for_hero(HERO)).id == again.id


@pytest.mark.asyncio
async def test_allow_multiple(engine, repository):
    builder = JourneyType.builder("reminders").allow_multiple()
    builder.step("remind", lambda ctx: None)
    journey_type = builder.build()

    await engine.create_journey(journey_type, hero=HERO)
    await engine.create_journey(journey_type, hero=HERO)

    assert len(await repository.list_journeys(hero=HERO)) == 2


@pytest.mark.asyncio
async def test_step_sees_params_and_hero(engine):
    seen = {}
    builder = JourneyType.builder("params")

    @builder.step
    async def read(ctx):
        seen["hero"] = ctx.hero
        seen["plan"] = ctx.params["plan"]
        seen["state"] = ctx.journey.state

    journey = await engine.create_journey(builder.build(), hero=HERO, params={"plan": "pro"})
    await engine.advance(journey.id, journey.idempotency_token)

    assert seen == {"hero": HERO, "plan": "pro", "state": JourneyState.PERFORMING}


@pytest.mark.asyncio
async def test_recover_stuck_journey_reattempts_step(engine, repository, scheduler, clock):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    async with repository.lock(journey.id) as locked:
        locked.save(
            locked.journey.model_copy(
                update={
                    "state": JourneyState.PERFORMING,
                    "idempotency_token": None,
                    "updated_at": clock.now,
                }
            )
        )

    assert await engine.recover_stuck(timedelta(minutes=15)) == []
    clock.advance(minutes=20)
    [recovered] = await engine.recover_stuck(timedelta(minutes=15))

    assert recovered.state is JourneyState.SLEEPING
    assert recovered.next_step_name == "step_a"
    assert recovered.attempt_count == 1
    assert scheduler.pending()[-1].token == recovered.idempotency_token
    outcomes = [t.outcome for t in await repository.list_transitions(journey.id)]
    assert outcomes[-1] == "recovered"


@pytest.mark.asyncio
async def test_recover_stuck_journey_can_cancel(engine, repository, clock):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    async with repository.lock(journey.id) as locked:
        locked.save(
            locked.journey.model_copy(
                update={"state": JourneyState.PERFORMING, "idempotency_token": None}
            )
        )
    clock.advance(hours=1)

    [recovered] = await engine.recover_stuck(timedelta(minutes=15), cancel=True)
    assert recovered.state is JourneyState.CANCELED


@pytest.mark.asyncio
async def test_resubmit_overdue_after_lost_invocation(engine, scheduler, clock):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    lost = await scheduler.claim_due()
    await scheduler.ack(lost[0].key)
    assert scheduler.pending() == []

    clock.advance(minutes=2)
    assert await engine.resubmit_overdue(timedelta(minutes=1)) == 1
    [invocation] = scheduler.pending()
    assert invocation.token == journey.idempotency_token
    # still pending, so a second pass is deduplicated and not counted
    assert await engine.resubmit_overdue(timedelta(minutes=1)) == 0
    assert len(scheduler.pending()) == 1


@pytest.mark.asyncio
async def test_transactional_step_rolls_back_on_fault(
    tmp_path, scheduler, registry, config, clock
):
    db_path = tmp_path / "app.db"
    repository = SQLiteJourneyRepository(db_path)
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE notes (journey_id TEXT, body TEXT)")

    engine = JourneyEngine(
        repository=repository,
        scheduler=scheduler,
        registry=registry,
        config=config,
        clock=clock,
    )
    builder = JourneyType.builder("note-taker")

    @builder.step(transactional=True, on_exception=ExceptionPolicy.REATTEMPT)
    def write_note(ctx):
        ctx.transaction.execute(
            "INSERT INTO notes VALUES (?, ?)", (ctx.journey_id, "hello")
        )
        if ctx.attempt == 0:
            raise RuntimeError("after the insert")

    journey = await engine.create_journey(builder.build(), hero=HERO)
    stored = await speedrun_journey(engine, journey.id)

    assert stored.state is JourneyState.FINISHED
    with sqlite3.connect(db_path) as conn:
        rows = conn.execute("SELECT journey_id FROM notes").fetchall()
    assert rows == [(journey.id,)]


@pytest.mark.asyncio
async def test_raising_cancel_condition_defers_step(
    engine, repository, scheduler, clock
):
    calls = []
    builder = JourneyType.builder("broken-condition")

    @builder.cancel_if
    def lookup_fails(journey):
        raise RuntimeError("crm unavailable")

    builder.step("never", lambda ctx: calls.append("never"))
    journey = await engine.create_journey(builder.build(), hero=HERO)

    result = await engine.advance(journey.id, journey.idempotency_token)

    assert result.status is AdvanceStatus.DEFERRED
    assert result.outcome == "reattempt"
    stored = await assert_state_invariants(repository, journey.id)
    assert stored.state is JourneyState.SLEEPING
    assert stored.next_step_name == "never"
    assert stored.attempt_count == 1
    assert stored.scheduled_at == clock.now + timedelta(seconds=10)
    assert "crm unavailable" in stored.last_error
    assert scheduler.pending()[-1].token == stored.idempotency_token

    stored = await speedrun_journey(engine, journey.id)
    assert stored.state is JourneyState.FAILED
    assert calls == []


@pytest.mark.asyncio
async def test_resubmit_can_include_future_invocations(engine, scheduler):
    journey = await engine.create_journey(two_step_type([]), hero=HERO)
    await engine.advance(journey.id, journey.idempotency_token)
    for invocation in await scheduler.claim_due():
        await scheduler.ack(invocation.key)
    # lose the sleeping step_b invocation too
    scheduler._pending.clear()

    assert await engine.resubmit_overdue() == 0
    assert await engine.resubmit_overdue(include_future=True) == 1
    assert [i.step_name for i in scheduler.pending()] == ["step_b"]
