"""Example onboarding journey: welcome mail now, a nudge a day later.

Run the example end to end with the in-memory backends::

    python guides/onboarding_journey.py

Or declare the journey type in your own module and run a worker against a
real database::

    WAYPOINT_DATABASE_URL=sqlite:///journeys.db waypoint worker run -m myapp.journeys
"""

import asyncio
from datetime import timedelta

from waypoint import ExceptionPolicy, HeroRef, JourneyEngine, JourneyType
from waypoint.testing import speedrun_journey

onboarding = JourneyType.builder("onboarding")


@onboarding.cancel_if
def unsubscribed(journey):
    return journey.params.get("unsubscribed", False)


@onboarding.step(on_exception=ExceptionPolicy.REATTEMPT)
async def send_welcome(ctx):
    print(f"📧 Welcome mail to {ctx.hero} on the {ctx.params['plan']} plan")


@onboarding.step(wait=timedelta(days=1))
async def send_nudge(ctx):
    if ctx.params.get("activated"):
        ctx.skip()
    print(f"👋 Nudging {ctx.hero} to finish setup")


@onboarding.step(wait=timedelta(days=6))
async def ask_for_feedback(ctx):
    print(f"📝 Asking {ctx.hero} for feedback")


ONBOARDING = onboarding.build()


async def main():
    engine = JourneyEngine()

    journey = await engine.create_journey(
        ONBOARDING, hero=HeroRef.of("user", 42), params={"plan": "premium"}
    )
    print(f"✅ Journey created: {journey.id}")

    # Skip the waits instead of running a worker for a week
    journey = await speedrun_journey(engine, journey.id)
    print(f"🏁 Journey is {journey.state.value}")

    for transition in await engine.repository.list_transitions(journey.id):
        print(f"  {transition.step_name}: {transition.outcome}")


if __name__ == "__main__":
    asyncio.run(main())
