"""Command line interface for running waypoint workers and inspecting journeys."""

from __future__ import annotations

import asyncio
import importlib
import logging
from datetime import timedelta
from typing import List, Optional

import typer

from waypoint import JourneyEngine, JourneyWorker, get_repository, get_scheduler
from waypoint.config import load_config
from waypoint.contracts import HeroRef, JourneyState
from waypoint.scheduling import InMemoryScheduler
from waypoint.signals import WaypointError

app = typer.Typer(help="CLI for waypoint journeys")

worker_app = typer.Typer(help="Commands for running workers")
journey_app = typer.Typer(help="Commands for inspecting and steering journeys")

app.add_typer(worker_app, name="worker")
app.add_typer(journey_app, name="journey")

MODULE_OPTION = typer.Option(
    [], "--module", "-m", help="Module declaring journey types; may be repeated"
)


@app.callback()
def main() -> None:
    """Waypoint CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _import_modules(modules: List[str]) -> None:
    for name in modules:
        try:
            importlib.import_module(name)
        except ImportError as exc:
            typer.secho(f"Could not import {name}: {exc}", fg=typer.colors.RED)
            raise typer.Exit(code=1)


def _engine() -> JourneyEngine:
    config = load_config()
    return JourneyEngine(
        repository=get_repository(),
        scheduler=get_scheduler(config=config),
        config=config,
    )


@worker_app.command("run")
def worker_run(
    module: List[str] = MODULE_OPTION,
    lifespan: Optional[float] = None,
) -> None:
    """
    Run a worker that performs due journey steps.

    Imports the given modules so their journey types are registered, then
    consumes invocations from the configured scheduler and advances journeys
    in the configured repository.

    Example:
        waypoint worker run -m myapp.journeys
        waypoint worker run -m myapp.journeys --lifespan 300
    """
    _import_modules(module)
    config = load_config()
    engine = _engine()
    worker = JourneyWorker(
        engine,
        storage_retry=timedelta(seconds=config.storage_retry_seconds),
        resubmit_interval=config.resubmit_interval_seconds,
    )
    typer.echo("Starting worker")
    asyncio.run(worker.start(lifespan=lifespan))


@journey_app.command("list")
def journey_list(
    state: Optional[JourneyState] = typer.Option(None, help="Only journeys in this state"),
    journey_type: Optional[str] = typer.Option(None, "--type", help="Only this journey type"),
    hero_kind: Optional[str] = typer.Option(None, help="Hero kind, used with --hero-id"),
    hero_id: Optional[str] = typer.Option(None, help="Hero id, used with --hero-kind"),
) -> None:
    """
    List journeys with their state and next step.

    Example:
        waypoint journey list --state failed
        waypoint journey list --hero-kind user --hero-id 42
    """
    hero = None
    if hero_kind or hero_id:
        if not (hero_kind and hero_id):
            typer.secho("--hero-kind and --hero-id go together", fg=typer.colors.RED)
            raise typer.Exit(code=2)
        hero = HeroRef(kind=hero_kind, id=hero_id)

    repo = get_repository()
    journeys = asyncio.run(
        repo.list_journeys(state=state, journey_type=journey_type, hero=hero)
    )
    if not journeys:
        typer.echo("No journeys found")
        return
    for j in journeys:
        typer.echo(
            f"{j.id}\t{j.journey_type}\t{j.state.value}\t"
            f"{j.next_step_name or j.paused_step_name or '-'}\t{j.hero or '-'}"
        )


@journey_app.command("show")
def journey_show(journey_id: str) -> None:
    """
    Show a journey and its transition history.

    Example:
        waypoint journey show 3f2a...
    """
    repo = get_repository()
    journey = asyncio.run(repo.get_journey(journey_id))
    if journey is None:
        typer.echo("Journey not found")
        raise typer.Exit(code=1)
    typer.echo(f"Journey {journey.id} ({journey.journey_type}): {journey.state.value}")
    if journey.hero:
        typer.echo(f"Hero: {journey.hero}")
    if journey.next_step_name:
        typer.echo(
            f"Next step: {journey.next_step_name} at {journey.scheduled_at} "
            f"(attempt {journey.attempt_count})"
        )
    if journey.paused_step_name:
        typer.echo(f"Paused at: {journey.paused_step_name}")
    if journey.params:
        typer.echo(f"Params: {journey.params}")
    if journey.last_error:
        typer.echo(f"Last error: {journey.last_error}")
    for t in asyncio.run(repo.list_transitions(journey_id)):
        typer.echo(
            f"- {t.created_at} {t.step_name or '-'}: "
            f"{t.from_state.value if t.from_state else '-'} -> {t.to_state.value} "
            f"({t.outcome})" + (f" {t.error}" if t.error else "")
        )


def _operate(action: str, journey_id: str, modules: List[str]) -> None:
    _import_modules(modules)
    engine = _engine()
    try:
        journey = asyncio.run(getattr(engine, action)(journey_id))
    except WaypointError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Journey {journey.id}: {journey.state.value}")


@journey_app.command("pause")
def journey_pause(journey_id: str, module: List[str] = MODULE_OPTION) -> None:
    """Pause a ready or sleeping journey."""
    _operate("pause", journey_id, module)


@journey_app.command("resume")
def journey_resume(journey_id: str, module: List[str] = MODULE_OPTION) -> None:
    """Resume a paused journey and schedule the step it was paused on."""
    _operate("resume", journey_id, module)


@journey_app.command("cancel")
def journey_cancel(journey_id: str, module: List[str] = MODULE_OPTION) -> None:
    """Cancel a journey that is not currently performing a step."""
    _operate("cancel", journey_id, module)


@journey_app.command("recover")
def journey_recover(
    module: List[str] = MODULE_OPTION,
    older_than: Optional[float] = typer.Option(
        None, help="Seconds in performing before a journey counts as stuck"
    ),
    cancel: bool = typer.Option(False, help="Cancel stuck journeys instead of reattempting"),
) -> None:
    """
    Recover journeys left in performing by a crashed worker.

    Example:
        waypoint journey recover -m myapp.journeys --older-than 600
    """
    _import_modules(module)
    engine = _engine()
    recovered = asyncio.run(
        engine.recover_stuck(
            older_than=timedelta(seconds=older_than) if older_than is not None else None,
            cancel=cancel,
        )
    )
    if not recovered:
        typer.echo("No stuck journeys")
        return
    for j in recovered:
        typer.echo(f"{j.id}\t{j.state.value}")


@journey_app.command("resubmit")
def journey_resubmit(
    grace: float = typer.Option(60.0, help="Seconds past their scheduled time"),
) -> None:
    """
    Re-submit invocations for ready or sleeping journeys that are overdue.

    Needs a shared scheduler such as Redis. Workers using the in-memory
    scheduler restore their own queue when they start.

    Example:
        WAYPOINT_SCHEDULER=redis waypoint journey resubmit --grace 300
    """
    engine = _engine()
    if isinstance(engine.scheduler, InMemoryScheduler):
        typer.secho(
            "The in-memory scheduler is private to each process; "
            "configure a shared scheduler to re-submit from the CLI",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    count = asyncio.run(engine.resubmit_overdue(timedelta(seconds=grace)))
    typer.echo(f"Resubmitted {count} invocation(s)")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
