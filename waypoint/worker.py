"""Worker loop delivering scheduled invocations to the transition engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .constants import DEFAULT_STORAGE_RETRY_SECONDS
from .engine import AdvanceResult, JourneyEngine
from .persistence.models import utcnow
from .scheduling import BaseScheduler, Invocation
from .signals import StorageError, UnknownJourneyType

logger = logging.getLogger(__name__)


class JourneyWorker:
    """Consumes due invocations from a scheduler and advances journeys.

    On start the worker re-submits every ready or sleeping journey it finds
    in the repository, so invocations held by an in-process scheduler survive
    a restart. With ``resubmit_interval`` set it keeps re-submitting overdue
    journeys in the background while it runs.
    """

    def __init__(
        self,
        engine: JourneyEngine,
        scheduler: BaseScheduler | None = None,
        storage_retry: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
        resubmit_interval: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._scheduler = scheduler or engine.scheduler
        self._storage_retry = storage_retry or timedelta(
            seconds=DEFAULT_STORAGE_RETRY_SECONDS
        )
        self._clock = clock
        self._resubmit_interval = resubmit_interval

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process invocations until ``lifespan`` seconds have passed (or forever)."""
        restored = await self._engine.resubmit_overdue(include_future=True)
        logger.info(f"Worker starting; restored {restored} pending invocation(s)")

        sweeper = None
        if self._resubmit_interval:
            sweeper = asyncio.create_task(self._sweep(self._resubmit_interval))
        try:
            async for raw_invocation, invocation in self._scheduler.subscribe(
                lifespan=lifespan
            ):
                await self.handle(raw_invocation, invocation)
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self._engine.resubmit_overdue()
            except StorageError as exc:
                logger.warning(f"Could not re-submit overdue journeys: {exc}")

    async def handle(self, raw_invocation: Any, invocation: Invocation) -> Optional[AdvanceResult]:
        """Advance the journey for one invocation; the invocation is always acked."""
        try:
            return await self._engine.perform(invocation)
        except StorageError as exc:
            # Journey state is untouched; hand the same invocation back.
            logger.warning(
                f"Storage error advancing journey {invocation.journey_id}: {exc}; "
                f"retrying after {self._storage_retry}"
            )
        except UnknownJourneyType as exc:
            logger.error(f"Cannot advance journey {invocation.journey_id}: {exc}")
            return None
        except Exception:
            logger.error(
                f"Unexpected error advancing journey {invocation.journey_id} "
                f"at step {invocation.step_name}",
                exc_info=True,
            )
            return None
        finally:
            await self._scheduler.ack(raw_invocation)

        retry = invocation.model_copy(
            update={"not_before": self._clock() + self._storage_retry}
        )
        await self._scheduler.schedule(retry)
        return None
