"""In-memory scheduler for tests and single-process use."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, Optional, Set, Tuple

from ..persistence.models import utcnow
from .base import BaseScheduler, Invocation

InvocationKey = Tuple[str, str, str]


class InMemoryScheduler(BaseScheduler[InvocationKey]):
    """Simple in-process delayed queue."""

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = 0.1,
    ) -> None:
        self._pending: Dict[InvocationKey, Invocation] = {}
        self._in_flight: Set[InvocationKey] = set()
        self._lock = asyncio.Lock()
        self._clock = clock
        self.poll_interval = poll_interval

    async def schedule(self, invocation: Invocation) -> bool:
        async with self._lock:
            if invocation.key in self._pending or invocation.key in self._in_flight:
                return False
            self._pending[invocation.key] = invocation
            return True

    def pending(self) -> list[Invocation]:
        """Invocations not yet claimed, earliest first."""
        return sorted(self._pending.values(), key=lambda i: i.not_before)

    async def claim_due(self, now: Optional[datetime] = None) -> list[Invocation]:
        """Move every due invocation to in-flight and return them."""
        now = now or self._clock()
        async with self._lock:
            due = [i for i in self._pending.values() if i.not_before <= now]
            due.sort(key=lambda i: i.not_before)
            for invocation in due:
                del self._pending[invocation.key]
                self._in_flight.add(invocation.key)
        return due

    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[InvocationKey, Invocation]]:
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            for invocation in await self.claim_due():
                yield invocation.key, invocation

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_invocation: InvocationKey) -> None:
        async with self._lock:
            self._in_flight.discard(raw_invocation)
