"""Scheduler adapter interface consumed by the transition engine."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from pydantic import BaseModel

RawInvocationT = TypeVar("RawInvocationT")


class Invocation(BaseModel):
    """Request to run ``step_name`` of a journey at or after ``not_before``.

    ``token`` is the idempotency token minted by the engine; the invocation
    is only honoured while it matches the token stored on the journey.
    """

    journey_id: str
    step_name: str
    token: str
    not_before: datetime

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.journey_id, self.step_name, self.token)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Invocation":
        return cls.model_validate_json(data)


class BaseScheduler(Generic[RawInvocationT], metaclass=abc.ABCMeta):
    """Delivers invocations at or after their ``not_before`` time.

    Implementations must deduplicate re-submission of the same
    (journey_id, step_name, token) triple while it is pending or in flight,
    so at most one invocation per triple is ever live.
    """

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def schedule(self, invocation: Invocation) -> bool:
        """Submit an invocation. Returns ``False`` when it was deduplicated."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawInvocationT, Invocation]]:
        """Yield raw backend item and Invocation pairs as they become due.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_invocation: RawInvocationT) -> None:
        """Release the in-flight claim once the invocation has been handled."""
        raise NotImplementedError
