"""Data models for persisted journey state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import HeroRef, JourneyState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token() -> str:
    return uuid.uuid4().hex


class JourneyRecord(BaseModel):
    """Persisted state of one journey."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    journey_type: str
    hero: Optional[HeroRef] = None
    allow_multiple: bool = False
    state: JourneyState = JourneyState.READY
    next_step_name: Optional[str] = None
    paused_step_name: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    idempotency_token: Optional[str] = None
    attempt_count: int = 0
    params: dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class TransitionRecord(BaseModel):
    """One confirmed transition in a journey's history."""

    id: Optional[int] = None
    journey_id: str
    step_name: Optional[str] = None
    from_state: Optional[JourneyState] = None
    to_state: JourneyState
    outcome: str
    attempt: int = 0
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
