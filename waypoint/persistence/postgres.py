"""PostgreSQL implementation of the journey repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..constants import DEFAULT_LOCK_TIMEOUT_SECONDS
from ..contracts import HeroRef, JourneyState
from ..signals import JourneyAlreadyExists, LockContention, StorageError
from .models import JourneyRecord, TransitionRecord
from .repository import (
    JOURNEY_COLUMNS,
    TERMINAL_STATE_VALUES,
    TRANSITION_COLUMNS,
    JourneyRepository,
    LockedJourney,
    journey_to_row,
    row_to_journey,
    row_to_transition,
    transition_to_row,
)

_SELECT_JOURNEY = f"SELECT {', '.join(JOURNEY_COLUMNS)} FROM journeys"
_INSERT_JOURNEY = (
    f"INSERT INTO journeys ({', '.join(JOURNEY_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(JOURNEY_COLUMNS) + 1))})"
)
_UPDATE_JOURNEY = (
    "UPDATE journeys SET "
    + ", ".join(f"{c} = ${i + 1}" for i, c in enumerate(JOURNEY_COLUMNS) if c != "id")
    + " WHERE id = $1"
)
_INSERT_TRANSITION = (
    f"INSERT INTO journey_transitions ({', '.join(TRANSITION_COLUMNS)}) "
    f"VALUES ({', '.join(f'${i}' for i in range(1, len(TRANSITION_COLUMNS) + 1))})"
)


def _journey_values(journey: JourneyRecord) -> list[Any]:
    row = journey_to_row(journey)
    return [row[c] for c in JOURNEY_COLUMNS]


def _transition_values(transition: TransitionRecord) -> list[Any]:
    row = transition_to_row(transition)
    return [row[c] for c in TRANSITION_COLUMNS]


class PostgresJourneyRepository(JourneyRepository):
    """Persist journey state using PostgreSQL.

    The row lock is ``SELECT ... FOR UPDATE`` inside a transaction, bounded by
    ``lock_timeout``.
    """

    def __init__(self, dsn: str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self._dsn = dsn
        self.lock_timeout = lock_timeout
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StorageError(f"Could not connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS journeys (
                id TEXT PRIMARY KEY,
                journey_type TEXT NOT NULL,
                hero_kind TEXT,
                hero_id TEXT,
                allow_multiple BOOLEAN NOT NULL DEFAULT FALSE,
                state TEXT NOT NULL,
                next_step_name TEXT,
                paused_step_name TEXT,
                scheduled_at TIMESTAMPTZ,
                idempotency_token TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                params JSONB NOT NULL,
                last_error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS journeys_one_active_per_hero
            ON journeys (journey_type, hero_kind, hero_id)
            WHERE NOT allow_multiple
              AND hero_id IS NOT NULL
              AND state NOT IN ({', '.join(repr(s) for s in TERMINAL_STATE_VALUES)})
            """
        )
        await conn.execute("CREATE INDEX IF NOT EXISTS journeys_state ON journeys (state)")
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS journeys_hero ON journeys (hero_kind, hero_id)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS journey_transitions (
                id SERIAL PRIMARY KEY,
                journey_id TEXT NOT NULL,
                step_name TEXT,
                from_state TEXT,
                to_state TEXT NOT NULL,
                outcome TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS journey_transitions_journey "
            "ON journey_transitions (journey_id, id)"
        )

    # ------------------------------------------------------------------
    async def create_journey(
        self, journey: JourneyRecord, transition: Optional[TransitionRecord] = None
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(_INSERT_JOURNEY, *_journey_values(journey))
                if transition is not None:
                    await conn.execute(_INSERT_TRANSITION, *_transition_values(transition))
        except asyncpg.UniqueViolationError as exc:
            raise JourneyAlreadyExists(
                f"{journey.journey_type} already active for {journey.hero}"
            ) from exc
        except asyncpg.PostgresError as exc:
            raise StorageError(str(exc)) from exc
        finally:
            await conn.close()

    @asynccontextmanager
    async def lock(self, journey_id: str) -> AsyncIterator[LockedJourney]:
        conn = await self._connect()
        tx = conn.transaction()
        try:
            await tx.start()
            await conn.execute(
                f"SET LOCAL lock_timeout = '{int(self.lock_timeout * 1000)}ms'"
            )
            row = await conn.fetchrow(
                f"{_SELECT_JOURNEY} WHERE id = $1 FOR UPDATE", journey_id
            )
        except asyncpg.LockNotAvailableError as exc:
            await conn.close()
            raise LockContention(f"Could not lock journey {journey_id}: {exc}") from exc
        except asyncpg.PostgresError as exc:
            await conn.close()
            raise StorageError(str(exc)) from exc

        handle = LockedJourney(row_to_journey(row) if row else None)
        try:
            try:
                yield handle
            except BaseException:
                await tx.rollback()
                raise
            try:
                if handle.changed and handle.journey is not None:
                    await conn.execute(_UPDATE_JOURNEY, *_journey_values(handle.journey))
                    for transition in handle.transitions:
                        await conn.execute(
                            _INSERT_TRANSITION, *_transition_values(transition)
                        )
                await tx.commit()
            except asyncpg.PostgresError as exc:
                await tx.rollback()
                raise StorageError(str(exc)) from exc
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                yield conn
        finally:
            await conn.close()

    async def get_journey(self, journey_id: str) -> JourneyRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(f"{_SELECT_JOURNEY} WHERE id = $1", journey_id)
        finally:
            await conn.close()
        return row_to_journey(row) if row else None

    async def find_active_for_hero(
        self, hero: HeroRef, journey_type: Optional[str] = None
    ) -> JourneyRecord | None:
        query = (
            f"{_SELECT_JOURNEY} WHERE hero_kind = $1 AND hero_id = $2 "
            "AND NOT (state = ANY($3::text[]))"
        )
        params: list[Any] = [hero.kind, hero.id, list(TERMINAL_STATE_VALUES)]
        if journey_type is not None:
            query += " AND journey_type = $4"
            params.append(journey_type)
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query + " ORDER BY created_at LIMIT 1", *params)
        finally:
            await conn.close()
        return row_to_journey(row) if row else None

    async def list_journeys(
        self,
        state: Optional[JourneyState] = None,
        journey_type: Optional[str] = None,
        hero: Optional[HeroRef] = None,
    ) -> list[JourneyRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if state is not None:
            params.append(JourneyState(state).value)
            clauses.append(f"state = ${len(params)}")
        if journey_type is not None:
            params.append(journey_type)
            clauses.append(f"journey_type = ${len(params)}")
        if hero is not None:
            params.extend([hero.kind, hero.id])
            clauses.append(f"hero_kind = ${len(params) - 1} AND hero_id = ${len(params)}")
        query = _SELECT_JOURNEY
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY created_at", *params)
        finally:
            await conn.close()
        return [row_to_journey(r) for r in rows]

    async def list_transitions(self, journey_id: str) -> list[TransitionRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT id, {', '.join(TRANSITION_COLUMNS)} FROM journey_transitions "
                "WHERE journey_id = $1 ORDER BY id",
                journey_id,
            )
        finally:
            await conn.close()
        return [row_to_transition(r) for r in rows]

    async def find_stuck(self, older_than: datetime) -> list[JourneyRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"{_SELECT_JOURNEY} WHERE state = $1 AND updated_at < $2 ORDER BY updated_at",
                JourneyState.PERFORMING.value,
                older_than,
            )
        finally:
            await conn.close()
        return [row_to_journey(r) for r in rows]
