"""SQLite implementation of the journey repository."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

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
    f"VALUES ({', '.join('?' for _ in JOURNEY_COLUMNS)})"
)
_UPDATE_JOURNEY = (
    "UPDATE journeys SET "
    + ", ".join(f"{c} = ?" for c in JOURNEY_COLUMNS if c != "id")
    + " WHERE id = ?"
)
_INSERT_TRANSITION = (
    f"INSERT INTO journey_transitions ({', '.join(TRANSITION_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in TRANSITION_COLUMNS)})"
)


def _to_sql(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _journey_values(journey: JourneyRecord) -> list[Any]:
    row = journey_to_row(journey)
    return [_to_sql(row[c]) for c in JOURNEY_COLUMNS]


def _update_values(journey: JourneyRecord) -> list[Any]:
    row = journey_to_row(journey)
    return [_to_sql(row[c]) for c in JOURNEY_COLUMNS if c != "id"] + [journey.id]


def _transition_values(transition: TransitionRecord) -> list[Any]:
    row = transition_to_row(transition)
    return [_to_sql(row[c]) for c in TRANSITION_COLUMNS]


class SQLiteJourneyRepository(JourneyRepository):
    """Persist journey state using SQLite.

    The row lock is a ``BEGIN IMMEDIATE`` transaction on a dedicated
    connection, so it serializes writers across processes sharing the file.
    ``db_path`` must be a file; ``:memory:`` databases are per-connection.
    """

    def __init__(
        self,
        db_path: str | Path,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
    ):
        self.db_path = str(db_path)
        self.lock_timeout = lock_timeout
        self._conn = self._open()
        self._ensure_schema()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS journeys (
                id TEXT PRIMARY KEY,
                journey_type TEXT NOT NULL,
                hero_kind TEXT,
                hero_id TEXT,
                allow_multiple INTEGER NOT NULL DEFAULT 0,
                state TEXT NOT NULL,
                next_step_name TEXT,
                paused_step_name TEXT,
                scheduled_at TEXT,
                idempotency_token TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                params TEXT NOT NULL,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS journeys_one_active_per_hero
            ON journeys (journey_type, hero_kind, hero_id)
            WHERE allow_multiple = 0
              AND hero_id IS NOT NULL
              AND state NOT IN ({', '.join(repr(s) for s in TERMINAL_STATE_VALUES)})
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS journeys_state ON journeys (state)")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS journeys_hero ON journeys (hero_kind, hero_id)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS journey_transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                journey_id TEXT NOT NULL,
                step_name TEXT,
                from_state TEXT,
                to_state TEXT NOT NULL,
                outcome TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS journey_transitions_journey "
            "ON journey_transitions (journey_id, id)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _insert(self, journey: JourneyRecord, transition: Optional[TransitionRecord]) -> None:
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(_INSERT_JOURNEY, _journey_values(journey))
                if transition is not None:
                    conn.execute(_INSERT_TRANSITION, _transition_values(transition))
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _begin_locked(self, journey_id: str) -> tuple[sqlite3.Connection, sqlite3.Row | None]:
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError:
            conn.close()
            raise
        row = conn.execute(f"{_SELECT_JOURNEY} WHERE id = ?", (journey_id,)).fetchone()
        return conn, row

    @staticmethod
    def _flush(conn: sqlite3.Connection, handle: LockedJourney) -> None:
        if handle.changed and handle.journey is not None:
            conn.execute(_UPDATE_JOURNEY, _update_values(handle.journey))
            for transition in handle.transitions:
                conn.execute(_INSERT_TRANSITION, _transition_values(transition))
        conn.execute("COMMIT")

    @staticmethod
    def _abort(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Repository API
    async def create_journey(
        self, journey: JourneyRecord, transition: Optional[TransitionRecord] = None
    ) -> None:
        try:
            await asyncio.to_thread(self._insert, journey, transition)
        except sqlite3.IntegrityError as exc:
            raise JourneyAlreadyExists(
                f"{journey.journey_type} already active for {journey.hero}"
            ) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    @asynccontextmanager
    async def lock(self, journey_id: str) -> AsyncIterator[LockedJourney]:
        try:
            conn, row = await asyncio.to_thread(self._begin_locked, journey_id)
        except sqlite3.OperationalError as exc:
            raise LockContention(f"Could not lock journey {journey_id}: {exc}") from exc
        handle = LockedJourney(row_to_journey(row) if row else None)
        try:
            yield handle
        except BaseException:
            await asyncio.to_thread(self._abort, conn)
            raise
        try:
            await asyncio.to_thread(self._flush, conn, handle)
        except sqlite3.Error as exc:
            await asyncio.to_thread(self._abort, conn)
            raise StorageError(str(exc)) from exc
        await asyncio.to_thread(conn.close)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        conn = await asyncio.to_thread(self._open)
        await asyncio.to_thread(conn.execute, "BEGIN")
        try:
            yield conn
        except BaseException:
            await asyncio.to_thread(self._abort, conn)
            raise
        await asyncio.to_thread(conn.execute, "COMMIT")
        await asyncio.to_thread(conn.close)

    async def get_journey(self, journey_id: str) -> JourneyRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"{_SELECT_JOURNEY} WHERE id = ?", journey_id
        )
        return row_to_journey(row) if row else None

    async def find_active_for_hero(
        self, hero: HeroRef, journey_type: Optional[str] = None
    ) -> JourneyRecord | None:
        query = (
            f"{_SELECT_JOURNEY} WHERE hero_kind = ? AND hero_id = ? "
            f"AND state NOT IN ({', '.join('?' for _ in TERMINAL_STATE_VALUES)})"
        )
        params: list[Any] = [hero.kind, hero.id, *TERMINAL_STATE_VALUES]
        if journey_type is not None:
            query += " AND journey_type = ?"
            params.append(journey_type)
        row = await asyncio.to_thread(self._fetchone, query + " ORDER BY created_at", *params)
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
            clauses.append("state = ?")
            params.append(JourneyState(state).value)
        if journey_type is not None:
            clauses.append("journey_type = ?")
            params.append(journey_type)
        if hero is not None:
            clauses.append("hero_kind = ? AND hero_id = ?")
            params.extend([hero.kind, hero.id])
        query = _SELECT_JOURNEY
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY created_at", *params)
        return [row_to_journey(r) for r in rows]

    async def list_transitions(self, journey_id: str) -> list[TransitionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT id, {', '.join(TRANSITION_COLUMNS)} FROM journey_transitions "
            "WHERE journey_id = ? ORDER BY id",
            journey_id,
        )
        return [row_to_transition(r) for r in rows]

    async def find_stuck(self, older_than: datetime) -> list[JourneyRecord]:
        journeys = await self.list_journeys(state=JourneyState.PERFORMING)
        return [j for j in journeys if j.updated_at < older_than]
