"""Redis scheduler for cross-process delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..constants import REDIS_KEY_PREFIX, REDIS_LEASE_SECONDS
from ..persistence.models import utcnow
from .base import BaseScheduler, Invocation

logger = logging.getLogger(__name__)

# KEYS: dedup key, schedule zset. ARGV: member, score, lease in ms.
_SCHEDULE_SCRIPT = """
if redis.call('SET', KEYS[1], '1', 'NX', 'PX', ARGV[3]) then
    redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
    return 1
end
return 0
"""


class RedisScheduler(BaseScheduler[str]):
    """Delayed queue on a Redis sorted set scored by ``not_before``.

    A consumer claims an invocation by removing it from the sorted set, so
    only one of several competing workers gets it. A ``SET NX`` key per
    (journey, step, token) triple deduplicates submissions until ack. The key
    is a lease: it expires ``lease_seconds`` after the invocation becomes due
    or is claimed, so a worker that dies before acking does not block the
    triple from being submitted again.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = REDIS_KEY_PREFIX,
        poll_interval: float = 0.5,
        batch_size: int = 50,
        lease_seconds: float = REDIS_LEASE_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.lease_seconds = lease_seconds
        self._redis: Optional[Any] = None
        self._schedule_script: Optional[Any] = None

    @property
    def schedule_key(self) -> str:
        return f"{self.key_prefix}:schedule"

    def _dedup_key(self, invocation: Invocation) -> str:
        journey_id, step_name, token = invocation.key
        return f"{self.key_prefix}:live:{journey_id}:{step_name}:{token}"

    def _lease_ms(self, invocation: Optional[Invocation] = None) -> int:
        lease = self.lease_seconds
        if invocation is not None:
            lease += max((invocation.not_before - utcnow()).total_seconds(), 0.0)
        return max(int(lease * 1000), 1)

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        self._schedule_script = self._redis.register_script(_SCHEDULE_SCRIPT)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._schedule_script = None

    async def schedule(self, invocation: Invocation) -> bool:
        if not self._redis:
            await self.connect()

        accepted = await self._schedule_script(
            keys=[self._dedup_key(invocation), self.schedule_key],
            args=[
                invocation.to_json(),
                invocation.not_before.timestamp(),
                self._lease_ms(invocation),
            ],
        )
        return bool(accepted)

    async def subscribe(
        self, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, Invocation]]:
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            members = await self._redis.zrangebyscore(
                self.schedule_key,
                "-inf",
                utcnow().timestamp(),
                start=0,
                num=self.batch_size,
            )
            for member in members:
                # Only the worker whose ZREM succeeds owns the invocation.
                if not await self._redis.zrem(self.schedule_key, member):
                    continue
                try:
                    invocation = Invocation.from_json(member)
                except ValueError as e:
                    logger.error(f"Dropping unparseable invocation {member!r}: {e}")
                    continue
                await self._redis.pexpire(self._dedup_key(invocation), self._lease_ms())
                yield member, invocation

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_invocation: str) -> None:
        if not self._redis:
            await self.connect()
        invocation = Invocation.from_json(raw_invocation)
        await self._redis.delete(self._dedup_key(invocation))
