"""Scheduler factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import WaypointConfig, load_config
from .base import BaseScheduler, Invocation
from .inmemory import InMemoryScheduler


def get_scheduler(
    backend: Optional[str] = None, config: Optional[WaypointConfig] = None
) -> BaseScheduler:
    """Factory function to get the configured scheduler."""

    config = config or load_config()
    backend = (
        backend or os.getenv("WAYPOINT_SCHEDULER") or config.scheduler.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryScheduler(poll_interval=config.scheduler.poll_interval)
    elif backend == "redis":
        from .redis import RedisScheduler

        redis_conf = config.scheduler.redis
        return RedisScheduler(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
            lease_seconds=redis_conf.lease_seconds,
            poll_interval=config.scheduler.poll_interval,
        )
    else:
        raise ValueError(f"Unsupported scheduler backend: {backend}")


__all__ = ["BaseScheduler", "InMemoryScheduler", "Invocation", "get_scheduler"]
