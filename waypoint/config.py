from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_BACKOFF_JITTER,
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RESUBMIT_INTERVAL_SECONDS,
    DEFAULT_STORAGE_RETRY_SECONDS,
    DEFAULT_STUCK_AFTER_SECONDS,
    REDIS_KEY_PREFIX,
    REDIS_LEASE_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis scheduler."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = REDIS_KEY_PREFIX
    lease_seconds: float = Field(default=REDIS_LEASE_SECONDS, gt=0)


class SchedulerConfig(BaseModel):
    """Scheduler backend settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    poll_interval: float = 0.1


class RetryConfig(BaseModel):
    """Bounds for reattempting failed steps."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0)
    factor: float = Field(default=DEFAULT_BACKOFF_FACTOR, ge=1)
    max_seconds: float = Field(default=DEFAULT_BACKOFF_MAX_SECONDS, ge=0)
    jitter: float = Field(default=DEFAULT_BACKOFF_JITTER, ge=0, le=1)


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    database_url: Optional[str] = None
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    storage_retry_seconds: float = DEFAULT_STORAGE_RETRY_SECONDS
    stuck_after_seconds: float = DEFAULT_STUCK_AFTER_SECONDS
    resubmit_interval_seconds: float = DEFAULT_RESUBMIT_INTERVAL_SECONDS
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WAYPOINT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_scheduler = os.getenv("WAYPOINT_SCHEDULER")
    if env_scheduler:
        config.scheduler = config.scheduler.model_copy(
            update={"backend": env_scheduler.lower()}
        )
    return config
