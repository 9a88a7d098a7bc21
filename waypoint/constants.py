"""Default values shared across waypoint modules."""

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 30.0
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_MAX_SECONDS = 3600.0
DEFAULT_BACKOFF_JITTER = 0.1

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_STORAGE_RETRY_SECONDS = 5.0
DEFAULT_STUCK_AFTER_SECONDS = 900.0
DEFAULT_RESUBMIT_INTERVAL_SECONDS = 60.0

REDIS_KEY_PREFIX = "waypoint"
REDIS_LEASE_SECONDS = 300.0
