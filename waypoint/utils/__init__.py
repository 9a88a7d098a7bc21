"""Small helpers shared across waypoint."""

from .retry import backoff_delay, compute_backoff

__all__ = ["backoff_delay", "compute_backoff"]
