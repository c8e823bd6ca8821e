"""Admission control for remote writes.

Uses pyrate-limiter in-memory buckets for the rolling send logs.
"""

from gridpush.core.rate_limit.limiter import RateLimiter, estimate_duration

__all__ = ["RateLimiter", "estimate_duration"]
