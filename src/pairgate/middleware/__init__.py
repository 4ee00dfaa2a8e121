"""Request guards for the PairGate API."""

from pairgate.middleware.rate_limit import (
    InMemoryRateLimiter,
    RateLimitDecision,
    RateLimiter,
    RateLimiterBackend,
    RateLimitRule,
    RedisRateLimiter,
    get_rate_limiter,
    rate_limit_dependency,
    reset_rate_limiter,
)

__all__ = [
    "InMemoryRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "RateLimiterBackend",
    "RateLimitRule",
    "RedisRateLimiter",
    "get_rate_limiter",
    "rate_limit_dependency",
    "reset_rate_limiter",
]
