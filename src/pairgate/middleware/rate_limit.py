"""Rate limiting for pairing code endpoints.

Validation and redemption share one budget per caller, so guessing codes
costs the same whichever endpoint is probed.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import NamedTuple, Optional
from uuid import uuid4

from fastapi import HTTPException, Request, status

from pairgate.config import Settings, settings as default_settings
from pairgate.observability.metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRule:
    """Budget of calls per sliding window."""

    calls: int
    window_seconds: int
    key_prefix: str = ""


class RateLimitDecision(NamedTuple):
    allowed: bool
    remaining: int
    reset_at: int


class RateLimiterBackend(ABC):
    """Sliding-window counter keyed by caller."""

    @abstractmethod
    async def check_rate_limit(
        self, key: str, max_calls: int, window_seconds: int
    ) -> RateLimitDecision:
        """Count one call against ``key``; a denied call is not counted."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        pass


class InMemoryRateLimiter(RateLimiterBackend):
    """Per-process windows. Instances behind a load balancer do not share them."""

    def __init__(self):
        self._hits: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def check_rate_limit(
        self, key: str, max_calls: int, window_seconds: int
    ) -> RateLimitDecision:
        async with self._lock:
            now = time.time()
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()

            allowed = len(hits) < max_calls
            if allowed:
                hits.append(now)
            reset_at = int(hits[0] + window_seconds) if hits else int(now + window_seconds)
            return RateLimitDecision(allowed, max(0, max_calls - len(hits)), reset_at)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._hits.pop(key, None)


class RedisRateLimiter(RateLimiterBackend):
    """Windows kept in Redis sorted sets (score = call time), shared by every instance."""

    def __init__(self, redis_url: str):
        import redis.asyncio as aioredis

        self.redis = aioredis.from_url(redis_url, decode_responses=True)
        logger.info("Redis rate limiter initialized")

    @staticmethod
    def _key(key: str) -> str:
        return f"pairgate:ratelimit:{key}"

    async def check_rate_limit(
        self, key: str, max_calls: int, window_seconds: int
    ) -> RateLimitDecision:
        now = time.time()
        redis_key = self._key(key)
        member = f"{now}:{uuid4().hex}"

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.expire(redis_key, window_seconds)
            _, _, count, oldest, _ = await pipe.execute()

        allowed = count <= max_calls
        if not allowed:
            await self.redis.zrem(redis_key, member)
            count -= 1

        reset_at = int(oldest[0][1] + window_seconds) if oldest else int(now + window_seconds)
        return RateLimitDecision(allowed, max(0, max_calls - count), reset_at)

    async def reset(self, key: str) -> None:
        await self.redis.delete(self._key(key))


class RateLimiter:
    """
    Guards code validation and redemption.

    Callers are keyed by X-User-ID when present, otherwise by client IP.
    The backend comes from ``rate_limit_backend`` unless one is injected.
    """

    def __init__(
        self,
        backend: Optional[RateLimiterBackend] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        if backend is not None:
            self.backend = backend
        elif self.config.rate_limit_backend == "redis":
            if not self.config.redis_url:
                raise ValueError("redis_url required for redis backend")
            self.backend = RedisRateLimiter(self.config.redis_url)
        else:
            self.backend = InMemoryRateLimiter()
            logger.info("Using in-memory rate limiter")

        self.rule = RateLimitRule(
            calls=self.config.rate_limit_code_calls,
            window_seconds=self.config.rate_limit_code_window_seconds,
            key_prefix="codes:",
        )

    def key_for(self, request: Request) -> str:
        user_id = (request.headers.get("X-User-ID") or "").strip()
        if user_id:
            return f"{self.rule.key_prefix}user:{user_id}"
        client_ip = request.client.host if request.client else "unknown"
        return f"{self.rule.key_prefix}ip:{client_ip}"

    async def check_request(self, request: Request) -> None:
        """Raise HTTP 429 once the caller has spent the window's budget."""
        if not self.config.rate_limit_active:
            return

        key = self.key_for(request)
        decision = await self.backend.check_rate_limit(
            key, self.rule.calls, self.rule.window_seconds
        )
        request.state.rate_limit_remaining = decision.remaining
        request.state.rate_limit_reset = decision.reset_at
        if decision.allowed:
            return

        retry_after = max(0, decision.reset_at - int(time.time()))
        metrics.inc_counter("rate_limit.rejected")
        logger.warning(f"Rate limit exceeded for {key} on {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many code attempts. Retry after {retry_after} seconds.",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(self.rule.calls),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(decision.reset_at),
            },
        )


_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    global _rate_limiter
    _rate_limiter = None


async def rate_limit_dependency(request: Request) -> None:
    """FastAPI dependency for the code validation and redemption routes."""
    await get_rate_limiter().check_request(request)
