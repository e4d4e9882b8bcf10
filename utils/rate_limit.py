"""
Fixed-window rate limiting backed by Redis
"""
import logging
from dataclasses import dataclass
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.requests import Request

from config.settings import FAIL_CLOSED, settings
from utils.errors import RateLimitError

logger = logging.getLogger(__name__)

LIMIT_CLASSES = ("general", "upload", "analysis", "auth")


@dataclass
class RateLimitResult:
    allowed: bool
    count: int
    limit: int
    window_seconds: int
    degraded: bool = False


def get_client_id(request: Request) -> str:
    """Client identity for rate limiting: first X-Forwarded-For hop, X-Real-IP, then the peer address."""
    xff = request.headers.get("x-forwarded-for")
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    client = request.client
    return client.host if client and client.host else "unknown"


class FixedWindowRateLimiter:
    """
    Counts requests per (limit class, client) in fixed windows.

    The first hit in a window creates the counter and sets its expiry; the
    counter vanishing starts the next window. If Redis is unreachable the
    request is admitted unless RATE_LIMIT_FAILURE_POLICY is "closed".
    """

    def __init__(self, redis_client: Optional[Redis], window_seconds: Optional[int] = None):
        self.redis = redis_client
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds

    @staticmethod
    def key_for(limit_class: str, client_id: str) -> str:
        return f"rate_limit:{limit_class}:{client_id}"

    async def hit(self, limit_class: str, client_id: str, limit: Optional[int] = None) -> RateLimitResult:
        if limit_class not in LIMIT_CLASSES:
            raise ValueError(f"Unknown rate limit class: {limit_class}")
        limit = limit if limit is not None else settings.rate_limit_for(limit_class)

        if self.redis is None:
            return self._degraded(limit, "REDIS_URL not configured")

        key = self.key_for(limit_class, client_id)
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, self.window_seconds)
        except (RedisError, OSError) as e:
            return self._degraded(limit, str(e))

        return RateLimitResult(
            allowed=count <= limit,
            count=count,
            limit=limit,
            window_seconds=self.window_seconds,
        )

    def _degraded(self, limit: int, reason: str) -> RateLimitResult:
        allowed = settings.rate_limit_failure_policy != FAIL_CLOSED
        logger.warning(f"Rate limit store unavailable ({reason}); {'admitting' if allowed else 'rejecting'} request")
        return RateLimitResult(
            allowed=allowed,
            count=0,
            limit=limit,
            window_seconds=self.window_seconds,
            degraded=True,
        )


class RateLimit:
    """
    Route dependency enforcing one limit class.

    Example:
        @router.post("/upload", dependencies=[Depends(RateLimit("upload"))])
    """

    def __init__(self, limit_class: str):
        if limit_class not in LIMIT_CLASSES:
            raise ValueError(f"Unknown rate limit class: {limit_class}")
        self.limit_class = limit_class

    async def __call__(self, request: Request) -> RateLimitResult:
        limiter: Optional[FixedWindowRateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if limiter is None:
            limiter = FixedWindowRateLimiter(None)
        client_id = get_client_id(request)
        result = await limiter.hit(self.limit_class, client_id)
        if not result.allowed:
            logger.info(f"Rate limit exceeded: class={self.limit_class} client={client_id} count={result.count}")
            raise RateLimitError(
                "Too many requests. Please try again later.",
                details={"limit": result.limit, "window_seconds": result.window_seconds},
            )
        return result
