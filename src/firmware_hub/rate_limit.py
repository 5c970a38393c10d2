"""Per-client request rate limiting backed by Redis.

Fixed one-minute and one-hour windows per client identifier. When Redis is
unreachable the limiter lets every request through rather than failing the
API.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import Request
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RateLimiter:
    """Redis-based rate limiter."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        requests_per_minute: int = 120,
        requests_per_hour: int = 3000
    ):
        """Initialize rate limiter.

        Args:
            redis_url: Redis connection URL
            requests_per_minute: Rate limit per minute
            requests_per_hour: Rate limit per hour
        """
        self.redis_url = redis_url
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self._redis: Optional[redis.Redis] = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self) -> None:
        """Connect to Redis; stay disabled if it is unreachable."""
        client = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis unavailable, rate limiting disabled: {e}")
            await client.aclose()
            self._redis = None
            return

        self._redis = client
        logger.info("Connected to Redis for rate limiting")

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Disconnected from Redis")

    async def _hit(self, key: str, window_seconds: int) -> int:
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, window_seconds)
        return count

    async def check_rate_limit(self, identifier: str) -> tuple[bool, dict]:
        """Count a request and check it against both windows.

        Args:
            identifier: Client identifier

        Returns:
            Tuple of (allowed, info_dict); info is empty when not limiting
        """
        if not self._redis:
            return True, {}

        try:
            minute_count = await self._hit(f"ratelimit:minute:{identifier}", 60)
            hour_count = await self._hit(f"ratelimit:hour:{identifier}", 3600)
        except RedisError as e:
            logger.error(f"Rate limit check failed for {identifier}: {e}")
            return True, {}

        if minute_count > self.requests_per_minute:
            return False, {
                "limit": self.requests_per_minute,
                "remaining": 0,
                "reset": 60,
                "retry_after": 60
            }

        if hour_count > self.requests_per_hour:
            return False, {
                "limit": self.requests_per_hour,
                "remaining": 0,
                "reset": 3600,
                "retry_after": 3600
            }

        return True, {
            "limit": self.requests_per_minute,
            "remaining": self.requests_per_minute - minute_count,
            "reset": 60
        }


def get_client_identifier(request: Request) -> str:
    """Get client identifier for rate limiting.

    Args:
        request: Incoming request

    Returns:
        Client identifier string
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return f"ip:{forwarded_for.split(',')[0].strip()}"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}"
