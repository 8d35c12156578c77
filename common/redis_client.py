"""
Redis client utilities for request rate limiting
"""
import time
import logging
import redis
from typing import Optional, Dict, Any, Callable
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: Optional[str] = None, client=None, clock: Callable[[], float] = time.time):
        self.client = client if client is not None else redis.Redis.from_url(url or settings.redis_url, decode_responses=True)
        self.clock = clock

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # Rate Limiting
    def check_rate_limit(self, key: str, scope: str, max_requests: int, window_seconds: int) -> Dict[str, Any]:
        """Count one request for key/scope in the current fixed window.

        INCR is atomic, so concurrent handlers on different instances never
        both observe the same count.
        """
        now = int(self.clock())
        window_start = now // window_seconds * window_seconds
        reset_time = window_start + window_seconds
        current_key = f"rate_limit:{scope}:{key}:{window_start}"

        try:
            pipe = self.client.pipeline()
            pipe.incr(current_key)
            pipe.expire(current_key, window_seconds)
            new_count = int(pipe.execute()[0])
        except redis.RedisError as e:
            # Fail open - allow request if Redis is down
            logger.warning(f"Rate limit check failed for {scope}, allowing request: {e}")
            return {
                "allowed": True,
                "count": 0,
                "remaining": max_requests,
                "reset_time": reset_time,
                "retry_after": 0
            }

        allowed = new_count <= max_requests
        logger.debug(f"Rate limit check for {key}:{scope} - count: {new_count}/{max_requests}")

        return {
            "allowed": allowed,
            "count": new_count,
            "remaining": max(0, max_requests - new_count),
            "reset_time": reset_time,
            "retry_after": 0 if allowed else max(1, reset_time - now)
        }
