import logging
from dataclasses import dataclass
from typing import Dict
from common.error_handling import RateLimitedError
from common.redis_client import RedisClient

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    current_count: int
    retry_after: int = 0

class AbuseGuard:
    """Fixed-window request counter per (scope, actor key).

    `limits` maps a scope such as "dispute" to the number of requests an actor
    may make in one window.
    """

    def __init__(self, redis_client: RedisClient, limits: Dict[str, int], window_seconds: int = 60):
        self.redis_client = redis_client
        self.limits = dict(limits)
        self.window_seconds = window_seconds

    def check_and_record(self, actor_key: str, scope: str) -> RateLimitDecision:
        if scope not in self.limits:
            raise KeyError(f"no rate limit configured for scope {scope!r}")
        result = self.redis_client.check_rate_limit(actor_key, scope, self.limits[scope], self.window_seconds)
        return RateLimitDecision(
            allowed=result["allowed"],
            current_count=result["count"],
            retry_after=result["retry_after"],
        )

    def enforce(self, actor_key: str, scope: str) -> RateLimitDecision:
        decision = self.check_and_record(actor_key, scope)
        if not decision.allowed:
            logger.warning(f"Rate limit exceeded for {actor_key} on {scope}: {decision.current_count} requests")
            raise RateLimitedError(retry_after=decision.retry_after,
                                   context={"scope": scope, "current_count": decision.current_count})
        return decision
