"""Redis token-bucket rate limiting for user-facing payment endpoints."""

from time import time

import redis

from storepay.common.config import settings
from storepay.common.errors import RateLimited
from storepay.common.logging import logger


class TokenBucketLimiter:
    """Token bucket keyed by caller (capacity = refill rate = limit per minute)."""

    def __init__(self, rdb: redis.Redis, limit_per_minute: int) -> None:
        self.rdb = rdb
        self.limit_per_minute = limit_per_minute

    def enforce(self, subject: str) -> None:
        try:
            allowed = self._take(subject)
        except redis.RedisError as exc:
            # Fail open while Redis is unreachable.
            logger.warning("rate_limiter_unavailable subject=%s error=%s", subject, exc)
            return
        if not allowed:
            raise RateLimited()

    def _take(self, subject: str) -> bool:
        key = f"tokenbucket:{subject}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0

        values = self.rdb.hmget(key, "tokens", "updated_at")
        tokens = float(values[0]) if values[0] is not None else capacity
        updated_at = float(values[1]) if values[1] is not None else now
        elapsed = max(0.0, now - updated_at)
        tokens = min(capacity, tokens + elapsed * refill_per_sec)

        allowed = tokens >= 1.0
        if allowed:
            tokens -= 1.0
        self.rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        self.rdb.expire(key, 120)
        return allowed


def build_limiter() -> TokenBucketLimiter:
    return TokenBucketLimiter(
        redis.Redis.from_url(settings.redis_url, decode_responses=True),
        settings.rate_limit_per_minute,
    )
