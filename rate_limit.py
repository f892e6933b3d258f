import logging
import math
import time
import uuid
from typing import Callable, Optional

import redis

from errors import RateLimitStoreUnavailable
from schemas import RateLimitResult

logger = logging.getLogger("translator.gateway.rate_limit")


ANONYMOUS_CLIENT_KEY = "anonymous"


# =========================
# Helpers
# =========================

def rate_limit_key(client_key: str) -> str:
    return f"ratelimit:{client_key}"


def client_key_from_forwarded(forwarded_for: Optional[str]) -> str:
    """
    First address of X-Forwarded-For, or the shared anonymous key.
    The header is client-supplied; see DESIGN.md for the trust boundary.
    """
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return ANONYMOUS_CLIENT_KEY


def retry_after_seconds(reset_at_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((reset_at_ms - now_ms) / 1000))


# =========================
# Sliding Window Limiter
# =========================

class SlidingWindowRateLimiter:
    """
    Sliding-window log over a Redis sorted set, one set per client key.

    Each check runs as one MULTI/EXEC transaction:
      trim entries older than the window -> record this request ->
      count -> read oldest entry -> refresh TTL
    Transactions are serialized by Redis, so concurrent checks for the
    same key each observe a distinct count and at most `limit` are admitted.
    A rejected request removes its own entry again.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        limit: int = 10,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self.limit = limit
        self.window_ms = window_seconds * 1000
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def check(self, client_key: str) -> RateLimitResult:
        key = rate_limit_key(client_key)
        now_ms = self.now_ms()
        member = f"{now_ms}:{uuid.uuid4().hex}"

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.zremrangebyscore(key, 0, now_ms - self.window_ms)
            pipe.zadd(key, {member: now_ms})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.pexpire(key, self.window_ms)
            _, _, count, oldest, _ = pipe.execute()

            allowed = count <= self.limit
            if not allowed:
                self._redis.zrem(key, member)
        except redis.exceptions.RedisError as e:
            raise RateLimitStoreUnavailable(f"{type(e).__name__}: {e}") from e

        oldest_ms = int(oldest[0][1]) if oldest else now_ms
        result = RateLimitResult(
            allowed=allowed,
            remaining=max(self.limit - count, 0),
            limit=self.limit,
            reset_at=oldest_ms + self.window_ms,
        )

        logger.debug(
            f"Rate limit for {client_key}: {result.remaining}/{result.limit}, resets at {result.reset_at}"
        )
        return result
