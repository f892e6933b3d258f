from typing import Optional

import redis

from config import Settings


def create_redis_client(settings: Settings) -> Optional[redis.Redis]:
    """
    Rate-limit store. None when REDIS_URL is unset; the admission gate
    then applies the environment's fail-open / fail-closed policy.
    """
    if not settings.REDIS_URL:
        return None

    kwargs = {
        "decode_responses": True,
        "socket_timeout": settings.REDIS_TIMEOUT_SECONDS,
        "socket_connect_timeout": settings.REDIS_TIMEOUT_SECONDS,
    }
    if settings.REDIS_URL.startswith("rediss://"):
        kwargs["ssl_cert_reqs"] = None  # REQUIRED for Upstash

    return redis.Redis.from_url(settings.REDIS_URL, **kwargs)
