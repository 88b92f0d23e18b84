"""
Redis access layer.

Provides the shared Redis client and the app-wide outbound send budget.
Degrades gracefully if Redis is unavailable: callers receive None and
apply their own fallback policy.
"""
import logging
import time
from typing import Optional
import redis
from redis.exceptions import ConnectionError, TimeoutError, RedisError
from rundown.core.config import settings

logger = logging.getLogger(__name__)

# Redis connection pool (singleton)
_redis_client: Optional[redis.Redis] = None

SEND_BUDGET_WINDOW_S = 60

_ACQUIRE_LUA = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])
local current = tonumber(redis.call("GET", key) or "0")
if current >= limit then
    return 0
end
redis.call("INCR", key)
if current == 0 then
    redis.call("EXPIRE", key, ttl)
end
return 1
"""


def get_redis_client() -> Optional[redis.Redis]:
    """Get Redis client with connection pooling. Returns None if Redis unavailable."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    if not settings.REDIS_URL:
        return None

    try:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30
        )
        _redis_client.ping()
        logger.info("Redis connection established")
        return _redis_client
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Redis unavailable: {e}. Global send budget disabled.")
        _redis_client = None
        return None


def _send_budget_key(now_s: Optional[float] = None) -> str:
    window_id = int(now_s if now_s is not None else time.time()) // SEND_BUDGET_WINDOW_S
    return f"rundown:send:global:window:{window_id}"


def acquire_send_budget(window_budget: Optional[int] = None) -> Optional[bool]:
    """
    Global rate limiter for outbound sends across all delivery workers.

    Returns:
        True: send allowed, budget decremented
        False: budget exhausted for current window, caller must defer
        None: Redis unavailable, caller falls back to its per-run limit
    """
    client = get_redis_client()
    if not client:
        return None

    limit = window_budget if window_budget is not None else settings.SEND_BUDGET_PER_MINUTE
    key = _send_budget_key()
    ttl = SEND_BUDGET_WINDOW_S * 2

    try:
        result = client.eval(_ACQUIRE_LUA, 1, key, str(limit), str(ttl))
        return int(result) == 1
    except (ConnectionError, TimeoutError, RedisError) as e:
        logger.warning(f"Send budget check failed: {e}")
        return None
