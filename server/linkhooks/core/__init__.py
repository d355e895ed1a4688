"""Core application utilities and infrastructure."""
from .config import Settings, get_settings
from .rate_limiter import FixedWindowRateLimiter, RateLimitDecision, RateLimiter, RedisRateLimiter
from .redis_manager import create_redis_client, get_redis_client

__all__ = [
    "Settings",
    "get_settings",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimiter",
    "RedisRateLimiter",
    "create_redis_client",
    "get_redis_client",
]
