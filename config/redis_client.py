"""
Redis connection for the sandbox controller.

Celery brokers through the same instance; the controller itself only uses it
for per-sandbox Redlocks and the pending-reconcile flags next to them.
"""
import logging
from functools import lru_cache
from typing import Any, Final

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

REDIS_URL: Final[str] = settings.REDIS_URL


@lru_cache(maxsize=1)
def get_redis_client() -> Any:
    client = redis.from_url(
        REDIS_URL,
        decode_responses=True,     # Return str instead of bytes for cleaner code
        health_check_interval=30,  # PING every 30s when idle for auto-reconnection
    )

    try:
        client.ping()  # Fail fast if Redis is unavailable
    except redis.RedisError:
        logger.error("Failed to connect to Redis at %s", REDIS_URL)
        raise

    logger.info("Created Redis client: %s", REDIS_URL)
    return client
