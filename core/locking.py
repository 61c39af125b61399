"""
Redis-based advisory lock per order-date prefix.

Narrows the window in which two requests read the same "last sequence" for
a day. It is best-effort: when Redis is unreachable or the lock cannot be
acquired in time, callers proceed unlocked and rely on the unique order
number constraint plus retry.
"""
import logging
from contextlib import contextmanager

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

LOCK_BLOCKING_TIMEOUT = 5

# Initialize Redis client
try:
    redis_client = redis.Redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5
    )
    redis_client.ping()
except (redis.ConnectionError, redis.TimeoutError) as e:
    logger.warning(f"Redis connection failed: {e}. Order sequence locking will be disabled.")
    redis_client = None


def sequence_lock_key(date_string: str) -> str:
    return f"order_sequence:{date_string}"


@contextmanager
def date_prefix_lock(date_string: str):
    """
    Hold the order sequence lock for one YYMMDD prefix.

    Yields True when the lock is held, False when running unlocked.

    Usage:
        with date_prefix_lock('240823'):
            ...read max order number, insert order...
    """
    lock = None
    if getattr(settings, 'ORDER_SEQUENCE_LOCK_ENABLED', True) and redis_client is not None:
        try:
            lock = redis_client.lock(
                sequence_lock_key(date_string),
                timeout=getattr(settings, 'ORDER_SEQUENCE_LOCK_TIMEOUT', 10),
                blocking_timeout=LOCK_BLOCKING_TIMEOUT
            )
            if not lock.acquire():
                logger.warning(
                    f"Timed out waiting for order sequence lock {date_string}, "
                    "continuing unlocked"
                )
                lock = None
        except redis.RedisError as e:
            # Fail open - the unique constraint still catches collisions
            logger.error(f"Redis error acquiring order sequence lock: {e}")
            lock = None

    try:
        yield lock is not None
    finally:
        if lock is not None:
            try:
                lock.release()
            except redis.RedisError as e:
                logger.error(f"Redis error releasing order sequence lock: {e}")
