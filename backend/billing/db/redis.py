"""Redis client and distributed locks for webhook handlers"""
import logging
import secrets
import time
from contextlib import contextmanager
from typing import Optional

import redis

from billing.core.config import settings
from billing.core.exceptions import SubscriptionLockTimeout
from billing.core.metrics import subscription_lock_timeouts_counter

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

# Delete the key only if it still holds our token, so an expired lock that
# another worker re-acquired is never released by the previous holder
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

LOCK_POLL_INTERVAL = 0.1  # seconds


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def acquire_lock(lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock expiry in seconds, so a crashed holder cannot block forever

    Returns:
        The lock token if acquired (needed to release it), None if the lock is held
    """
    token = secrets.token_hex(16)
    # SET key value NX EX timeout - atomically set if not exists with expiration
    result = get_redis_client().set(lock_key, token, nx=True, ex=timeout)
    return token if result else None


def release_lock(lock_key: str, token: str) -> bool:
    """Release a distributed lock if it is still held with the given token.

    Returns:
        True if the lock was released, False if it had expired or changed hands
    """
    released = get_redis_client().eval(_RELEASE_SCRIPT, 1, lock_key, token)
    return bool(released)


def subscription_lock_key(subscription_id: str) -> str:
    return f"lock:subscription:{subscription_id}"


@contextmanager
def subscription_lock(subscription_id: str, wait: Optional[float] = None, timeout: Optional[int] = None):
    """Serialize work on one Stripe subscription across workers.

    Polls until the lock is free or `wait` seconds pass.

    Raises:
        SubscriptionLockTimeout: the lock could not be acquired in time
    """
    wait = settings.SUBSCRIPTION_LOCK_WAIT if wait is None else wait
    timeout = settings.SUBSCRIPTION_LOCK_TIMEOUT if timeout is None else timeout
    lock_key = subscription_lock_key(subscription_id)

    started = time.monotonic()
    token = acquire_lock(lock_key, timeout=timeout)
    while token is None:
        waited = time.monotonic() - started
        if waited >= wait:
            subscription_lock_timeouts_counter.inc()
            logger.warning(f"Could not acquire lock for subscription {subscription_id} after {waited:.1f}s")
            raise SubscriptionLockTimeout(subscription_id, waited)
        time.sleep(LOCK_POLL_INTERVAL)
        token = acquire_lock(lock_key, timeout=timeout)

    try:
        yield
    finally:
        if not release_lock(lock_key, token):
            logger.warning(f"Lock for subscription {subscription_id} expired before it was released")


def ping() -> bool:
    """Check the Redis connection"""
    return bool(get_redis_client().ping())
