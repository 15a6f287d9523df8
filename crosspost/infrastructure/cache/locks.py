import logging
from uuid import uuid4

from redis import Redis

from crosspost.infrastructure.observability.metrics import measure_redis

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def acquire_lock(redis_client: Redis, *, key: str, ttl_seconds: int) -> str | None:
    token = str(uuid4())
    with measure_redis("lock_acquire"):
        acquired = redis_client.set(key, token, nx=True, ex=ttl_seconds)
    if not acquired:
        return None
    return token


def release_lock(redis_client: Redis, *, key: str, token: str) -> None:
    # Token-checked delete so an expired holder cannot drop a newer holder's lock.
    try:
        with measure_redis("lock_release"):
            redis_client.eval(_RELEASE_SCRIPT, 1, key, token)
    except Exception:
        logger.exception("lock_release_failed key=%s", key)


def account_refresh_lock_key(account_id) -> str:
    return f"lock:account_refresh:{account_id}"
