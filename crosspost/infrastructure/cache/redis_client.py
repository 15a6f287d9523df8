from redis import Redis

from crosspost.core.config import settings


def get_redis_client() -> Redis:
    return Redis.from_url(settings.cache_redis_url, decode_responses=True)


def get_redis() -> Redis:
    """FastAPI dependency wrapper so tests can override the client."""
    return get_redis_client()
