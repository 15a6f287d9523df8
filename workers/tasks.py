import logging
from datetime import UTC, datetime
from time import perf_counter

from crosspost.application.services.dispatch_service import run_dispatch_tick
from crosspost.core.config import settings
from crosspost.infrastructure.cache.redis_client import get_redis_client
from crosspost.infrastructure.db.session import SessionLocal
from crosspost.infrastructure.observability.metrics import measure_redis
from crosspost.integrations.oauth_state import cleanup_expired_states
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="workers.tasks.ping")
def ping() -> str:
    return "pong"


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(name="workers.tasks.dispatch_due_entries")
def dispatch_due_entries() -> dict:
    started_at = perf_counter()
    tick = run_dispatch_tick(session_factory=SessionLocal)
    duration_ms = int((perf_counter() - started_at) * 1000)
    logger.info(
        "dispatcher_run completed claimed=%s completed=%s failed=%s skipped=%s errored=%s duration_ms=%s",
        tick.claimed,
        tick.completed,
        tick.failed,
        tick.skipped,
        tick.errored,
        duration_ms,
    )
    return {
        "claimed": tick.claimed,
        "completed": tick.completed,
        "failed": tick.failed,
        "skipped": tick.skipped,
        "errored": tick.errored,
        "abandoned": tick.abandoned,
        "posts_aggregated": tick.posts_aggregated,
        "duration_ms": duration_ms,
    }


@celery_app.task(name="workers.tasks.cleanup_expired_oauth_states")
def cleanup_expired_oauth_states() -> dict:
    with SessionLocal() as db:
        removed = cleanup_expired_states(db)
    return {"removed": removed}
