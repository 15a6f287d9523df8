from datetime import UTC, datetime
from time import perf_counter

from fastapi import APIRouter, Depends, Response, status
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.infrastructure.cache.redis_client import get_redis
from crosspost.infrastructure.db.session import get_db
from crosspost.infrastructure.observability.metrics import measure_redis, metrics_response
from crosspost.integrations.platform_clients import list_bound_platforms

router = APIRouter()


def _dispatch_backlog(db: Session) -> dict:
    """Pending entries already due; a growing count means the dispatcher is behind or down."""
    now = datetime.now(UTC)
    due_pending, oldest_due = db.execute(
        select(func.count(QueueEntry.id), func.min(QueueEntry.scheduled_for)).where(
            QueueEntry.status == QueueEntryStatus.PENDING.value,
            QueueEntry.scheduled_for <= now,
        )
    ).one()
    if oldest_due is not None and oldest_due.tzinfo is None:
        oldest_due = oldest_due.replace(tzinfo=UTC)
    return {
        "due_pending": int(due_pending or 0),
        "oldest_due_at": oldest_due.isoformat() if oldest_due else None,
    }


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check(
    response: Response,
    db: Session = Depends(get_db),
    redis_client: Redis = Depends(get_redis),
) -> dict:
    db_status = "up"
    redis_status = "up"
    db_latency_ms: float | None = None
    worker_alive = False
    backlog: dict | None = None

    try:
        db_started_at = perf_counter()
        db.execute(text("SELECT 1"))
        db_latency_ms = round((perf_counter() - db_started_at) * 1000, 2)
        backlog = _dispatch_backlog(db)
    except SQLAlchemyError:
        db.rollback()
        db_status = "down"

    try:
        with measure_redis("health_ping"):
            redis_client.ping()
        with measure_redis("health_worker_heartbeat_check"):
            worker_alive = bool(redis_client.exists(settings.worker_heartbeat_key))
    except RedisError:
        redis_status = "down"

    healthy = db_status == "up" and redis_status == "up" and worker_alive
    if db_status != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {
        "status": "ok" if healthy else "degraded",
        "services": {
            "api": "up",
            "database": db_status,
            "redis": redis_status,
            "worker_alive": worker_alive,
            "db_latency_ms": db_latency_ms,
        },
        "dispatcher": backlog,
        "platform_clients": list_bound_platforms(),
    }


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()
