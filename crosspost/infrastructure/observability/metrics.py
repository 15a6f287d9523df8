from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
PUBLISH_ATTEMPTS_TOTAL = Counter(
    "publish_attempts_total",
    "External publish calls executed by the dispatcher",
    labelnames=("platform",),
)
PUBLISH_FAILURES_TOTAL = Counter(
    "publish_failures_total",
    "External publish calls that returned a failure",
    labelnames=("platform",),
)
SCHEDULED_JOBS_CHECKED_TOTAL = Counter(
    "scheduled_jobs_checked_total",
    "Due queue entries scanned by the dispatcher",
)
TOKEN_REFRESH_FAILURES_TOTAL = Counter(
    "token_refresh_failures_total",
    "Failed connected account token refreshes",
    labelnames=("platform",),
)
OAUTH_CALLBACKS_TOTAL = Counter(
    "oauth_callbacks_total",
    "OAuth callbacks handled, by outcome",
    labelnames=("outcome",),
)

# Worker processes cannot be scraped, so their counters are accumulated in
# Redis hashes (one field per platform) and replayed into this process on
# each /metrics request.
BACKGROUND_COUNTERS = {
    "publish_attempts_total": PUBLISH_ATTEMPTS_TOTAL,
    "publish_failures_total": PUBLISH_FAILURES_TOTAL,
    "scheduled_jobs_checked_total": SCHEDULED_JOBS_CHECKED_TOTAL,
}
UNLABELED_FIELD = "_"
_last_background_counter_values: dict[tuple[str, str], float] = {}


def background_counter_key(metric_name: str) -> str:
    return f"metrics:{metric_name}"


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def increment_background_counter(metric_name: str, amount: int = 1, *, platform: str | None = None) -> None:
    if metric_name not in BACKGROUND_COUNTERS or amount <= 0:
        return
    try:
        from crosspost.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_incr"):
            redis_client.hincrby(background_counter_key(metric_name), platform or UNLABELED_FIELD, amount)
    except Exception:
        # Worker counters are best effort; dispatch must not fail on a metrics write.
        return


def _sync_background_counters_from_redis() -> None:
    try:
        from crosspost.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_sync"):
            snapshot = {
                metric_name: redis_client.hgetall(background_counter_key(metric_name))
                for metric_name in BACKGROUND_COUNTERS
            }
    except Exception:
        return

    for metric_name, fields in snapshot.items():
        collector = BACKGROUND_COUNTERS[metric_name]
        for field, raw_value in (fields or {}).items():
            label = field.decode("utf-8") if isinstance(field, bytes) else str(field)
            current_value = float(raw_value or 0.0)
            last_value = _last_background_counter_values.get((metric_name, label), 0.0)
            delta = current_value - last_value
            if delta > 0:
                target = collector if label == UNLABELED_FIELD else collector.labels(platform=label)
                target.inc(delta)
            _last_background_counter_values[(metric_name, label)] = current_value


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    _sync_background_counters_from_redis()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
