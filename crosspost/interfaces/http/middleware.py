import logging
from time import perf_counter
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from crosspost.infrastructure.logging.context import reset_request_id, reset_user_id, set_request_id, set_user_id
from crosspost.infrastructure.observability.metrics import record_request

logger = logging.getLogger("crosspost")

UNTRACKED_PATHS = {"/metrics", "/health"}
SLOW_REQUEST_SECONDS = 2.0


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request and user log context and record request metrics.

    Metrics are labelled with the route template (``/posts/{post_id}``) so
    ids do not explode label cardinality.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id
        request_token = set_request_id(request_id)
        user_token = set_user_id(None)
        started_at = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            duration = perf_counter() - started_at
            if request.url.path not in UNTRACKED_PATHS:
                route = request.scope.get("route")
                path = getattr(route, "path", request.url.path)
                record_request(method=request.method, path=path, status_code=status_code, duration_seconds=duration)
                if duration >= SLOW_REQUEST_SECONDS:
                    logger.warning(
                        "slow_request method=%s path=%s status=%s duration_ms=%s",
                        request.method,
                        path,
                        status_code,
                        int(duration * 1000),
                    )
            reset_user_id(user_token)
            reset_request_id(request_token)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.path.startswith("/oauth/"):
            # Callback and start URLs carry codes and state; keep them out of caches.
            response.headers["Cache-Control"] = "no-store"
        return response
