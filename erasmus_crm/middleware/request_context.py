from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from erasmus_crm.context import correlation_scope
from erasmus_crm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("erasmus_crm.request")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the request and records one log line plus metrics per call."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        method = request.method
        started = time.perf_counter()
        with correlation_scope(correlation_id):
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = round((time.perf_counter() - started) * 1000, 2)
                path = resolve_http_path_label(request)
                observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
                logger.error(
                    "http.error",
                    exc_info=True,
                    extra={"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
                )
                raise

            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
            logger.info(
                "http.request",
                extra={
                    "method": method,
                    "path": path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                },
            )
            response.headers["x-correlation-id"] = correlation_id
            return response
