from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_rpc_calls_total = Counter(
    "crm_rpc_calls_total",
    "Total RPC procedure calls by outcome",
    ["procedure", "outcome"],
)

crm_notifications_created_total = Counter(
    "crm_notifications_created_total",
    "In-app notification rows inserted by fan-out",
    ["notification_type"],
)

crm_outbound_notifications_total = Counter(
    "crm_outbound_notifications_total",
    "Outbound owner notifications by outcome",
    ["notification_type", "outcome"],
)

crm_exports_total = Counter(
    "crm_exports_total",
    "Generated exports by entity and format",
    ["entity", "format"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path == "/api/rpc/{procedure}":
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    return _INT_RE.sub("/{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_rpc_call(procedure: str, outcome: str) -> None:
    crm_rpc_calls_total.labels(procedure=procedure, outcome=outcome).inc()


def observe_notifications_created(notification_type: str, count: int) -> None:
    if count > 0:
        crm_notifications_created_total.labels(notification_type=notification_type).inc(count)


def observe_outbound_notification(notification_type: str, outcome: str) -> None:
    crm_outbound_notifications_total.labels(notification_type=notification_type, outcome=outcome).inc()


def observe_export(entity: str, export_format: str) -> None:
    crm_exports_total.labels(entity=entity, format=export_format).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
