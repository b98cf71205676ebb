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

crm_lifecycle_transitions_total = Counter(
    "crm_lifecycle_transitions_total",
    "Lead status and deal stage transitions by target state",
    ["entity", "state"],
)

crm_duplicate_checks_total = Counter(
    "crm_duplicate_checks_total",
    "Duplicate lead checks by result",
    ["result"],
)

crm_secondary_write_failures_total = Counter(
    "crm_secondary_write_failures_total",
    "Cross-entity writes that failed after the primary write committed",
    ["operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


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
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(entity: str, state: str) -> None:
    crm_lifecycle_transitions_total.labels(entity=entity, state=state).inc()


def observe_duplicate_check(is_duplicate: bool) -> None:
    crm_duplicate_checks_total.labels(result="duplicate" if is_duplicate else "clear").inc()


def observe_secondary_write_failure(operation: str) -> None:
    crm_secondary_write_failures_total.labels(operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
