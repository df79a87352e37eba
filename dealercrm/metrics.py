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

scope_resolutions_total = Counter(
    "crm_scope_resolutions_total",
    "Accessible-id resolutions by outcome",
    ["outcome"],
)

access_denied_total = Counter(
    "crm_access_denied_total",
    "Operations rejected by the access gateway",
    ["resource", "action"],
)

lead_assignments_total = Counter(
    "crm_lead_assignments_total",
    "Automatic lead assignments by strategy and outcome",
    ["strategy", "outcome"],
)


_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    route_path = getattr(route, "path", None) if route is not None else None
    if isinstance(route_path, str) and route_path:
        return _PATH_PARAM_RE.sub("{id}", route_path)
    return _INT_RE.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_scope_resolution(outcome: str) -> None:
    scope_resolutions_total.labels(outcome=outcome).inc()


def observe_access_denied(resource: str, action: str) -> None:
    access_denied_total.labels(resource=resource, action=action).inc()


def observe_assignment(strategy: str, outcome: str) -> None:
    lead_assignments_total.labels(strategy=strategy, outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
