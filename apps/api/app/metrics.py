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

territory_assignments_total = Counter(
    "territory_assignments_total",
    "Territory assignment writes by entity type and mode",
    ["entity_type", "mode"],
)

territory_unassignments_total = Counter(
    "territory_unassignments_total",
    "Territory assignment removals by entity type",
    ["entity_type"],
)

territory_auto_assign_runs_total = Counter(
    "territory_auto_assign_runs_total",
    "Batch auto-assign runs by entity type and status",
    ["entity_type", "status"],
)

territory_auto_assign_duration_seconds = Histogram(
    "territory_auto_assign_duration_seconds",
    "Batch auto-assign duration in seconds",
    ["entity_type"],
)

territory_counter_recomputes_total = Counter(
    "territory_counter_recomputes_total",
    "Territory counter recomputations by status",
    ["status"],
)

territory_stale_references_total = Counter(
    "territory_stale_references_total",
    "Assignments pointing at entities that no longer exist",
    ["entity_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            template = getattr(route, attribute, None)
            if isinstance(template, str) and template:
                return _PATH_PARAM_RE.sub("{id}", template)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_assignment(entity_type: str, auto_assigned: bool) -> None:
    territory_assignments_total.labels(entity_type=entity_type, mode="auto" if auto_assigned else "manual").inc()


def observe_unassignment(entity_type: str) -> None:
    territory_unassignments_total.labels(entity_type=entity_type).inc()


def observe_auto_assign_run(entity_type: str, status: str, duration: float) -> None:
    territory_auto_assign_runs_total.labels(entity_type=entity_type, status=status).inc()
    territory_auto_assign_duration_seconds.labels(entity_type=entity_type).observe(duration)


def observe_counter_recompute(status: str) -> None:
    territory_counter_recomputes_total.labels(status=status).inc()


def observe_stale_reference(entity_type: str, count: int = 1) -> None:
    if count > 0:
        territory_stale_references_total.labels(entity_type=entity_type).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
