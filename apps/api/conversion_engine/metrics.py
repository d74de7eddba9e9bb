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

conversion_executions_total = Counter(
    "conversion_executions_total",
    "Total conversion executions by trigger and outcome",
    ["trigger", "outcome"],
)

conversion_execution_duration_seconds = Histogram(
    "conversion_execution_duration_seconds",
    "Conversion execution duration in seconds",
    ["trigger"],
)

conversion_skipped_fields_total = Counter(
    "conversion_skipped_fields_total",
    "Total mapped fields skipped during conversion",
    ["kind"],
)

trigger_diagnostics_total = Counter(
    "trigger_diagnostics_total",
    "Total trigger evaluation diagnostics by reason",
    ["reason"],
)

schema_cache_hits_total = Counter(
    "schema_cache_hits_total",
    "Composed schema cache hits",
)

schema_cache_misses_total = Counter(
    "schema_cache_misses_total",
    "Composed schema cache misses",
)

event_emit_failures_total = Counter(
    "event_emit_failures_total",
    "Outbound event sink failures",
    ["sink"],
)

conversion_history_write_failures_total = Counter(
    "conversion_history_write_failures_total",
    "Execution history writes that failed after the conversion ran",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_conversion(trigger: str, success: bool, duration: float) -> None:
    outcome = "persisted" if success else "failed"
    conversion_executions_total.labels(trigger=trigger, outcome=outcome).inc()
    conversion_execution_duration_seconds.labels(trigger=trigger).observe(duration)


def observe_skipped_fields(kind: str, count: int) -> None:
    if count > 0:
        conversion_skipped_fields_total.labels(kind=kind).inc(count)


def observe_trigger_diagnostic(reason: str) -> None:
    trigger_diagnostics_total.labels(reason=reason).inc()


def observe_schema_cache_hit() -> None:
    schema_cache_hits_total.inc()


def observe_schema_cache_miss() -> None:
    schema_cache_misses_total.inc()


def observe_event_emit_failure(sink: str) -> None:
    event_emit_failures_total.labels(sink=sink).inc()


def observe_history_write_failure() -> None:
    conversion_history_write_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
