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

sales_lead_transitions_total = Counter(
    "sales_lead_transitions_total",
    "Lead stage transitions by edge and outcome",
    ["from_stage", "to_stage", "outcome"],
)

sales_lead_transition_duration_seconds = Histogram(
    "sales_lead_transition_duration_seconds",
    "Lead stage transition duration in seconds",
    ["to_stage"],
)

project_creation_attempts_total = Counter(
    "project_creation_attempts_total",
    "Project creation attempts by outcome",
    ["outcome"],
)

provisioning_saga_total = Counter(
    "provisioning_saga_total",
    "Won-transition provisioning runs by terminal saga state",
    ["state"],
)

provisioning_side_channel_failures_total = Counter(
    "provisioning_side_channel_failures_total",
    "Best-effort provisioning steps that failed without aborting",
    ["step"],
)

quotation_rows_materialized_total = Counter(
    "quotation_rows_materialized_total",
    "Quotation hierarchy rows written by the materializer",
    ["source", "kind"],
)

quotation_rows_skipped_total = Counter(
    "quotation_rows_skipped_total",
    "Quotation hierarchy rows the materializer could not write",
    ["source", "kind"],
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
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return value
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_lead_transition(from_stage: str, to_stage: str, outcome: str, duration: float | None = None) -> None:
    sales_lead_transitions_total.labels(from_stage=from_stage, to_stage=to_stage, outcome=outcome).inc()
    if duration is not None:
        sales_lead_transition_duration_seconds.labels(to_stage=to_stage).observe(duration)


def observe_project_creation_attempt(outcome: str) -> None:
    project_creation_attempts_total.labels(outcome=outcome).inc()


def observe_saga_outcome(state: str) -> None:
    provisioning_saga_total.labels(state=state).inc()


def observe_side_channel_failure(step: str) -> None:
    provisioning_side_channel_failures_total.labels(step=step).inc()


def observe_materialized_rows(source: str, kind: str, count: int) -> None:
    if count > 0:
        quotation_rows_materialized_total.labels(source=source, kind=kind).inc(count)


def observe_materialization_skip(source: str, kind: str) -> None:
    quotation_rows_skipped_total.labels(source=source, kind=kind).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
