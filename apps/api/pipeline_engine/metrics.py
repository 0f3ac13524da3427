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

pipeline_transitions_total = Counter(
    "pipeline_transitions_total",
    "Total pipeline transitions by outcome",
    ["outcome"],
)

pipeline_transition_duration_seconds = Histogram(
    "pipeline_transition_duration_seconds",
    "Pipeline transition duration in seconds",
)

pipeline_action_failures_total = Counter(
    "pipeline_action_failures_total",
    "Total action failures by action type and handling",
    ["action_type", "handling"],
)

pipeline_auto_transition_blocks_total = Counter(
    "pipeline_auto_transition_blocks_total",
    "Total auto transitions blocked by the depth guardrail",
)

sla_breaches_total = Counter(
    "sla_breaches_total",
    "Total SLA clocks marked breached",
)

sla_sweep_duration_seconds = Histogram(
    "sla_sweep_duration_seconds",
    "SLA sweep duration in seconds",
)

sla_sweep_failures_total = Counter(
    "sla_sweep_failures_total",
    "Total per-item SLA sweep failures by kind",
    ["kind"],
)

escalations_total = Counter(
    "escalations_total",
    "Total escalations by target resolution",
    ["resolved"],
)

webhook_attempts_total = Counter(
    "webhook_attempts_total",
    "Total webhook delivery attempts by outcome",
    ["outcome"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Total webhook event/endpoint deliveries by terminal status",
    ["status"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_transition(outcome: str, duration: float) -> None:
    pipeline_transitions_total.labels(outcome=outcome).inc()
    pipeline_transition_duration_seconds.observe(duration)


def observe_action_failure(action_type: str, handling: str) -> None:
    pipeline_action_failures_total.labels(action_type=action_type, handling=handling).inc()


def observe_auto_transition_block() -> None:
    pipeline_auto_transition_blocks_total.inc()


def observe_sla_breach(count: int = 1) -> None:
    if count > 0:
        sla_breaches_total.inc(count)


def observe_sla_sweep(duration: float) -> None:
    sla_sweep_duration_seconds.observe(duration)


def observe_sla_sweep_failure(kind: str) -> None:
    sla_sweep_failures_total.labels(kind=kind).inc()


def observe_escalation(resolved: bool) -> None:
    escalations_total.labels(resolved="true" if resolved else "false").inc()


def observe_webhook_attempt(outcome: str) -> None:
    webhook_attempts_total.labels(outcome=outcome).inc()


def observe_webhook_delivery(status: str) -> None:
    webhook_deliveries_total.labels(status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
