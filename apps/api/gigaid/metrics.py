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

nba_stalls_detected_total = Counter(
    "nba_stalls_detected_total",
    "Stall candidates detected by entity and stall type",
    ["entity_type", "stall_type"],
)

nba_actions_created_total = Counter(
    "nba_actions_created_total",
    "Next actions created by recommended action",
    ["action_type"],
)

nba_actions_expired_total = Counter(
    "nba_actions_expired_total",
    "Next actions flagged as expired",
)

nba_auto_executions_total = Counter(
    "nba_auto_executions_total",
    "Autonomous execution attempts by outcome",
    ["action_type", "outcome"],
)

nba_guardrail_blocks_total = Counter(
    "nba_guardrail_blocks_total",
    "Autonomous execution guardrail blocks by reason",
    ["reason"],
)

nba_sweep_user_failures_total = Counter(
    "nba_sweep_user_failures_total",
    "Users skipped because processing failed",
    ["sweep"],
)

nba_sweep_duration_seconds = Histogram(
    "nba_sweep_duration_seconds",
    "Engine sweep duration in seconds",
    ["sweep"],
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
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stall_detected(entity_type: str, stall_type: str) -> None:
    nba_stalls_detected_total.labels(entity_type=entity_type, stall_type=stall_type).inc()


def observe_action_created(action_type: str) -> None:
    nba_actions_created_total.labels(action_type=action_type).inc()


def observe_actions_expired(count: int) -> None:
    if count > 0:
        nba_actions_expired_total.inc(count)


def observe_auto_execution(action_type: str, outcome: str) -> None:
    nba_auto_executions_total.labels(action_type=action_type, outcome=outcome).inc()


def observe_guardrail_block(reason: str) -> None:
    nba_guardrail_blocks_total.labels(reason=reason).inc()


def observe_sweep(sweep: str, duration: float, users_failed: int) -> None:
    nba_sweep_duration_seconds.labels(sweep=sweep).observe(duration)
    if users_failed > 0:
        nba_sweep_user_failures_total.labels(sweep=sweep).inc(users_failed)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
