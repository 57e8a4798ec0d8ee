"""Prometheus metrics for the action ledger.

Metrics goals:
- low-cardinality labels (no event ids, app ids or payload fields)
- visibility into appends, conflicts, decisions, approvals, checkpoints,
  anchoring backlog and exports
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "ledger_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "ledger_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
APPENDS_TOTAL = Counter(
    "ledger_appends_total",
    "Event append attempts",
    ["outcome"],
)
DECISIONS_TOTAL = Counter(
    "ledger_policy_decisions_total",
    "Policy gate decisions",
    ["result", "source"],
)
APPROVALS_TOTAL = Counter(
    "ledger_approvals_resolved_total",
    "Approval requests reaching a terminal state",
    ["state"],
)
APPROVALS_PENDING = Gauge(
    "ledger_approvals_pending",
    "Approval requests currently waiting for a human",
)
CHECKPOINTS_TOTAL = Counter(
    "ledger_checkpoints_total",
    "Checkpoints persisted",
    ["anchored"],
)
UNANCHORED_CHECKPOINTS = Gauge(
    "ledger_unanchored_checkpoints",
    "Checkpoints persisted but not yet anchored",
)
EXPORTS_TOTAL = Counter(
    "ledger_exports_total",
    "Evidence export attempts",
    ["outcome"],
)
INTEGRITY_VIOLATIONS_TOTAL = Counter(
    "ledger_integrity_violations_total",
    "Hash chain, Merkle or manifest mismatches detected",
    ["where"],
)
EVALUATOR_FAILURES_TOTAL = Counter(
    "ledger_policy_evaluator_failures_total",
    "Policy evaluator calls that failed and fell back to the fail-safe decision",
)
ANCHOR_FAILURES_TOTAL = Counter(
    "ledger_anchor_failures_total",
    "Timestamp authority calls that failed",
)
LOCKDOWN_ACTIVE = Gauge(
    "ledger_storage_lockdown_active",
    "1 if storage is in lockdown / fail-closed mode",
)


def record_append(outcome: str) -> None:
    APPENDS_TOTAL.labels(outcome=str(outcome)).inc()


def record_decision(result: str, source: str) -> None:
    DECISIONS_TOTAL.labels(result=str(result), source=str(source)).inc()


def record_approval_resolved(state: str) -> None:
    APPROVALS_TOTAL.labels(state=str(state)).inc()


def set_pending_approvals(count: int) -> None:
    APPROVALS_PENDING.set(float(count))


def record_checkpoint(anchored: bool) -> None:
    CHECKPOINTS_TOTAL.labels(anchored="true" if anchored else "false").inc()


def set_unanchored_checkpoints(count: int) -> None:
    UNANCHORED_CHECKPOINTS.set(float(count))


def record_export(outcome: str) -> None:
    EXPORTS_TOTAL.labels(outcome=str(outcome)).inc()


def record_integrity_violation(where: str) -> None:
    INTEGRITY_VIOLATIONS_TOTAL.labels(where=str(where)).inc()


def record_evaluator_failure() -> None:
    EVALUATOR_FAILURES_TOTAL.inc()


def record_anchor_failure() -> None:
    ANCHOR_FAILURES_TOTAL.inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("LEDGER_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
