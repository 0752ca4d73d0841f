from __future__ import annotations

import os

from prometheus_client import CollectorRegistry, Counter, Histogram, write_to_textfile

REGISTRY = CollectorRegistry()

_BACKPLANE_REQUESTS = Counter(
    "dploy_backplane_requests_total",
    "Total routing-plane API requests",
    labelnames=("action", "result"),
    registry=REGISTRY,
)
_BACKPLANE_LATENCY = Histogram(
    "dploy_backplane_request_duration_seconds",
    "Routing-plane API request latency seconds",
    labelnames=("action",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
    registry=REGISTRY,
)
_READINESS_POLLS = Counter(
    "dploy_readiness_polls_total",
    "Readiness poll ticks",
    labelnames=("result",),
    registry=REGISTRY,
)
_SHAPE_STEPS = Counter(
    "dploy_shape_steps_total",
    "Traffic shaping steps applied",
    labelnames=("result",),
    registry=REGISTRY,
)
_ORCHESTRATOR_OPS = Counter(
    "dploy_orchestrator_operations_total",
    "Container orchestrator operations",
    labelnames=("action", "result"),
    registry=REGISTRY,
)
_ROLLOUTS = Counter(
    "dploy_rollouts_total",
    "Finished rollouts by terminal state",
    labelnames=("result",),
    registry=REGISTRY,
)


def _result(ok: bool) -> str:
    return "ok" if ok else "error"


def observe_backplane_request(*, action: str, ok: bool, duration_seconds: float) -> None:
    _BACKPLANE_REQUESTS.labels(action=action, result=_result(ok)).inc()
    _BACKPLANE_LATENCY.labels(action=action).observe(duration_seconds)


def record_readiness_poll(*, ready: bool) -> None:
    _READINESS_POLLS.labels(result="ready" if ready else "pending").inc()


def record_shape_step(*, ok: bool) -> None:
    _SHAPE_STEPS.labels(result=_result(ok)).inc()


def record_orchestrator_operation(*, action: str, ok: bool) -> None:
    _ORCHESTRATOR_OPS.labels(action=action, result=_result(ok)).inc()


def record_rollout(*, state: str) -> None:
    _ROLLOUTS.labels(result=state).inc()


def write_metrics(path: str) -> None:
    """Dump the registry for the node-exporter textfile collector."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    write_to_textfile(path, REGISTRY)
