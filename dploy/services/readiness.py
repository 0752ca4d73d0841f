from __future__ import annotations

from typing import Protocol

from dploy.cancel import CancelToken
from dploy.logger import get_logger
from dploy.metrics import record_readiness_poll
from dploy.schemas.backplane import QueryResponse

_logger = get_logger("services.readiness")


class TopologySource(Protocol):
    async def query(self) -> QueryResponse: ...


def bound_backends(snapshot: QueryResponse, pattern: str, route_id: str) -> int:
    """Distinct backends bound to ``route_id`` under ``pattern``; 0 when either is missing."""
    endpoint = snapshot.endpoint(pattern)
    if endpoint is None:
        return 0
    route = endpoint.route(route_id)
    if route is None:
        return 0
    return route.bound_count


async def await_ready(
    client: TopologySource,
    pattern: str,
    route_id: str,
    desired_count: int,
    *,
    cancel: CancelToken,
    poll_seconds: float = 1.0,
) -> int:
    """Block until ``route_id`` has at least ``desired_count`` bound backends.

    Polls once per ``poll_seconds``. Query failures propagate straight away.
    The wait is bounded only by ``cancel``: pass a token with a timeout to
    put a ceiling on it.
    """
    polls = 0
    async with _logger.operation(
        "readiness.wait",
        "Waiting for backends to bind to route",
        pattern=pattern,
        route_id=route_id,
        desired=desired_count,
    ) as op:
        last_seen = -1
        while True:
            cancel.check()
            snapshot = await client.query()
            polls += 1
            bound = bound_backends(snapshot, pattern, route_id)
            ready = bound >= desired_count
            record_readiness_poll(ready=ready)
            if ready:
                op.step("readiness.ready", "Route has enough backends", bound=bound, polls=polls)
                return polls
            if bound != last_seen:
                op.step("readiness.pending", "Route not ready yet", bound=bound)
                last_seen = bound
            await cancel.sleep(poll_seconds)
