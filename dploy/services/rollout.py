from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from dploy.cancel import CancelToken
from dploy.errors import NoIncumbentRouteError, OrchestratorError
from dploy.logger import get_logger
from dploy.metrics import record_rollout
from dploy.schemas.backplane import QueryResponse, Route
from dploy.services.orchestrator import ServiceOrchestrator, build_service_spec
from dploy.services.readiness import await_ready
from dploy.services.shaper import RolloutPlan, ShapeStep, TrafficShaper, default_plan

_logger = get_logger("services.rollout")


class RoutingPlane(Protocol):
    async def query(self) -> QueryResponse: ...

    async def create_route(self, pattern: str, labels: Mapping[str, str]) -> Route: ...

    async def set_weights(self, pattern: str, weights: Mapping[str, int]) -> None: ...

    async def issue_token(self) -> str: ...


class RolloutState(str, Enum):
    INIT = "init"
    SERVICE_PROVISIONING = "service_provisioning"
    ROUTE_PROVISIONING = "route_provisioning"
    AWAITING_READINESS = "awaiting_readiness"
    SHAPING = "shaping"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class RolloutRequest:
    service: str
    version: str
    endpoint: str
    image: str = ""
    replicas: int = 1
    route_id: str = ""
    create_service: bool = True
    plan: RolloutPlan = field(default_factory=default_plan)
    poll_seconds: float = 1.0
    # 0 waits for readiness without a deadline.
    readiness_timeout_seconds: float = 0.0

    def route_labels(self) -> dict[str, str]:
        return {"service": self.service, "endpoint": self.endpoint, "version": self.version}


@dataclass
class RolloutReport:
    """What an operator needs to pick up after the rollout stops."""

    state: RolloutState = RolloutState.INIT
    service_id: str = ""
    route_id: str = ""
    incumbent_route_id: str = ""
    last_applied: Optional[ShapeStep] = None
    failed_in: Optional[RolloutState] = None
    error_type: str = ""
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "service_id": self.service_id,
            "route_id": self.route_id,
            "incumbent_route_id": self.incumbent_route_id,
            "last_applied": self.last_applied.as_dict() if self.last_applied else None,
            "failed_in": self.failed_in.value if self.failed_in else None,
            "error_type": self.error_type,
            "error": self.error,
        }


def find_incumbent(snapshot: QueryResponse, pattern: str) -> Route:
    endpoint = snapshot.endpoint(pattern)
    incumbent = endpoint.incumbent() if endpoint is not None else None
    if incumbent is None or not incumbent.id:
        raise NoIncumbentRouteError(pattern)
    return incumbent


class RolloutController:
    """Drives one rollout from service creation to full traffic cutover.

    The first error stops everything and is re-raised once the report has
    been moved to FAILED. Nothing already done is undone: the report keeps
    the last weight pair that was applied so it can be restored by hand.
    """

    def __init__(
        self,
        client: RoutingPlane,
        orchestrator: Optional[ServiceOrchestrator] = None,
        *,
        cancel: CancelToken,
    ) -> None:
        self._client = client
        self._orchestrator = orchestrator
        self._cancel = cancel
        self._shaper = TrafficShaper(client)
        self.report = RolloutReport()

    @property
    def state(self) -> RolloutState:
        return self.report.state

    def _enter(self, state: RolloutState, **fields: Any) -> None:
        _logger.info(
            "rollout.state",
            f"{self.report.state.value} -> {state.value}",
            **fields,
        )
        self.report.state = state

    async def run(self, req: RolloutRequest) -> RolloutReport:
        with _logger.context(service=req.service, version=req.version, endpoint=req.endpoint):
            try:
                async with _logger.operation(
                    "rollout.run", "Starting rollout", replicas=req.replicas
                ):
                    await self._run(req)
            except (Exception, asyncio.CancelledError) as exc:
                self.report.failed_in = self.report.state
                self.report.error_type = type(exc).__name__
                self.report.error = str(exc)
                self.report.last_applied = self._shaper.last_applied
                self._enter(RolloutState.FAILED, error_type=self.report.error_type)
                record_rollout(state=RolloutState.FAILED.value)
                raise
        record_rollout(state=RolloutState.COMPLETE.value)
        return self.report

    async def _run(self, req: RolloutRequest) -> None:
        # Reject a bad plan before touching anything remote.
        req.plan.validate()

        if req.create_service:
            self._enter(RolloutState.SERVICE_PROVISIONING)
            self._cancel.check()
            self.report.service_id = await self._provision_service(req)
        else:
            _logger.info("rollout.service.skip", "Skipping service creation")

        if req.route_id:
            self.report.route_id = req.route_id
            _logger.info("rollout.route.skip", "Skipping route creation", route_id=req.route_id)
        else:
            self._enter(RolloutState.ROUTE_PROVISIONING)
            self._cancel.check()
            route = await self._client.create_route(req.endpoint, req.route_labels())
            self.report.route_id = route.id

        self._enter(RolloutState.AWAITING_READINESS, route_id=self.report.route_id)
        await await_ready(
            self._client,
            req.endpoint,
            self.report.route_id,
            req.replicas,
            cancel=self._cancel.with_timeout(req.readiness_timeout_seconds),
            poll_seconds=req.poll_seconds,
        )
        _logger.info(
            "rollout.ready",
            f"Service {req.service} at version {req.version} is ready for traffic",
        )

        self._enter(RolloutState.SHAPING)
        self._cancel.check()
        incumbent = find_incumbent(await self._client.query(), req.endpoint)
        self.report.incumbent_route_id = incumbent.id
        await self._shaper.run(
            req.endpoint,
            incumbent.id,
            self.report.route_id,
            req.plan,
            cancel=self._cancel,
        )
        self.report.last_applied = self._shaper.last_applied
        self._enter(RolloutState.COMPLETE, route_id=self.report.route_id)

    async def _provision_service(self, req: RolloutRequest) -> str:
        if self._orchestrator is None:
            raise OrchestratorError("service.create", "no orchestrator configured")
        token = await self._client.issue_token()
        spec = build_service_spec(
            service=req.service,
            version=req.version,
            endpoint=req.endpoint,
            image=req.image,
            replicas=req.replicas,
            token=token,
        )
        return await self._orchestrator.create_replicated_service(
            spec.name,
            spec.image,
            spec.replicas,
            spec.env,
            spec.labels,
        )
