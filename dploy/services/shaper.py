from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

from dploy.cancel import CancelToken
from dploy.errors import InvalidPlanError
from dploy.logger import get_logger
from dploy.metrics import record_shape_step

_logger = get_logger("services.shaper")

FULL_WEIGHT = 100


class WeightSetter(Protocol):
    async def set_weights(self, pattern: str, weights: Mapping[str, int]) -> None: ...


@dataclass(frozen=True)
class ShapeStep:
    old: int
    new: int

    def as_dict(self) -> dict[str, int]:
        return {"old": self.old, "new": self.new}


@dataclass(frozen=True)
class RolloutPlan:
    steps: tuple[ShapeStep, ...]
    pause_seconds: float = 30.0

    def validate(self) -> None:
        if not self.steps:
            raise InvalidPlanError("plan has no steps")
        if not math.isfinite(self.pause_seconds):
            raise InvalidPlanError("pause between steps must be finite")
        if self.pause_seconds < 0:
            raise InvalidPlanError("pause between steps must not be negative")
        for index, step in enumerate(self.steps, start=1):
            for weight in (step.old, step.new):
                if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
                    raise InvalidPlanError(f"step {index}: weights must be non-negative integers")
            if step.old + step.new != FULL_WEIGHT:
                raise InvalidPlanError(
                    f"step {index}: weights {step.old}/{step.new} sum to "
                    f"{step.old + step.new}, expected {FULL_WEIGHT}"
                )
        if self.steps[-1] != ShapeStep(0, FULL_WEIGHT):
            raise InvalidPlanError("final step must be a full cutover (0/100)")


def default_plan(pause_seconds: float = 30.0) -> RolloutPlan:
    return RolloutPlan(
        steps=(ShapeStep(75, 25), ShapeStep(50, 50), ShapeStep(25, 75), ShapeStep(0, 100)),
        pause_seconds=pause_seconds,
    )


def plan_from_percentages(percentages: list[int], pause_seconds: float = 30.0) -> RolloutPlan:
    """Build a plan from the new route's share at each step, e.g. ``[10, 50, 100]``."""
    steps = tuple(ShapeStep(FULL_WEIGHT - pct, pct) for pct in percentages)
    plan = RolloutPlan(steps=steps, pause_seconds=pause_seconds)
    plan.validate()
    return plan


@dataclass
class TrafficShaper:
    client: WeightSetter
    last_applied: Optional[ShapeStep] = None
    applied: list[ShapeStep] = field(default_factory=list)

    async def run(
        self,
        pattern: str,
        old_route_id: str,
        new_route_id: str,
        plan: RolloutPlan,
        *,
        cancel: CancelToken,
    ) -> ShapeStep:
        plan.validate()
        if old_route_id == new_route_id:
            raise InvalidPlanError(f"old and new route are the same ({old_route_id})")

        total = len(plan.steps)
        async with _logger.operation(
            "shape.run",
            "Shaping traffic between routes",
            pattern=pattern,
            old_route=old_route_id,
            new_route=new_route_id,
            steps=total,
            pause_seconds=plan.pause_seconds,
        ) as op:
            for index, step in enumerate(plan.steps, start=1):
                cancel.check()
                op.step(
                    "shape.apply",
                    f"Shaping {index}/{total} ({step.old} old / {step.new} new)",
                )
                try:
                    await self.client.set_weights(
                        pattern,
                        {old_route_id: step.old, new_route_id: step.new},
                    )
                except Exception:
                    record_shape_step(ok=False)
                    raise
                record_shape_step(ok=True)
                self.last_applied = step
                self.applied.append(step)
                if index < total:
                    await cancel.sleep(plan.pause_seconds)
            op.step("shape.done", f"{step.new}% of traffic is on {new_route_id}")
        return step
