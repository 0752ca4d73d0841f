from __future__ import annotations

import asyncio

import pytest

from conftest import FakeRoutingPlane, RecordingToken, make_snapshot
from dploy.errors import Cancelled, InvalidPlanError, TransportError
from dploy.services.shaper import (
    RolloutPlan,
    ShapeStep,
    TrafficShaper,
    default_plan,
    plan_from_percentages,
)


@pytest.fixture
def plane() -> FakeRoutingPlane:
    return FakeRoutingPlane([make_snapshot()])


def test_default_plan_applies_steps_in_order_with_pauses_between(plane):
    token = RecordingToken()
    shaper = TrafficShaper(plane)

    final = asyncio.run(shaper.run("example.com", "r1", "r2", default_plan(30.0), cancel=token))

    assert plane.shape_calls == [
        {"r1": 75, "r2": 25},
        {"r1": 50, "r2": 50},
        {"r1": 25, "r2": 75},
        {"r1": 0, "r2": 100},
    ]
    assert token.sleeps == [30.0, 30.0, 30.0]
    assert final == ShapeStep(0, 100)
    assert shaper.last_applied == ShapeStep(0, 100)


def test_single_step_plan_has_no_pause(plane):
    token = RecordingToken()
    plan = RolloutPlan(steps=(ShapeStep(0, 100),), pause_seconds=10)

    asyncio.run(TrafficShaper(plane).run("example.com", "r1", "r2", plan, cancel=token))

    assert plane.shape_calls == [{"r1": 0, "r2": 100}]
    assert token.sleeps == []


@pytest.mark.parametrize(
    "steps",
    [
        (),
        (ShapeStep(60, 50), ShapeStep(0, 100)),
        (ShapeStep(-10, 110), ShapeStep(0, 100)),
        (ShapeStep(50, 50),),
    ],
)
def test_invalid_plan_is_rejected_before_any_call(plane, steps):
    with pytest.raises(InvalidPlanError):
        asyncio.run(
            TrafficShaper(plane).run(
                "example.com",
                "r1",
                "r2",
                RolloutPlan(steps=steps),
                cancel=RecordingToken(),
            )
        )
    assert plane.shape_calls == []


@pytest.mark.parametrize("pause", [float("nan"), float("inf"), -1.0])
def test_pause_must_be_finite_and_non_negative(plane, pause):
    with pytest.raises(InvalidPlanError, match="pause"):
        asyncio.run(
            TrafficShaper(plane).run(
                "example.com", "r1", "r2", default_plan(pause), cancel=RecordingToken()
            )
        )
    assert plane.shape_calls == []


def test_same_route_on_both_sides_is_rejected(plane):
    with pytest.raises(InvalidPlanError):
        asyncio.run(
            TrafficShaper(plane).run("example.com", "r1", "r1", default_plan(), cancel=RecordingToken())
        )
    assert plane.shape_calls == []


def test_failure_aborts_without_retry_and_keeps_last_applied(plane):
    plane.fail_shape_at = 2
    plane.shape_error = TransportError("set_weights", "HTTP 500: boom", status=500)
    token = RecordingToken()
    shaper = TrafficShaper(plane)

    with pytest.raises(TransportError):
        asyncio.run(shaper.run("example.com", "r1", "r2", default_plan(), cancel=token))

    assert plane.shape_calls == [{"r1": 75, "r2": 25}]
    assert shaper.last_applied == ShapeStep(75, 25)
    assert token.sleeps == [30.0]


def test_cancel_during_pause_stops_before_next_step(plane):
    token = RecordingToken(cancel_after_sleeps=1)
    shaper = TrafficShaper(plane)

    with pytest.raises(Cancelled):
        asyncio.run(shaper.run("example.com", "r1", "r2", default_plan(), cancel=token))

    assert plane.shape_calls == [{"r1": 75, "r2": 25}]
    assert shaper.last_applied == ShapeStep(75, 25)


def test_plan_from_percentages():
    plan = plan_from_percentages([10, 50, 100], pause_seconds=5)

    assert plan.steps == (ShapeStep(90, 10), ShapeStep(50, 50), ShapeStep(0, 100))
    assert plan.pause_seconds == 5


def test_plan_from_percentages_requires_full_cutover():
    with pytest.raises(InvalidPlanError, match="full cutover"):
        plan_from_percentages([25, 50])
