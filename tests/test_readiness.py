from __future__ import annotations

import asyncio

import pytest

from conftest import FakeRoutingPlane, RecordingToken, make_snapshot
from dploy.cancel import CancelToken
from dploy.errors import Cancelled, DeadlineExceeded, TransportError
from dploy.schemas.backplane import QueryResponse
from dploy.services.readiness import await_ready, bound_backends


def test_returns_after_third_poll_when_count_reached():
    plane = FakeRoutingPlane(
        [
            make_snapshot([("r2", 0, [])]),
            make_snapshot([("r2", 0, ["b1"])]),
            make_snapshot([("r2", 0, ["b1", "b2", "b3"])]),
        ]
    )
    token = RecordingToken()

    polls = asyncio.run(await_ready(plane, "example.com", "r2", 3, cancel=token, poll_seconds=1.0))

    assert polls == 3
    assert plane.queries == 3
    assert token.sleeps == [1.0, 1.0]


def test_more_backends_than_desired_counts_as_ready():
    plane = FakeRoutingPlane([make_snapshot([("r2", 0, ["b1", "b2", "b3"])])])

    polls = asyncio.run(await_ready(plane, "example.com", "r2", 2, cancel=RecordingToken()))

    assert polls == 1


def test_missing_endpoint_and_route_keep_polling():
    plane = FakeRoutingPlane(
        [
            QueryResponse(),
            make_snapshot([("r1", 100, ["a1"])]),
            make_snapshot([("r1", 100, ["a1"]), ("r2", 0, ["b1"])]),
        ]
    )
    token = RecordingToken()

    polls = asyncio.run(await_ready(plane, "example.com", "r2", 1, cancel=token))

    assert polls == 3
    assert len(token.sleeps) == 2


def test_duplicate_backend_ids_are_counted_once():
    snapshot = make_snapshot([("r2", 0, ["b1", "b1", "b2"])])

    assert bound_backends(snapshot, "example.com", "r2") == 2
    assert bound_backends(snapshot, "other.example.com", "r2") == 0


def test_transport_failure_is_not_treated_as_not_ready():
    plane = FakeRoutingPlane(
        [
            make_snapshot([("r2", 0, [])]),
            TransportError("query", "connection refused"),
            make_snapshot([("r2", 0, ["b1"])]),
        ]
    )

    with pytest.raises(TransportError):
        asyncio.run(await_ready(plane, "example.com", "r2", 1, cancel=RecordingToken()))
    assert plane.queries == 2


def test_cancel_stops_waiting():
    plane = FakeRoutingPlane([make_snapshot([("r2", 0, [])])])
    token = RecordingToken(cancel_after_sleeps=2)

    with pytest.raises(Cancelled, match="operator pressed"):
        asyncio.run(await_ready(plane, "example.com", "r2", 1, cancel=token))
    assert plane.queries == 2


def test_deadline_bounds_the_wait():
    ticks = iter(range(1000))
    token = CancelToken(timeout_seconds=5, clock=lambda: float(next(ticks)))
    plane = FakeRoutingPlane([make_snapshot([("r2", 0, [])])])

    with pytest.raises(DeadlineExceeded):
        asyncio.run(await_ready(plane, "example.com", "r2", 1, cancel=token, poll_seconds=0))
    assert 1 <= plane.queries < 5
