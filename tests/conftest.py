from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pytest

from dploy.cancel import CancelToken
from dploy.config import get_settings
from dploy.schemas.backplane import QueryResponse, Route


def make_snapshot(
    routes: Sequence[Tuple[str, int, Sequence[str]]] = (),
    *,
    pattern: str = "example.com",
    token: str = "agent-token",
) -> QueryResponse:
    """Topology with one endpoint; ``routes`` holds (id, weight, backends) triples."""
    return QueryResponse.model_validate(
        {
            "Token": token,
            "Endpoints": [
                {
                    "Pattern": pattern,
                    "Owner": "ops",
                    "Routes": [
                        {"ID": route_id, "Weight": weight, "Backends": list(backends)}
                        for route_id, weight, backends in routes
                    ],
                }
            ],
            "Backends": [],
        }
    )


class FakeRoutingPlane:
    """In-memory routing plane; snapshots are served in order, the last one repeats."""

    def __init__(
        self,
        snapshots: Iterable[Union[QueryResponse, Exception]],
        *,
        created_route_id: str = "r2",
    ) -> None:
        self.snapshots: List[Union[QueryResponse, Exception]] = list(snapshots)
        self.created_route_id = created_route_id
        self.queries = 0
        self.tokens_issued = 0
        self.created: List[Tuple[str, Dict[str, str]]] = []
        self.shape_calls: List[Dict[str, int]] = []
        self.shape_error: Optional[Exception] = None
        self.fail_shape_at: Optional[int] = None

    async def query(self) -> QueryResponse:
        self.queries += 1
        item = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def create_route(self, pattern: str, labels: Mapping[str, str]) -> Route:
        self.created.append((pattern, dict(labels)))
        return Route(id=self.created_route_id, raw_selector="")

    async def set_weights(self, pattern: str, weights: Mapping[str, int]) -> None:
        if self.fail_shape_at is not None and len(self.shape_calls) + 1 == self.fail_shape_at:
            assert self.shape_error is not None
            raise self.shape_error
        self.shape_calls.append(dict(weights))

    async def issue_token(self) -> str:
        self.tokens_issued += 1
        return "agent-token"


class FakeOrchestrator:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.error = error

    async def create_replicated_service(
        self,
        name: str,
        image: str,
        replica_count: int,
        env: Mapping[str, str],
        labels: Mapping[str, str],
    ) -> str:
        self.calls.append(
            {
                "name": name,
                "image": image,
                "replicas": replica_count,
                "env": dict(env),
                "labels": dict(labels),
            }
        )
        if self.error is not None:
            raise self.error
        return "svc-123"


class RecordingToken(CancelToken):
    """Cancel token whose pauses return at once and are recorded instead."""

    def __init__(self, cancel_after_sleeps: Optional[int] = None) -> None:
        super().__init__()
        self.sleeps: List[float] = []
        self._cancel_after = cancel_after_sleeps

    async def sleep(self, seconds: float) -> None:
        self.check()
        self.sleeps.append(seconds)
        if self._cancel_after is not None and len(self.sleeps) >= self._cancel_after:
            self.cancel("operator pressed ^C")
        self.check()


@pytest.fixture(autouse=True)
def _clean_settings(monkeypatch: pytest.MonkeyPatch):
    for name in ("BACKPLANE_TOKEN", "BACKPLANE_URL", "LOG_FILE", "METRICS_FILE", "SHAPE_PAUSE_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    dploy_logger = logging.getLogger("dploy")
    dploy_logger.handlers.clear()
    dploy_logger.propagate = True
