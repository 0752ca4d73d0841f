from __future__ import annotations

import asyncio
import base64
import http.client
from time import perf_counter
from typing import Mapping, Optional
from urllib import error, request

from pydantic import BaseModel, ValidationError

from dploy.config import DEFAULT_BACKPLANE_URL, Settings
from dploy.errors import AuthError, ConflictError, ProtocolError, TransportError
from dploy.logger import get_logger, token_hint
from dploy.metrics import observe_backplane_request
from dploy.schemas.backplane import (
    QueryResponse,
    Route,
    RouteRequest,
    RouteSelector,
    RouteWeight,
    ShapeRequest,
)
from dploy.utils import format_selector

_logger = get_logger("services.backplane")


def _trim(value: str, max_len: int = 240) -> str:
    text = value.strip()
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class BackplaneClient:
    """Routing-plane API client.

    Every method performs exactly one HTTP round trip and never retries;
    callers decide what a failure means for them.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_BACKPLANE_URL,
        timeout_seconds: float = 15.0,
        user_agent: str = "dploy",
    ) -> None:
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._log = _logger.bind(token_hint=token_hint(token))

    @classmethod
    def from_settings(cls, settings: Settings, token: Optional[str] = None) -> "BackplaneClient":
        return cls(
            token if token is not None else settings.backplane_token,
            base_url=settings.backplane_url,
            timeout_seconds=settings.backplane_timeout_seconds,
            user_agent=f"{settings.app_name}/{settings.app_version}",
        )

    def _authorization(self) -> str:
        raw = f"{self._token}:".encode("utf-8")
        return "Basic " + base64.b64encode(raw).decode("ascii")

    def _send(self, action: str, method: str, path: str, body: Optional[BaseModel]) -> str:
        headers = {
            "Accept": "application/json",
            "Authorization": self._authorization(),
            "User-Agent": self._user_agent,
        }
        data: Optional[bytes] = None
        if body is not None:
            data = body.model_dump_json(by_alias=True).encode("utf-8")
            headers["Content-Type"] = "application/json"

        req = request.Request(
            url=self._base_url + path,
            method=method,
            data=data,
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self._timeout_seconds) as response:
                status = response.status
                payload = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            detail = _trim(exc.read().decode("utf-8", errors="replace")) or exc.reason
            if exc.code in (401, 403):
                raise AuthError(action, f"HTTP {exc.code}: {detail}", status=exc.code) from exc
            if exc.code == 409:
                raise ConflictError(action, f"HTTP {exc.code}: {detail}", status=exc.code) from exc
            raise TransportError(action, f"HTTP {exc.code}: {detail}", status=exc.code) from exc
        except (error.URLError, OSError) as exc:
            raise TransportError(action, str(getattr(exc, "reason", exc))) from exc
        except http.client.HTTPException as exc:
            raise TransportError(action, f"{type(exc).__name__}: {exc}") from exc

        if status != 200:
            raise TransportError(action, f"HTTP {status}: {_trim(payload)}", status=status)
        return payload

    async def _call(
        self,
        action: str,
        method: str,
        path: str,
        body: Optional[BaseModel] = None,
    ) -> str:
        started = perf_counter()
        try:
            payload = await asyncio.to_thread(self._send, action, method, path, body)
        except TransportError as exc:
            elapsed = perf_counter() - started
            observe_backplane_request(action=action, ok=False, duration_seconds=elapsed)
            self._log.warning(
                "backplane.request.fail",
                "Routing plane request failed",
                action=action,
                path=path,
                status=exc.status,
                detail=exc.detail,
            )
            raise
        elapsed = perf_counter() - started
        observe_backplane_request(action=action, ok=True, duration_seconds=elapsed)
        self._log.debug(
            "backplane.request.ok",
            "Routing plane request succeeded",
            action=action,
            path=path,
            duration_ms=round(elapsed * 1000, 1),
        )
        return payload

    async def query(self) -> QueryResponse:
        payload = await self._call("query", "GET", "/q")
        try:
            return QueryResponse.model_validate_json(payload)
        except ValidationError as exc:
            raise ProtocolError("query", f"malformed topology: {_trim(str(exc))}") from exc

    async def create_route(self, pattern: str, labels: Mapping[str, str]) -> Route:
        body = RouteRequest(
            pattern=pattern,
            route=RouteSelector(raw_selector=format_selector(labels)),
        )
        payload = await self._call("create_route", "POST", "/route", body)
        try:
            route = Route.model_validate_json(payload)
        except ValidationError as exc:
            raise ProtocolError("create_route", f"malformed route: {_trim(str(exc))}") from exc
        if not route.id:
            raise ProtocolError("create_route", "routing plane returned a route without an ID")
        self._log.info(
            "backplane.route.create",
            "Created route",
            route_id=route.id,
            pattern=pattern,
            selector=body.route.raw_selector,
        )
        return route

    async def set_weights(self, pattern: str, weights: Mapping[str, int]) -> None:
        if not weights:
            raise ValueError("set_weights needs at least one route")
        body = ShapeRequest(
            pattern=pattern,
            routes=[RouteWeight(id=key, weight=weight) for key, weight in weights.items()],
        )
        await self._call("set_weights", "POST", "/shape", body)
        self._log.info(
            "backplane.shape",
            "Applied route weights",
            pattern=pattern,
            weights=",".join(f"{route_id}={weight}" for route_id, weight in weights.items()),
        )

    async def issue_token(self) -> str:
        snapshot = await self.query()
        if not snapshot.token:
            raise ProtocolError("issue_token", "routing plane returned an empty token")
        return snapshot.token
