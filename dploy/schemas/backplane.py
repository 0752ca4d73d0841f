from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_WIRE = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


def _none_as_empty(value: Any) -> Any:
    # The routing plane encodes empty collections as null.
    return [] if value is None else value


class Location(BaseModel):
    model_config = _WIRE

    latitude: float = Field(default=0.0, alias="Latitude")
    longitude: float = Field(default=0.0, alias="Longitude")
    city_name: str = Field(default="", alias="CityName")
    country_code: str = Field(default="", alias="CountryCode")
    country_name: str = Field(default="", alias="CountryName")
    continent_code: str = Field(default="", alias="ContinentCode")
    continent_name: str = Field(default="", alias="ContinentName")
    region_code: str = Field(default="", alias="RegionCode")
    region_name: str = Field(default="", alias="RegionName")


class Backend(BaseModel):
    model_config = _WIRE

    id: str = Field(alias="ID")
    owner: str = Field(default="", alias="Owner")
    raw_labels: str = Field(default="", alias="RawLabels")
    load: int = Field(default=0, alias="Load")
    remote_addr: str = Field(default="", alias="RemoteAddr")
    connected_at: Optional[datetime] = Field(default=None, alias="ConnectedAt")
    location: Location = Field(default_factory=Location, alias="Location")
    requests_per_second: int = Field(default=0, alias="RequestsPerSecond")
    state: str = Field(default="", alias="State")


class Route(BaseModel):
    model_config = _WIRE

    id: str = Field(default="", alias="ID")
    raw_selector: str = Field(default="", alias="RawSelector")
    weight: int = Field(default=0, alias="Weight")
    strategy: str = Field(default="", alias="Strategy")
    backends: List[str] = Field(default_factory=list, alias="Backends")

    @field_validator("backends", mode="before")
    @classmethod
    def backends_none_as_empty(cls, value: Any) -> Any:
        return _none_as_empty(value)

    @property
    def bound_count(self) -> int:
        return len(set(self.backends))


class Endpoint(BaseModel):
    model_config = _WIRE

    pattern: str = Field(alias="Pattern")
    owner: str = Field(default="", alias="Owner")
    created_at: Optional[datetime] = Field(default=None, alias="CreatedAt")
    routes: List[Route] = Field(default_factory=list, alias="Routes")

    @field_validator("routes", mode="before")
    @classmethod
    def routes_none_as_empty(cls, value: Any) -> Any:
        return _none_as_empty(value)

    def route(self, route_id: str) -> Optional[Route]:
        for route in self.routes:
            if route.id == route_id:
                return route
        return None

    def incumbent(self) -> Optional[Route]:
        """The route currently carrying all of this endpoint's traffic, if any."""
        for route in self.routes:
            if route.weight == 100:
                return route
        return None


class QueryResponse(BaseModel):
    """Point-in-time view of everything visible to the caller's credential."""

    model_config = _WIRE

    token: str = Field(default="", alias="Token", repr=False)
    endpoints: List[Endpoint] = Field(default_factory=list, alias="Endpoints")
    backends: List[Backend] = Field(default_factory=list, alias="Backends")

    @field_validator("endpoints", "backends", mode="before")
    @classmethod
    def lists_none_as_empty(cls, value: Any) -> Any:
        return _none_as_empty(value)

    def endpoint(self, pattern: str) -> Optional[Endpoint]:
        for endpoint in self.endpoints:
            if endpoint.pattern == pattern:
                return endpoint
        return None


class RouteSelector(BaseModel):
    model_config = _WIRE

    raw_selector: str = Field(alias="RawSelector")


class RouteRequest(BaseModel):
    model_config = _WIRE

    pattern: str = Field(alias="Pattern")
    route: RouteSelector = Field(alias="Route")


class RouteWeight(BaseModel):
    model_config = _WIRE

    id: str = Field(alias="ID")
    weight: int = Field(alias="Weight", ge=0)


class ShapeRequest(BaseModel):
    model_config = _WIRE

    pattern: str = Field(alias="Pattern")
    routes: List[RouteWeight] = Field(alias="Routes")
