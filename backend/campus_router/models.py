from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PathType = Literal["walkway", "sidewalk", "path", "road"]
LegOrigin = Literal["CAMPUS", "EXTERNAL", "DIRECT"]
RouteKind = Literal["CAMPUS_ONLY", "EXTERNAL_ONLY", "HYBRID_IN", "HYBRID_OUT", "DIRECT"]
DiagnosticOutcome = Literal["ok", "failed", "skipped"]


class Coordinate(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    lon: float = Field(..., ge=-180, le=180, allow_inf_nan=False)

    def as_lon_lat(self) -> list[float]:
        return [self.lon, self.lat]


class CampusBounds(BaseModel):
    """Axis-aligned campus rectangle. Edges count as inside."""

    model_config = ConfigDict(frozen=True)

    north_lat: float = Field(..., ge=-90, le=90)
    south_lat: float = Field(..., ge=-90, le=90)
    east_lon: float = Field(..., ge=-180, le=180)
    west_lon: float = Field(..., ge=-180, le=180)

    @model_validator(mode="after")
    def _ordered(self) -> "CampusBounds":
        if self.south_lat > self.north_lat:
            raise ValueError("south_lat must not exceed north_lat")
        if self.west_lon > self.east_lon:
            raise ValueError("west_lon must not exceed east_lon")
        return self

    @classmethod
    def from_corners(cls, north_east: tuple[float, float], south_west: tuple[float, float]) -> "CampusBounds":
        return cls(
            north_lat=north_east[0],
            east_lon=north_east[1],
            south_lat=south_west[0],
            west_lon=south_west[1],
        )


class Waypoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sequence: int = Field(..., ge=0)
    coord: Coordinate
    accessible: bool = True
    notes: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        # Store ids are serial integers; keep them as strings for stable keys.
        return str(value) if isinstance(value, int) else value


class CampusPath(BaseModel):
    """An admin-defined ordered polyline of waypoints.

    ``breaks`` lists sequences after which an inaccessible waypoint was removed;
    the waypoints on either side of a break belong to different fragments.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    type: PathType = "walkway"
    active: bool = True
    waypoints: tuple[Waypoint, ...] = ()
    breaks: tuple[int, ...] = ()

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value

    @field_validator("waypoints")
    @classmethod
    def _distinct_sequences(cls, value: tuple[Waypoint, ...]) -> tuple[Waypoint, ...]:
        seen: set[int] = set()
        for wp in value:
            if wp.sequence in seen:
                raise ValueError(f"duplicate waypoint sequence {wp.sequence}")
            seen.add(wp.sequence)
        return value

    def fragments(self) -> list[tuple[Waypoint, ...]]:
        """Split the (sorted) waypoints into runs with no removed waypoint between them."""
        ordered = sorted(self.waypoints, key=lambda wp: wp.sequence)
        if not ordered:
            return []
        cut_after = set(self.breaks)
        out: list[tuple[Waypoint, ...]] = []
        current: list[Waypoint] = []
        for wp in ordered:
            current.append(wp)
            if wp.sequence in cut_after:
                out.append(tuple(current))
                current = []
        if current:
            out.append(tuple(current))
        return out


class RouteLeg(BaseModel):
    coords: list[Coordinate] = Field(..., min_length=1)
    distance_km: float = Field(..., ge=0.0)
    duration_min: int = Field(..., ge=0)
    origin: LegOrigin
    provider_distance_km: float | None = None
    provider_duration_s: float | None = None
    # Names of the campus paths walked, in order.
    path_names: list[str] = Field(default_factory=list)


class RouteDiagnostic(BaseModel):
    operation: str
    outcome: DiagnosticOutcome
    reason_code: str | None = None
    detail: str | None = None
    elapsed_ms: float = 0.0


class Route(BaseModel):
    coords: list[Coordinate]
    distance_km: float
    duration_min: int
    kind: RouteKind
    legs: list[RouteLeg]
    is_direct: bool = False
    message: str | None = None
    crossing: Waypoint | None = None
    warnings: list[str] = Field(default_factory=list)
    diagnostics: list[RouteDiagnostic] = Field(default_factory=list)


class RouteRequest(BaseModel):
    start: Coordinate
    end: Coordinate
    deadline_ms: int | None = Field(default=None, ge=1, le=120_000)


class RouteResponse(Route):
    summary: str

    @classmethod
    def from_route(cls, route: Route, summary: str) -> "RouteResponse":
        payload: dict[str, Any] = route.model_dump()
        payload["summary"] = summary
        return cls.model_validate(payload)


class PathStatusResponse(BaseModel):
    has_campus_paths: bool
    graph: dict[str, int]
