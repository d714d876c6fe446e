from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .campus_graph import CampusGraph
from .campus_router import CampusRouter
from .deadline import RequestDeadline
from .geo import (
    ENDPOINT_TOL_KM,
    VERTEX_TOL_KM,
    WALKING_PACE_KM_PER_MIN,
    distance_km,
    inside,
    interpolate,
    same_point,
    walking_minutes,
)
from .logging_utils import elapsed_ms, log_event
from .models import (
    CampusBounds,
    CampusPath,
    Coordinate,
    Route,
    RouteDiagnostic,
    RouteKind,
    RouteLeg,
    Waypoint,
)
from .path_store import PathStore, routable_paths
from .routing_errors import RoutingError
from .settings import Settings, settings

DIRECT_MESSAGE = "No custom path available for this route. Showing direct line."
# DIRECT lines get roughly one vertex every 200 m.
DIRECT_POINTS_PER_KM = 5

_SUMMARY_LABELS: dict[str, str] = {
    "CAMPUS_ONLY": "Campus path",
    "EXTERNAL_ONLY": "Street route",
    "HYBRID_IN": "Street route + campus path",
    "HYBRID_OUT": "Campus path + street route",
    "DIRECT": "Direct route",
}


class ExternalRouter(Protocol):
    async def route_external(
        self,
        start: Coordinate,
        end: Coordinate,
        *,
        deadline: RequestDeadline | None = None,
    ) -> RouteLeg: ...


def bounds_from_settings(config: Settings | None = None) -> CampusBounds:
    cfg = config or settings
    return CampusBounds(
        north_lat=cfg.campus_north_lat,
        south_lat=cfg.campus_south_lat,
        east_lon=cfg.campus_east_lon,
        west_lon=cfg.campus_west_lon,
    )


def direct_leg(
    start: Coordinate,
    end: Coordinate,
    pace_km_per_min: float = WALKING_PACE_KM_PER_MIN,
) -> RouteLeg:
    """Straight line start -> end, the fallback that always exists."""
    km = distance_km(start, end)
    if same_point(start, end, ENDPOINT_TOL_KM):
        coords = [start]
    else:
        coords = interpolate(start, end, max(2, math.ceil(km * DIRECT_POINTS_PER_KM)))
    return RouteLeg(
        coords=coords,
        distance_km=km,
        duration_min=walking_minutes(km, pace_km_per_min),
        origin="DIRECT",
    )


def join_legs(legs: Sequence[RouteLeg]) -> tuple[list[Coordinate], list[str]]:
    """Concatenate leg polylines; a shared join vertex appears once."""
    coords: list[Coordinate] = list(legs[0].coords)
    warnings: list[str] = []
    for leg in legs[1:]:
        if same_point(coords[-1], leg.coords[0], VERTEX_TOL_KM):
            coords.extend(leg.coords[1:])
        else:
            coords.extend(leg.coords)
            warnings.append("join_gap")
    return coords, warnings


def crossing_waypoint(
    paths: Sequence[CampusPath],
    bounds: CampusBounds,
    outside_point: Coordinate,
) -> Waypoint | None:
    """Accessible in-bounds waypoint closest to outside_point; ties go to the smaller (path_id, sequence)."""
    best: Waypoint | None = None
    best_key: tuple[float, str, int] | None = None
    for path in routable_paths(paths):
        for wp in path.waypoints:
            if not inside(wp.coord, bounds):
                continue
            key = (distance_km(outside_point, wp.coord), path.id, wp.sequence)
            if best_key is None or key < best_key:
                best = wp
                best_key = key
    return best


def route_summary(route: Route | None) -> str:
    if route is None:
        return "No route available"
    label = _SUMMARY_LABELS.get(route.kind, "Route")
    if route.kind == "CAMPUS_ONLY":
        names = [name for leg in route.legs for name in leg.path_names]
        if names:
            label = " + ".join(dict.fromkeys(names))
    text = f"{label}\n{route.distance_km:.2f} km • {route.duration_min} min walk"
    if route.is_direct:
        text += "\n(No custom path available)"
    return text


@dataclass
class _RequestContext:
    deadline: RequestDeadline
    diagnostics: list[RouteDiagnostic] = field(default_factory=list)
    paths: list[CampusPath] | None = None
    graph: CampusGraph | None = None

    def record(
        self,
        operation: str,
        t0: float,
        *,
        error: RoutingError | None = None,
        skipped_reason: str | None = None,
    ) -> None:
        took_ms = elapsed_ms(t0)
        if skipped_reason is not None:
            diag = RouteDiagnostic(
                operation=operation, outcome="skipped", reason_code=skipped_reason, elapsed_ms=took_ms
            )
        elif error is not None:
            diag = RouteDiagnostic(
                operation=operation,
                outcome="failed",
                reason_code=error.reason_code,
                detail=error.message,
                elapsed_ms=took_ms,
            )
        else:
            diag = RouteDiagnostic(operation=operation, outcome="ok", elapsed_ms=took_ms)
        self.diagnostics.append(diag)


class HybridRouter:
    """Picks the campus graph, the external router, or both, and stitches the legs.

    ``route`` always returns a Route: every sub-operation failure is recorded as a
    diagnostic and the next fallback is tried, ending with a straight DIRECT line.
    """

    def __init__(
        self,
        *,
        path_store: PathStore,
        external: ExternalRouter,
        bounds: CampusBounds | None = None,
        campus: CampusRouter | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or settings
        self.path_store = path_store
        self.external = external
        self.bounds = bounds or bounds_from_settings(cfg)
        self.campus = campus or CampusRouter(config=cfg)
        self.request_deadline_ms = cfg.request_deadline_ms
        self.walking_pace_km_per_min = cfg.walking_pace_km_per_min

    async def route(
        self,
        start: Coordinate,
        end: Coordinate,
        *,
        deadline_ms: int | None = None,
    ) -> Route:
        t0 = time.perf_counter()
        ctx = _RequestContext(
            deadline=RequestDeadline.from_ms(deadline_ms if deadline_ms is not None else self.request_deadline_ms)
        )
        s_in = inside(start, self.bounds)
        e_in = inside(end, self.bounds)

        if same_point(start, end, ENDPOINT_TOL_KM):
            route = await self._route_same_point(ctx, start, s_in)
        elif not s_in and not e_in:
            route = await self._route_outside(ctx, start, end)
        elif s_in and e_in:
            route = await self._route_inside(ctx, start, end)
        elif e_in:
            route = await self._route_hybrid(ctx, start, end, inbound=True)
        else:
            route = await self._route_hybrid(ctx, start, end, inbound=False)

        log_event(
            "route_completed",
            kind=route.kind,
            start_inside=s_in,
            end_inside=e_in,
            distance_km=round(route.distance_km, 4),
            duration_min=route.duration_min,
            legs=[leg.origin for leg in route.legs],
            warnings=route.warnings,
            elapsed_ms=elapsed_ms(t0),
        )
        return route

    # -- classification cases ------------------------------------------------

    async def _route_same_point(self, ctx: _RequestContext, point: Coordinate, is_inside: bool) -> Route:
        if is_inside:
            graph = await self._graph(ctx)
            if not graph.is_empty:
                leg = RouteLeg(coords=[point], distance_km=0.0, duration_min=0, origin="CAMPUS")
                return self._assemble(ctx, "CAMPUS_ONLY", [leg])
        return self._direct(ctx, point, point)

    async def _route_outside(self, ctx: _RequestContext, start: Coordinate, end: Coordinate) -> Route:
        # The path store and the campus graph are never consulted here.
        leg = await self._external(ctx, "external", start, end)
        if leg is not None:
            return self._assemble(ctx, "EXTERNAL_ONLY", [leg])
        return self._direct(ctx, start, end, from_kind="EXTERNAL_ONLY")

    async def _route_inside(self, ctx: _RequestContext, start: Coordinate, end: Coordinate) -> Route:
        leg = await self._campus(ctx, "campus", start, end)
        if leg is not None:
            return self._assemble(ctx, "CAMPUS_ONLY", [leg])
        self._fallback(ctx, "CAMPUS_ONLY", "EXTERNAL_ONLY")
        return await self._route_outside(ctx, start, end)

    async def _route_hybrid(
        self,
        ctx: _RequestContext,
        start: Coordinate,
        end: Coordinate,
        *,
        inbound: bool,
    ) -> Route:
        kind: RouteKind = "HYBRID_IN" if inbound else "HYBRID_OUT"
        outside_point = start if inbound else end
        paths = await self._paths(ctx)
        crossing = crossing_waypoint(paths, self.bounds, outside_point)
        if crossing is None:
            self._fallback(ctx, kind, "EXTERNAL_ONLY")
            return await self._route_outside(ctx, start, end)

        w = crossing.coord
        if inbound:
            outer = await self._external(ctx, "external_outer", start, w)
            inner = await self._campus(ctx, "campus_inner", w, end)
        else:
            inner = await self._campus(ctx, "campus_inner", start, w)
            outer = await self._external(ctx, "external_outer", w, end)

        if outer is not None and inner is not None:
            legs = [outer, inner] if inbound else [inner, outer]
            return self._assemble(ctx, kind, legs, crossing=crossing)

        if outer is not None:
            # Without a campus leg the whole trip goes to the external router.
            self._fallback(ctx, kind, "EXTERNAL_ONLY")
            full = await self._external(ctx, "external", start, end)
            if full is not None:
                return self._assemble(ctx, "EXTERNAL_ONLY", [full])
            return self._direct(ctx, start, end, from_kind="EXTERNAL_ONLY")

        if inner is not None:
            if inbound:
                legs = [direct_leg(start, w, self.walking_pace_km_per_min), inner]
            else:
                legs = [inner, direct_leg(w, end, self.walking_pace_km_per_min)]
            route = self._assemble(ctx, kind, legs, crossing=crossing)
            route.warnings.append("direct_segment")
            return route

        return self._direct(ctx, start, end, from_kind=kind)

    # -- sub-operations ------------------------------------------------------

    async def _paths(self, ctx: _RequestContext) -> list[CampusPath]:
        """One store snapshot per request, shared by every sub-operation."""
        if ctx.paths is not None:
            return ctx.paths
        t0 = time.perf_counter()
        remaining_s = ctx.deadline.remaining_s()
        if remaining_s <= 0.0:
            ctx.record("path_store", t0, skipped_reason="cancelled")
            ctx.paths = []
            return ctx.paths
        try:
            ctx.paths = await asyncio.wait_for(self.path_store.list_active_paths(), timeout=remaining_s)
        except asyncio.TimeoutError:
            ctx.record("path_store", t0, skipped_reason="cancelled")
            log_event(
                "path_store_failed",
                level=logging.WARNING,
                reason_code="cancelled",
                error="request deadline reached",
            )
            ctx.paths = []
            return ctx.paths
        except RoutingError as e:
            ctx.record("path_store", t0, error=e)
            log_event("path_store_failed", level=logging.WARNING, reason_code=e.reason_code, error=e.message)
            ctx.paths = []
            return ctx.paths
        ctx.record("path_store", t0)
        log_event("path_store_loaded", paths=len(ctx.paths), revision=getattr(self.path_store, "revision", None))
        return ctx.paths

    async def _graph(self, ctx: _RequestContext) -> CampusGraph:
        if ctx.graph is None:
            paths = await self._paths(ctx)
            ctx.graph = self.campus.build_graph(paths)
        return ctx.graph

    async def _campus(
        self,
        ctx: _RequestContext,
        operation: str,
        start: Coordinate,
        end: Coordinate,
    ) -> RouteLeg | None:
        graph = await self._graph(ctx)
        t0 = time.perf_counter()
        try:
            leg = self.campus.route_inside(start, end, graph=graph)
        except RoutingError as e:
            ctx.record(operation, t0, error=e)
            return None
        ctx.record(operation, t0)
        return leg

    async def _external(
        self,
        ctx: _RequestContext,
        operation: str,
        start: Coordinate,
        end: Coordinate,
    ) -> RouteLeg | None:
        t0 = time.perf_counter()
        if ctx.deadline.expired:
            ctx.record(operation, t0, skipped_reason="cancelled")
            return None
        try:
            leg = await self.external.route_external(start, end, deadline=ctx.deadline)
        except RoutingError as e:
            ctx.record(operation, t0, error=e)
            return None
        ctx.record(operation, t0)
        return leg

    # -- assembly --------------------------------------------------------------

    def _fallback(self, ctx: _RequestContext, from_kind: str, to_kind: str) -> None:
        last = ctx.diagnostics[-1] if ctx.diagnostics else None
        log_event(
            "route_fallback",
            from_kind=from_kind,
            to_kind=to_kind,
            reason_code=last.reason_code if last is not None else None,
        )

    def _direct(
        self,
        ctx: _RequestContext,
        start: Coordinate,
        end: Coordinate,
        *,
        from_kind: str | None = None,
    ) -> Route:
        if from_kind is not None:
            self._fallback(ctx, from_kind, "DIRECT")
        leg = direct_leg(start, end, self.walking_pace_km_per_min)
        return self._assemble(ctx, "DIRECT", [leg])

    def _assemble(
        self,
        ctx: _RequestContext,
        kind: RouteKind,
        legs: list[RouteLeg],
        *,
        crossing: Waypoint | None = None,
    ) -> Route:
        coords, warnings = join_legs(legs)
        is_direct = kind == "DIRECT"
        return Route(
            coords=coords,
            distance_km=sum(leg.distance_km for leg in legs),
            duration_min=sum(leg.duration_min for leg in legs),
            kind=kind,
            legs=legs,
            is_direct=is_direct,
            message=DIRECT_MESSAGE if is_direct else None,
            crossing=crossing,
            warnings=warnings,
            diagnostics=list(ctx.diagnostics),
        )
