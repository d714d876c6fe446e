from __future__ import annotations

from collections.abc import Sequence

from .campus_graph import CampusGraph
from .geo import dedup_vertices, polyline_length_km, walking_minutes
from .models import CampusPath, Coordinate, RouteLeg
from .routing_errors import RoutingError
from .settings import Settings, settings


class CampusRouter:
    """Routes between two points inside the campus over the waypoint graph."""

    def __init__(
        self,
        *,
        snap_limit_km: float | None = None,
        junction_radius_km: float | None = None,
        walking_pace_km_per_min: float | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or settings
        self.snap_limit_km = cfg.snap_limit_km if snap_limit_km is None else snap_limit_km
        self.junction_radius_km = cfg.junction_radius_km if junction_radius_km is None else junction_radius_km
        self.walking_pace_km_per_min = (
            cfg.walking_pace_km_per_min if walking_pace_km_per_min is None else walking_pace_km_per_min
        )

    def build_graph(self, paths: Sequence[CampusPath]) -> CampusGraph:
        return CampusGraph.build(paths, junction_radius_km=self.junction_radius_km)

    def route_inside(
        self,
        start: Coordinate,
        end: Coordinate,
        *,
        graph: CampusGraph | None = None,
        paths: Sequence[CampusPath] = (),
    ) -> RouteLeg:
        """Walk start -> nearest waypoint -> graph path -> nearest waypoint -> end.

        Raises ``RoutingError`` with ``graph_empty``, ``snap_too_far`` or ``unreachable``.
        """
        g = graph if graph is not None else self.build_graph(paths)
        src = g.snap(start)
        dst = g.snap(end)
        for label, snapped in (("start", src), ("end", dst)):
            if snapped.snap_distance_km > self.snap_limit_km:
                raise RoutingError(
                    "snap_too_far",
                    f"{label} is {snapped.snap_distance_km:.3f} km from the nearest campus waypoint",
                    details={
                        "endpoint": label,
                        "snap_distance_km": round(snapped.snap_distance_km, 6),
                        "snap_limit_km": self.snap_limit_km,
                    },
                )

        walked = g.shortest_path_nodes(src.node, dst.node)
        coords = dedup_vertices([start, *(node.coord for node in walked), end])
        distance = polyline_length_km(coords)
        return RouteLeg(
            coords=coords,
            distance_km=distance,
            duration_min=walking_minutes(distance, self.walking_pace_km_per_min),
            origin="CAMPUS",
            path_names=g.path_names_along(walked),
        )
