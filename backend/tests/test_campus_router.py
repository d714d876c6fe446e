from __future__ import annotations

import pytest

from campus_router.campus_router import CampusRouter
from campus_router.geo import distance_km, polyline_length_km
from campus_router.models import CampusPath, Coordinate, Waypoint
from campus_router.routing_errors import RoutingError

W1 = Coordinate(lat=11.2440, lon=125.0020)
W2 = Coordinate(lat=11.2444, lon=125.0025)
W3 = Coordinate(lat=11.2450, lon=125.0030)

P1 = CampusPath(
    id="P1",
    name="Main Walkway",
    waypoints=(
        Waypoint(id="W1", sequence=1, coord=W1),
        Waypoint(id="W2", sequence=2, coord=W2),
        Waypoint(id="W3", sequence=3, coord=W3),
    ),
)


def _router(**kwargs) -> CampusRouter:  # noqa: ANN003
    kwargs.setdefault("snap_limit_km", 0.5)
    kwargs.setdefault("junction_radius_km", 0.008)
    kwargs.setdefault("walking_pace_km_per_min", 0.083)
    return CampusRouter(**kwargs)


def test_route_inside_walks_the_single_path() -> None:
    start = Coordinate(lat=11.2441, lon=125.0021)
    end = Coordinate(lat=11.2449, lon=125.0029)
    leg = _router().route_inside(start, end, paths=[P1])

    assert leg.origin == "CAMPUS"
    assert leg.coords == [start, W1, W2, W3, end]
    assert leg.distance_km == pytest.approx(polyline_length_km(leg.coords))
    assert leg.distance_km == pytest.approx(0.188, abs=0.002)
    assert leg.duration_min == 3


def test_route_inside_reuses_a_prebuilt_graph() -> None:
    router = _router()
    graph = router.build_graph([P1])
    leg = router.route_inside(W3, W1, graph=graph)
    assert leg.coords == [W3, W2, W1]
    assert leg.distance_km == pytest.approx(distance_km(W3, W2) + distance_km(W2, W1))


def test_endpoint_on_a_waypoint_is_not_duplicated() -> None:
    leg = _router().route_inside(W1, W2, paths=[P1])
    assert leg.coords == [W1, W2]


def test_snap_too_far_reports_the_endpoint() -> None:
    far_start = Coordinate(lat=11.2385, lon=124.9965)
    with pytest.raises(RoutingError) as exc:
        _router().route_inside(far_start, W3, paths=[P1])
    assert exc.value.reason_code == "snap_too_far"
    assert exc.value.details is not None
    assert exc.value.details["endpoint"] == "start"
    assert exc.value.details["snap_distance_km"] > 0.5


def test_snap_limit_is_configurable() -> None:
    near = Coordinate(lat=11.2441, lon=125.0021)
    with pytest.raises(RoutingError) as exc:
        _router(snap_limit_km=0.01).route_inside(near, W3, paths=[P1])
    assert exc.value.reason_code == "snap_too_far"


def test_no_paths_is_graph_empty() -> None:
    with pytest.raises(RoutingError) as exc:
        _router().route_inside(W1, W3, paths=[])
    assert exc.value.reason_code == "graph_empty"


def test_disconnected_paths_are_unreachable() -> None:
    far = CampusPath(
        id="P9",
        waypoints=(
            Waypoint(id="X1", sequence=0, coord=Coordinate(lat=11.2390, lon=124.9980)),
            Waypoint(id="X2", sequence=1, coord=Coordinate(lat=11.2392, lon=124.9982)),
        ),
    )
    with pytest.raises(RoutingError) as exc:
        _router().route_inside(W1, Coordinate(lat=11.2391, lon=124.9981), paths=[P1, far])
    assert exc.value.reason_code == "unreachable"


def test_leg_lists_the_paths_it_walks() -> None:
    w4 = Coordinate(lat=11.2455, lon=125.0035)
    library_lane = CampusPath(
        id="P2",
        name="Library Lane",
        waypoints=(Waypoint(id="L1", sequence=1, coord=W3), Waypoint(id="L2", sequence=2, coord=w4)),
    )
    leg = _router().route_inside(W1, w4, paths=[P1, library_lane])

    assert leg.coords == [W1, W2, W3, w4]
    assert leg.path_names == ["Main Walkway", "Library Lane"]

    unnamed = CampusPath(id="P3", waypoints=P1.waypoints)
    assert _router().route_inside(W1, W3, paths=[unnamed]).path_names == []
