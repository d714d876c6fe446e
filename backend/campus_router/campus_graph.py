from __future__ import annotations

import heapq
import math
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Literal

from .geo import distance_km
from .logging_utils import log_event
from .models import CampusPath, Coordinate
from .path_store import routable_paths
from .routing_errors import RoutingError

NodeKey = tuple[str, int]  # (path_id, sequence)
EdgeKind = Literal["consecutive", "junction"]

KM_PER_DEG_LAT = 111.32
# Coincident waypoints still get a positive weight.
MIN_EDGE_KM = 1e-6


@dataclass(frozen=True)
class GraphNode:
    key: NodeKey
    waypoint_id: str
    coord: Coordinate


@dataclass(frozen=True)
class GraphEdge:
    to: NodeKey
    distance_km: float
    kind: EdgeKind


@dataclass(frozen=True)
class Snap:
    node: GraphNode
    snap_distance_km: float


def _grid_cell_deg(radius_km: float, nodes: Iterable[GraphNode]) -> float:
    # One cell must span at least the radius along both axes, so size it for the
    # highest latitude present (where a degree of longitude is shortest).
    max_abs_lat = max((abs(n.coord.lat) for n in nodes), default=0.0)
    cos_lat = max(0.01, math.cos(math.radians(min(89.0, max_abs_lat))))
    return max(1e-9, radius_km / (KM_PER_DEG_LAT * cos_lat))


def _grid_key(coord: Coordinate, cell_deg: float) -> tuple[int, int]:
    return (int(math.floor(coord.lat / cell_deg)), int(math.floor(coord.lon / cell_deg)))


def _compute_component_index(
    nodes: dict[NodeKey, GraphNode],
    adjacency: dict[NodeKey, tuple[GraphEdge, ...]],
) -> tuple[dict[NodeKey, int], dict[int, int]]:
    component_by_node: dict[NodeKey, int] = {}
    component_sizes: dict[int, int] = {}
    component_idx = 0
    for node_key in sorted(nodes):
        if node_key in component_by_node:
            continue
        component_idx += 1
        q: deque[NodeKey] = deque([node_key])
        size = 0
        while q:
            current = q.popleft()
            if current in component_by_node:
                continue
            component_by_node[current] = component_idx
            size += 1
            for edge in adjacency.get(current, ()):
                if edge.to not in component_by_node:
                    q.append(edge.to)
        component_sizes[component_idx] = size
    return component_by_node, component_sizes


@dataclass(frozen=True)
class CampusGraph:
    """Weighted undirected graph over accessible waypoints, built per request."""

    nodes: dict[NodeKey, GraphNode]
    adjacency: dict[NodeKey, tuple[GraphEdge, ...]]
    grid_index: dict[tuple[int, int], tuple[NodeKey, ...]]
    cell_deg: float
    component_by_node: dict[NodeKey, int]
    component_sizes: dict[int, int]
    consecutive_count: int
    junction_count: int
    path_names: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, paths: Iterable[CampusPath], *, junction_radius_km: float) -> CampusGraph:
        nodes: dict[NodeKey, GraphNode] = {}
        adjacency_mut: dict[NodeKey, dict[NodeKey, GraphEdge]] = {}

        def _link(a: NodeKey, b: NodeKey, kind: EdgeKind) -> bool:
            if a == b or b in adjacency_mut.setdefault(a, {}):
                return False
            weight = max(MIN_EDGE_KM, distance_km(nodes[a].coord, nodes[b].coord))
            adjacency_mut[a][b] = GraphEdge(to=b, distance_km=weight, kind=kind)
            adjacency_mut.setdefault(b, {})[a] = GraphEdge(to=a, distance_km=weight, kind=kind)
            return True

        path_names: dict[str, str] = {}
        consecutive_count = 0
        # Raw paths are accepted too: inactive paths and inaccessible waypoints never become nodes.
        for path in routable_paths(paths):
            path_names[path.id] = path.name
            for fragment in path.fragments():
                for wp in fragment:
                    key = (path.id, wp.sequence)
                    nodes[key] = GraphNode(key=key, waypoint_id=wp.id, coord=wp.coord)
                for prev, nxt in zip(fragment, fragment[1:]):
                    if _link((path.id, prev.sequence), (path.id, nxt.sequence), "consecutive"):
                        consecutive_count += 1

        cell_deg = _grid_cell_deg(junction_radius_km, nodes.values())
        grid_mut: dict[tuple[int, int], list[NodeKey]] = {}
        for key in sorted(nodes):
            grid_mut.setdefault(_grid_key(nodes[key].coord, cell_deg), []).append(key)
        grid_index = {cell: tuple(keys) for cell, keys in grid_mut.items()}

        junction_count = 0
        for key in sorted(nodes):
            row, col = _grid_key(nodes[key].coord, cell_deg)
            for d_row in (-1, 0, 1):
                for d_col in (-1, 0, 1):
                    for other in grid_index.get((row + d_row, col + d_col), ()):
                        # Each unordered pair once, only across distinct paths.
                        if other <= key or other[0] == key[0]:
                            continue
                        if distance_km(nodes[key].coord, nodes[other].coord) > junction_radius_km:
                            continue
                        if _link(key, other, "junction"):
                            junction_count += 1

        adjacency = {
            key: tuple(edges[to] for to in sorted(edges))
            for key, edges in adjacency_mut.items()
            if edges
        }
        component_by_node, component_sizes = _compute_component_index(nodes, adjacency)
        graph = cls(
            nodes=nodes,
            adjacency=adjacency,
            grid_index=grid_index,
            cell_deg=cell_deg,
            component_by_node=component_by_node,
            component_sizes=component_sizes,
            consecutive_count=consecutive_count,
            junction_count=junction_count,
            path_names=path_names,
        )
        log_event("campus_graph_built", **graph.stats())
        return graph

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def stats(self) -> dict[str, int]:
        isolated = sum(1 for key in self.nodes if key not in self.adjacency)
        return {
            "nodes": len(self.nodes),
            "edges": self.consecutive_count + self.junction_count,
            "consecutive_edges": self.consecutive_count,
            "junction_edges": self.junction_count,
            "isolated_nodes": isolated,
            "components": len(self.component_sizes),
        }

    def snap(self, coord: Coordinate) -> Snap:
        """Nearest accessible waypoint to coord; ties go to the smaller node key."""
        if not self.nodes:
            raise RoutingError("graph_empty", "campus graph has no waypoints")
        best_key: NodeKey | None = None
        best_dist = math.inf
        for key in sorted(self.nodes):
            dist = distance_km(coord, self.nodes[key].coord)
            if dist < best_dist:
                best_key = key
                best_dist = dist
        assert best_key is not None
        return Snap(node=self.nodes[best_key], snap_distance_km=best_dist)

    def shortest_path(self, src: GraphNode, dst: GraphNode) -> list[Coordinate]:
        return [node.coord for node in self.shortest_path_nodes(src, dst)]

    def shortest_path_nodes(self, src: GraphNode, dst: GraphNode) -> list[GraphNode]:
        """Dijkstra over the graph. Returns the waypoint nodes from src to dst."""
        if not self.nodes:
            raise RoutingError("graph_empty", "campus graph has no waypoints")
        if src.key not in self.nodes or dst.key not in self.nodes:
            raise RoutingError("unreachable", "node is not part of this graph")
        if src.key == dst.key:
            return [src]
        if self.component_by_node.get(src.key) != self.component_by_node.get(dst.key):
            raise RoutingError(
                "unreachable",
                "start and end waypoints are not connected",
                details={"src": list(src.key), "dst": list(dst.key)},
            )

        # (cost, node_key): equal costs pop the smaller key first.
        heap: list[tuple[float, NodeKey]] = [(0.0, src.key)]
        best_cost: dict[NodeKey, float] = {src.key: 0.0}
        came_from: dict[NodeKey, NodeKey] = {}
        settled: set[NodeKey] = set()
        while heap:
            cost, node = heapq.heappop(heap)
            if node in settled:
                continue
            settled.add(node)
            if node == dst.key:
                break
            for edge in self.adjacency.get(node, ()):
                if edge.to in settled:
                    continue
                new_cost = cost + edge.distance_km
                prev_best = best_cost.get(edge.to)
                if prev_best is not None and new_cost >= prev_best:
                    continue
                best_cost[edge.to] = new_cost
                came_from[edge.to] = node
                heapq.heappush(heap, (new_cost, edge.to))

        if dst.key not in settled:
            raise RoutingError("unreachable", "no campus path between waypoints")

        keys: list[NodeKey] = [dst.key]
        while keys[-1] != src.key:
            keys.append(came_from[keys[-1]])
        keys.reverse()
        return [self.nodes[key] for key in keys]

    def path_names_along(self, nodes: Iterable[GraphNode]) -> list[str]:
        """Distinct names of the paths a node sequence walks, in walking order."""
        names: list[str] = []
        for node in nodes:
            name = self.path_names.get(node.key[0], "")
            if name and name not in names:
                names.append(name)
        return names
