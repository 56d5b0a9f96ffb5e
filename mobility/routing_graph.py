from __future__ import annotations

import json
import math
import os
import re
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import ijson

from .errors import GraphFormatVersionError
from .models import Position, Route, haversine_m
from .osm_extract import ExtractedNetwork
from .shortest_path import PathNotFoundError, PathResult, astar, bidirectional_dijkstra, dijkstra
from .vehicles import Vehicle, profile_for

GRAPH_FORMAT_VERSION = "mobility-graph-v2"
GRAPH_FILE = "graph.json"
GRAPH_META_FILE = "graph.meta.json"
GRID_BUCKET_DEG = 0.01
WEIGHTINGS = ("fastest", "shortest")
_M_PER_DEG_LAT = 111_320.0


def _iso_utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _grid_key(lat: float, lon: float, bucket_deg: float = GRID_BUCKET_DEG) -> tuple[int, int]:
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def _cells_within(lat: float, lon: float, radius_m: float) -> list[tuple[int, int]]:
    dlat = radius_m / _M_PER_DEG_LAT
    dlon = radius_m / (_M_PER_DEG_LAT * max(0.01, math.cos(math.radians(lat))))
    lo = _grid_key(lat - dlat, lon - dlon)
    hi = _grid_key(lat + dlat, lon + dlon)
    return [(i, j) for i in range(lo[0], hi[0] + 1) for j in range(lo[1], hi[1] + 1)]


@dataclass(frozen=True)
class GraphEdge:
    to: str
    distance_m: float
    duration_s: float
    highway: str

    def cost(self, weighting: str) -> float:
        return self.distance_m if weighting == "shortest" else self.duration_s


@dataclass(frozen=True)
class RoutingGraph:
    version: str
    source: str
    vehicle: Vehicle
    nodes: dict[str, tuple[float, float]]
    adjacency: dict[str, tuple[GraphEdge, ...]]
    edge_index: dict[tuple[str, str], GraphEdge]
    node_grid: dict[tuple[int, int], tuple[str, ...]]
    segment_grid: dict[tuple[int, int], tuple[tuple[str, str], ...]]
    cost_views: dict[str, dict[str, tuple[tuple[str, float], ...]]]
    reverse_cost_views: dict[str, dict[str, tuple[tuple[str, float], ...]]]
    component_by_node: dict[str, int]
    component_sizes: dict[int, int]

    @property
    def edge_count(self) -> int:
        return len(self.edge_index)


# ---------------------------------------------------------------------------
# Artifact persistence
# ---------------------------------------------------------------------------


def graph_artifact_path(directory: Path) -> Path:
    return Path(directory) / GRAPH_FILE


def has_graph_artifact(directory: Path) -> bool:
    return graph_artifact_path(directory).is_file()


def write_graph_artifact(network: ExtractedNetwork, directory: Path) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    generated_at_utc = _iso_utc_now()
    payload = {
        "version": GRAPH_FORMAT_VERSION,
        "vehicle": network.vehicle.value,
        "source": network.source,
        "generated_at_utc": generated_at_utc,
        "nodes": [{"id": node_id, "lat": lat, "lon": lon} for node_id, (lat, lon) in network.nodes.items()],
        "edges": network.edges,
    }
    path = graph_artifact_path(directory)
    # Concurrent builders of the same workspace overwrite each other wholesale.
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp_path.write_text(json.dumps(payload), encoding="utf-8")
    os.replace(tmp_path, path)
    (directory / GRAPH_META_FILE).write_text(
        json.dumps(
            {
                "version": GRAPH_FORMAT_VERSION,
                "vehicle": network.vehicle.value,
                "source": network.source,
                "generated_at_utc": generated_at_utc,
                "nodes": len(network.nodes),
                "edges": len(network.edges),
                "ways_seen": network.ways_seen,
                "ways_kept": network.ways_kept,
            },
            indent=2,
        ),
        encoding="utf-8",
    )
    return path


def _graph_meta_from_head(path: Path) -> tuple[str, str, str]:
    with path.open("rb") as fh:
        head = fh.read(65_536).decode("utf-8", errors="ignore")
    version_match = re.search(r'"version"\s*:\s*"([^"]+)"', head)
    source_match = re.search(r'"source"\s*:\s*"([^"]*)"', head)
    vehicle_match = re.search(r'"vehicle"\s*:\s*"([^"]+)"', head)
    version = version_match.group(1) if version_match else "unknown"
    source = source_match.group(1) if source_match else str(path)
    vehicle = vehicle_match.group(1) if vehicle_match else ""
    return version, source, vehicle


def _as_float(raw: object) -> float | None:
    if not isinstance(raw, (int, float, str, Decimal)) or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def _parse_node(raw: dict[str, object]) -> tuple[str, float, float] | None:
    node_id_raw = raw.get("id")
    if node_id_raw is None:
        return None
    lat = _as_float(raw.get("lat"))
    lon = _as_float(raw.get("lon"))
    if lat is None or lon is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return (str(node_id_raw), lat, lon)


def _parse_edge(raw: object) -> tuple[str, str, GraphEdge, bool] | None:
    if not isinstance(raw, dict):
        return None
    u = raw.get("u")
    v = raw.get("v")
    if u is None or v is None:
        return None
    distance_m = _as_float(raw.get("distance_m"))
    duration_s = _as_float(raw.get("duration_s"))
    if distance_m is None or duration_s is None:
        return None
    highway = str(raw.get("highway", "unclassified")).strip().lower() or "unclassified"
    edge = GraphEdge(
        to=str(v),
        distance_m=max(0.0, distance_m),
        duration_s=max(0.0, duration_s),
        highway=highway,
    )
    return (str(u), str(v), edge, bool(raw.get("oneway", False)))


def _compute_component_index(
    nodes: dict[str, tuple[float, float]],
    adjacency_mut: dict[str, list[GraphEdge]],
) -> tuple[dict[str, int], dict[int, int]]:
    undirected: dict[str, set[str]] = {}
    for src, edges in adjacency_mut.items():
        out = undirected.setdefault(src, set())
        for edge in edges:
            out.add(edge.to)
            undirected.setdefault(edge.to, set()).add(src)
    component_by_node: dict[str, int] = {}
    component_sizes: dict[int, int] = {}
    component_idx = 0
    for node_id in nodes:
        if node_id in component_by_node:
            continue
        component_idx += 1
        q: deque[str] = deque([node_id])
        size = 0
        while q:
            current = q.popleft()
            if current in component_by_node:
                continue
            component_by_node[current] = component_idx
            size += 1
            for nxt in undirected.get(current, ()):
                if nxt not in component_by_node:
                    q.append(nxt)
        component_sizes[component_idx] = size
    return component_by_node, component_sizes


def _add_edge(
    edge_index: dict[tuple[str, str], GraphEdge],
    u: str,
    edge: GraphEdge,
) -> None:
    # Parallel ways between the same nodes collapse onto the quicker one.
    prior = edge_index.get((u, edge.to))
    if prior is None or edge.duration_s < prior.duration_s:
        edge_index[(u, edge.to)] = edge


def _finalize_graph(
    *,
    version: str,
    source: str,
    vehicle: Vehicle,
    nodes: dict[str, tuple[float, float]],
    edge_index: dict[tuple[str, str], GraphEdge],
) -> RoutingGraph:
    adjacency_mut: dict[str, list[GraphEdge]] = {}
    reverse_mut: dict[str, list[tuple[str, GraphEdge]]] = {}
    segment_grid_mut: dict[tuple[int, int], set[tuple[str, str]]] = {}
    for (u, v), edge in edge_index.items():
        adjacency_mut.setdefault(u, []).append(edge)
        reverse_mut.setdefault(v, []).append((u, edge))
        a, b = (u, v) if u <= v else (v, u)
        lat1, lon1 = nodes[a]
        lat2, lon2 = nodes[b]
        lo = _grid_key(min(lat1, lat2), min(lon1, lon2))
        hi = _grid_key(max(lat1, lat2), max(lon1, lon2))
        for i in range(lo[0], hi[0] + 1):
            for j in range(lo[1], hi[1] + 1):
                segment_grid_mut.setdefault((i, j), set()).add((a, b))

    node_grid_mut: dict[tuple[int, int], list[str]] = {}
    for node_id, (lat, lon) in nodes.items():
        node_grid_mut.setdefault(_grid_key(lat, lon), []).append(node_id)

    component_by_node, component_sizes = _compute_component_index(nodes, adjacency_mut)
    cost_views = {
        weighting: {
            node: tuple((edge.to, edge.cost(weighting)) for edge in edges)
            for node, edges in adjacency_mut.items()
        }
        for weighting in WEIGHTINGS
    }
    reverse_cost_views = {
        weighting: {
            node: tuple((src, edge.cost(weighting)) for src, edge in incoming)
            for node, incoming in reverse_mut.items()
        }
        for weighting in WEIGHTINGS
    }
    return RoutingGraph(
        version=version,
        source=source,
        vehicle=vehicle,
        nodes=nodes,
        adjacency={k: tuple(v) for k, v in adjacency_mut.items()},
        edge_index=edge_index,
        node_grid={key: tuple(values) for key, values in node_grid_mut.items()},
        segment_grid={key: tuple(sorted(values)) for key, values in segment_grid_mut.items()},
        cost_views=cost_views,
        reverse_cost_views=reverse_cost_views,
        component_by_node=component_by_node,
        component_sizes=component_sizes,
    )


def graph_from_network(network: ExtractedNetwork) -> RoutingGraph:
    edge_index: dict[tuple[str, str], GraphEdge] = {}
    for raw in network.edges:
        parsed = _parse_edge(raw)
        if parsed is None:
            continue
        u, v, edge, oneway = parsed
        if u not in network.nodes or v not in network.nodes:
            continue
        _add_edge(edge_index, u, edge)
        if not oneway:
            _add_edge(edge_index, v, GraphEdge(u, edge.distance_m, edge.duration_s, edge.highway))
    return _finalize_graph(
        version=GRAPH_FORMAT_VERSION,
        source=network.source,
        vehicle=network.vehicle,
        nodes=dict(network.nodes),
        edge_index=edge_index,
    )


def load_graph_artifact(directory: Path, *, vehicle: Vehicle) -> RoutingGraph:
    """Stream a persisted graph back into memory.

    Raises GraphFormatVersionError when the artifact was written by another
    graph format, so the caller can discard and rebuild it.
    """
    path = graph_artifact_path(directory)
    version, source, stored_vehicle = _graph_meta_from_head(path)
    if version != GRAPH_FORMAT_VERSION:
        raise GraphFormatVersionError(
            f"Version of graph {version} unsupported (expected {GRAPH_FORMAT_VERSION})",
            details={"path": str(path), "found": version, "expected": GRAPH_FORMAT_VERSION},
        )
    if stored_vehicle and stored_vehicle != vehicle.value:
        raise ValueError(f"graph at {path} was built for {stored_vehicle}, not {vehicle}")

    nodes: dict[str, tuple[float, float]] = {}
    with path.open("rb") as fh:
        for raw_node in ijson.items(fh, "nodes.item"):
            parsed_node = _parse_node(raw_node)
            if parsed_node is not None:
                node_id, lat, lon = parsed_node
                nodes[node_id] = (lat, lon)
    if not nodes:
        raise ValueError(f"graph at {path} has no nodes")

    edge_index: dict[tuple[str, str], GraphEdge] = {}
    with path.open("rb") as fh:
        for raw_edge in ijson.items(fh, "edges.item"):
            parsed_edge = _parse_edge(raw_edge)
            if parsed_edge is None:
                continue
            u, v, edge, oneway = parsed_edge
            if u not in nodes or v not in nodes:
                continue
            _add_edge(edge_index, u, edge)
            if not oneway:
                _add_edge(edge_index, v, GraphEdge(u, edge.distance_m, edge.duration_s, edge.highway))
    if not edge_index:
        raise ValueError(f"graph at {path} has no usable edges")
    return _finalize_graph(
        version=version,
        source=source,
        vehicle=vehicle,
        nodes=nodes,
        edge_index=edge_index,
    )


# ---------------------------------------------------------------------------
# Spatial queries
# ---------------------------------------------------------------------------


def nearest_node_candidates(
    graph: RoutingGraph,
    *,
    lat: float,
    lon: float,
    max_distance_m: float,
    max_candidates: int = 8,
) -> list[tuple[str, float]]:
    best: list[tuple[float, str]] = []
    for cell in _cells_within(lat, lon, max_distance_m):
        for node_id in graph.node_grid.get(cell, ()):
            n_lat, n_lon = graph.nodes[node_id]
            dist = haversine_m(lat, lon, n_lat, n_lon)
            if dist <= max_distance_m:
                best.append((dist, node_id))
    best.sort()
    return [(node_id, dist) for dist, node_id in best[: max(1, int(max_candidates))]]


def _project_onto_segment(
    lat: float,
    lon: float,
    a: tuple[float, float],
    b: tuple[float, float],
) -> tuple[float, float]:
    # Local equirectangular frame centred on the query point.
    kx = math.cos(math.radians(lat))
    ax, ay = (a[1] - lon) * kx, a[0] - lat
    bx, by = (b[1] - lon) * kx, b[0] - lat
    dx, dy = bx - ax, by - ay
    length_sq = dx * dx + dy * dy
    t = 0.0 if length_sq <= 0.0 else max(0.0, min(1.0, -(ax * dx + ay * dy) / length_sq))
    px, py = ax + t * dx, ay + t * dy
    return (lat + py, lon + (px / kx if kx > 0.0 else 0.0))


def snap_to_nearest_road(graph: RoutingGraph, position: Position, *, max_distance_m: float) -> Position | None:
    best_dist = math.inf
    best_point: tuple[float, float] | None = None
    seen: set[tuple[str, str]] = set()
    for cell in _cells_within(position.lat, position.lon, max_distance_m):
        for segment in graph.segment_grid.get(cell, ()):
            if segment in seen:
                continue
            seen.add(segment)
            lat, lon = _project_onto_segment(
                position.lat,
                position.lon,
                graph.nodes[segment[0]],
                graph.nodes[segment[1]],
            )
            dist = haversine_m(position.lat, position.lon, lat, lon)
            if dist < best_dist:
                best_dist = dist
                best_point = (lat, lon)
    if best_point is None or best_dist > max_distance_m:
        return None
    return Position(lat=best_point[0], lon=max(-180.0, min(180.0, best_point[1])))


def _select_component_aligned_od_nodes(
    origin_candidates: list[tuple[str, float]],
    destination_candidates: list[tuple[str, float]],
    component_by_node: dict[str, int],
) -> tuple[str, str] | None:
    destination_best_by_component: dict[int, tuple[str, float]] = {}
    for node_id, dist in destination_candidates:
        component = component_by_node.get(node_id)
        if component is None:
            continue
        prior = destination_best_by_component.get(component)
        if prior is None or dist < prior[1]:
            destination_best_by_component[component] = (node_id, dist)
    best: tuple[str, str] | None = None
    best_score = math.inf
    for node_id, dist in origin_candidates:
        component = component_by_node.get(node_id)
        match = destination_best_by_component.get(component) if component is not None else None
        if match is None:
            continue
        if dist + match[1] < best_score:
            best_score = dist + match[1]
            best = (node_id, match[0])
    return best


def _search(
    graph: RoutingGraph,
    *,
    start: str,
    goal: str,
    algorithm: str,
    weighting: str,
    deadline_monotonic_s: float | None,
) -> PathResult:
    adjacency = graph.cost_views[weighting]
    if algorithm == "dijkstrabi":
        return bidirectional_dijkstra(
            adjacency=adjacency,
            reverse_adjacency=graph.reverse_cost_views[weighting],
            start=start,
            goal=goal,
            deadline_monotonic_s=deadline_monotonic_s,
        )
    if algorithm == "astar":
        goal_lat, goal_lon = graph.nodes[goal]
        max_speed_mps = profile_for(graph.vehicle).max_speed_kph / 3.6
        divisor = 1.0 if weighting == "shortest" else max_speed_mps

        def _heuristic(node: str) -> float:
            lat, lon = graph.nodes[node]
            return haversine_m(lat, lon, goal_lat, goal_lon) / divisor

        return astar(
            adjacency=adjacency,
            start=start,
            goal=goal,
            heuristic=_heuristic,
            deadline_monotonic_s=deadline_monotonic_s,
        )
    if algorithm == "dijkstra":
        return dijkstra(adjacency=adjacency, start=start, goal=goal, deadline_monotonic_s=deadline_monotonic_s)
    raise ValueError(f"unknown routing algorithm '{algorithm}'")


def compute_route(
    graph: RoutingGraph,
    *,
    origin: Position,
    destination: Position,
    algorithm: str,
    weighting: str,
    max_snap_distance_m: float,
    deadline_monotonic_s: float | None = None,
) -> Route | None:
    """Shortest path between the network nodes nearest to origin and destination.

    Returns None when either end is farther than ``max_snap_distance_m`` from
    the network or the two ends are not connected. Distance and duration
    cover the network part of the trip only.
    """
    if weighting not in WEIGHTINGS:
        raise ValueError(f"unknown weighting '{weighting}'")
    origin_candidates = nearest_node_candidates(
        graph, lat=origin.lat, lon=origin.lon, max_distance_m=max_snap_distance_m
    )
    destination_candidates = nearest_node_candidates(
        graph, lat=destination.lat, lon=destination.lon, max_distance_m=max_snap_distance_m
    )
    selected = _select_component_aligned_od_nodes(
        origin_candidates, destination_candidates, graph.component_by_node
    )
    if selected is None:
        return None
    start, goal = selected
    try:
        result = _search(
            graph,
            start=start,
            goal=goal,
            algorithm=algorithm,
            weighting=weighting,
            deadline_monotonic_s=deadline_monotonic_s,
        )
    except PathNotFoundError:
        return None
    distance_m = 0.0
    duration_s = 0.0
    for u, v in zip(result.nodes, result.nodes[1:]):
        edge = graph.edge_index[(u, v)]
        distance_m += edge.distance_m
        duration_s += edge.duration_s
    return Route(
        vehicle=graph.vehicle,
        points=tuple(Position(lat=graph.nodes[n][0], lon=graph.nodes[n][1]) for n in result.nodes),
        distance_m=distance_m,
        duration_s=duration_s,
        node_ids=result.nodes,
    )


def graph_summary(graph: RoutingGraph) -> dict[str, Any]:
    return {
        "version": graph.version,
        "source": graph.source,
        "nodes": len(graph.nodes),
        "edges": graph.edge_count,
        "components": len(graph.component_sizes),
        "largest_component_nodes": max(graph.component_sizes.values(), default=0),
    }
