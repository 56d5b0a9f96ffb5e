from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import osmium

from .models import haversine_m
from .vehicles import Vehicle, VehicleProfile, profile_for

OSM_SUFFIXES = (".pbf", ".osm", ".o5m", ".bz2", ".gz", ".opl")
GEOJSON_SUFFIXES = (".geojson", ".json")
MIN_SEGMENT_M = 0.5


@dataclass
class ExtractedNetwork:
    vehicle: Vehicle
    source: str
    nodes: dict[str, tuple[float, float]] = field(default_factory=dict)
    edges: list[dict[str, Any]] = field(default_factory=list)
    ways_seen: int = 0
    ways_kept: int = 0


def parse_maxspeed(tag: str | None) -> float | None:
    if not tag:
        return None
    raw = str(tag).strip().lower()
    if not raw:
        return None
    parts = raw.split()
    try:
        value = float(parts[0])
    except ValueError:
        return None
    if "mph" in raw:
        return value * 1.60934
    return value


def _add_way(
    network: ExtractedNetwork,
    profile: VehicleProfile,
    tags: dict[str, str],
    points: list[tuple[str, float, float]],
) -> None:
    network.ways_seen += 1
    if len(points) < 2 or not profile.allows(tags):
        return
    highway = tags.get("highway", "").strip().lower()
    direction = profile.direction(tags)
    speed_mps = profile.speed_kph(highway, parse_maxspeed(tags.get("maxspeed"))) / 3.6
    kept = False
    for idx in range(1, len(points)):
        n1, lat1, lon1 = points[idx - 1]
        n2, lat2, lon2 = points[idx]
        d_m = haversine_m(lat1, lon1, lat2, lon2)
        if d_m <= MIN_SEGMENT_M:
            continue
        network.nodes[n1] = (lat1, lon1)
        network.nodes[n2] = (lat2, lon2)
        u, v = (n2, n1) if direction == "reverse" else (n1, n2)
        network.edges.append(
            {
                "u": u,
                "v": v,
                "distance_m": d_m,
                "duration_s": d_m / speed_mps,
                "oneway": direction != "both",
                "highway": highway,
            }
        )
        kept = True
    if kept:
        network.ways_kept += 1


def extract_from_osm(*, source: Path, vehicle: Vehicle) -> ExtractedNetwork:
    """Read OSM data (PBF, XML and the other pyosmium formats)."""
    profile = profile_for(vehicle)
    network = ExtractedNetwork(vehicle=vehicle, source=str(source))

    class _WayHandler(osmium.SimpleHandler):  # type: ignore[misc]
        def way(self, w: Any) -> None:
            tags = {str(tag.k): str(tag.v) for tag in w.tags}
            if "highway" not in tags:
                return
            points: list[tuple[str, float, float]] = []
            for n in w.nodes:
                if not n.location.valid():
                    continue
                points.append((str(n.ref), float(n.location.lat), float(n.location.lon)))
            _add_way(network, profile, tags, points)

    _WayHandler().apply_file(str(source), locations=True)
    return network


def extract_from_geojson(*, source: Path, vehicle: Vehicle) -> ExtractedNetwork:
    """Read LineString/MultiLineString features whose properties carry OSM tags."""
    profile = profile_for(vehicle)
    network = ExtractedNetwork(vehicle=vehicle, source=str(source))
    payload = json.loads(source.read_text(encoding="utf-8"))
    features = payload.get("features", []) if isinstance(payload, dict) else []
    for feature in features:
        if not isinstance(feature, dict):
            continue
        geom = feature.get("geometry") or {}
        props = feature.get("properties") or {}
        if not isinstance(geom, dict) or not isinstance(props, dict):
            continue
        geom_type = str(geom.get("type", "")).lower()
        coords = geom.get("coordinates", [])
        if geom_type == "linestring":
            lines = [coords]
        elif geom_type == "multilinestring":
            lines = coords if isinstance(coords, list) else []
        else:
            continue
        tags = {str(k): str(v) for k, v in props.items() if v is not None}
        for line in lines:
            if not isinstance(line, list):
                continue
            points: list[tuple[str, float, float]] = []
            for coord in line:
                if not isinstance(coord, (list, tuple)) or len(coord) < 2:
                    continue
                lon = float(coord[0])
                lat = float(coord[1])
                points.append((f"g_{round(lat, 7)}_{round(lon, 7)}", lat, lon))
            _add_way(network, profile, tags, points)
    return network


def extract_network(*, source: Path, vehicle: Vehicle) -> ExtractedNetwork:
    name = source.name.lower()
    if name.endswith(GEOJSON_SUFFIXES):
        network = extract_from_geojson(source=source, vehicle=vehicle)
    elif name.endswith(OSM_SUFFIXES):
        network = extract_from_osm(source=source, vehicle=vehicle)
    else:
        raise ValueError(f"unsupported map format: {source.name}")
    if not network.nodes or not network.edges:
        raise RuntimeError(f"No routable {vehicle} ways were extracted from {source}.")
    return network
