from __future__ import annotations

import json
from pathlib import Path

import pytest

from mobility.graph_pool import RoutingGraphPool
from mobility.models import Position

# A small street network around (45.000, 12.000), roughly 80 m per 0.001 deg of lon.
#
#   E ====motorway====> D
#   |                   ^
#  footway              | residential, oneway
#   |                   |
#   A ---- B ---------- C        G ---- H   (isolated residential)
A = Position(lat=45.000, lon=12.000)
B = Position(lat=45.000, lon=12.001)
C = Position(lat=45.000, lon=12.002)
D = Position(lat=45.001, lon=12.002)
E = Position(lat=45.001, lon=12.000)
G = Position(lat=45.010, lon=12.010)
H = Position(lat=45.010, lon=12.011)


def node_id(position: Position) -> str:
    return f"g_{round(position.lat, 7)}_{round(position.lon, 7)}"


def _line(tags: dict[str, str], *points: Position) -> dict[str, object]:
    return {
        "type": "Feature",
        "properties": tags,
        "geometry": {"type": "LineString", "coordinates": [list(p.as_lon_lat()) for p in points]},
    }


def write_street_geojson(path: Path) -> Path:
    payload = {
        "type": "FeatureCollection",
        "features": [
            _line({"highway": "residential", "name": "Main"}, A, B, C),
            _line({"highway": "residential", "oneway": "yes"}, C, D),
            _line({"highway": "footway"}, A, E),
            _line({"highway": "motorway"}, E, D),
            _line({"highway": "residential", "access": "private"}, B, E),
            _line({"highway": "residential"}, G, H),
            {"type": "Feature", "properties": {"amenity": "cafe"}, "geometry": {"type": "Point", "coordinates": [12.0, 45.0]}},
        ],
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def street_map(tmp_path: Path) -> Path:
    return write_street_geojson(tmp_path / "streets.geojson")


@pytest.fixture
def graph_pool(street_map: Path, tmp_path: Path) -> RoutingGraphPool:
    pool = RoutingGraphPool(snap_radius_m=50.0, max_workers=3)
    report = pool.initialize(street_map, tmp_path / "workspace")
    assert report == {"foot": "ready", "bike": "ready", "car": "ready"}
    return pool
