from __future__ import annotations

import math
from dataclasses import dataclass

from .vehicles import Vehicle

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


@dataclass(frozen=True)
class Position:
    """A WGS84 point, latitude first.

    Map sources (GeoJSON, OSM tooling) usually speak ``lon, lat``; convert at
    the boundary with :meth:`from_lon_lat` / :meth:`as_lon_lat` rather than
    building positions with swapped arguments.
    """

    lat: float
    lon: float

    def __post_init__(self) -> None:
        lat = float(self.lat)
        lon = float(self.lon)
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise ValueError("position coordinates must be finite")
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
            raise ValueError(f"position out of range: lat={lat}, lon={lon}")
        object.__setattr__(self, "lat", lat)
        object.__setattr__(self, "lon", lon)

    @classmethod
    def from_lon_lat(cls, lon: float, lat: float) -> Position:
        return cls(lat=lat, lon=lon)

    def as_lon_lat(self) -> tuple[float, float]:
        return (self.lon, self.lat)

    def distance_m(self, other: Position) -> float:
        return haversine_m(self.lat, self.lon, other.lat, other.lon)


@dataclass(frozen=True)
class RouteKey:
    vehicle: Vehicle
    origin: Position
    destination: Position


@dataclass(frozen=True)
class Route:
    vehicle: Vehicle
    points: tuple[Position, ...]
    distance_m: float
    duration_s: float
    node_ids: tuple[str, ...] = ()

    @property
    def start(self) -> Position:
        return self.points[0]

    @property
    def end(self) -> Position:
        return self.points[-1]

    def __len__(self) -> int:
        return len(self.points)
