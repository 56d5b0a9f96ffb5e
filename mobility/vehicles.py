from __future__ import annotations

from collections.abc import Mapping
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Vehicle(str, Enum):
    """Travel modes with their own routing graph and cost model."""

    FOOT = "foot"
    BIKE = "bike"
    CAR = "car"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Vehicle | str) -> Vehicle:
        if isinstance(value, cls):
            return value
        raw = str(value).strip().lower()
        for member in cls:
            if raw in {member.value, member.name.lower()}:
                return member
        raise ValueError(f"unknown vehicle '{value}'")


_DENY_VALUES = frozenset({"no", "private", "agricultural", "forestry", "delivery"})
_ALLOW_VALUES = frozenset({"yes", "designated", "permissive", "destination", "customers"})
ROUTABLE_HIGHWAYS = frozenset(
    {
        "motorway",
        "motorway_link",
        "trunk",
        "trunk_link",
        "primary",
        "primary_link",
        "secondary",
        "secondary_link",
        "tertiary",
        "tertiary_link",
        "unclassified",
        "residential",
        "living_street",
        "service",
        "road",
        "track",
        "path",
        "cycleway",
        "footway",
        "pedestrian",
        "bridleway",
        "steps",
    }
)


class VehicleProfile(BaseModel):
    """Per-mode encoding: which ways are routable and how fast they are."""

    model_config = ConfigDict(frozen=True)

    vehicle: Vehicle
    highway_speeds_kph: dict[str, float]
    # Most general first, most specific last; the most specific tag present wins.
    access_tags: tuple[str, ...]
    honors_oneway: bool = True
    oneway_exemption_tag: str | None = None
    honors_maxspeed: bool = False
    max_speed_kph: float = Field(..., gt=0.0, le=200.0)

    @field_validator("highway_speeds_kph")
    @classmethod
    def _positive_speeds(cls, value: dict[str, float]) -> dict[str, float]:
        for highway, speed in value.items():
            if highway not in ROUTABLE_HIGHWAYS:
                raise ValueError(f"unknown highway class '{highway}'")
            if speed <= 0:
                raise ValueError(f"speed for '{highway}' must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_profile(self) -> VehicleProfile:
        if not self.highway_speeds_kph:
            raise ValueError("profile must allow at least one highway class")
        if not self.access_tags:
            raise ValueError("profile must declare access tags")
        return self

    def allows(self, tags: Mapping[str, str]) -> bool:
        highway = str(tags.get("highway", "")).strip().lower()
        if highway not in ROUTABLE_HIGHWAYS:
            return False
        if str(tags.get("area", "")).strip().lower() == "yes":
            return False
        for tag in reversed(self.access_tags):
            value = str(tags.get(tag, "")).strip().lower()
            if not value:
                continue
            if value in _DENY_VALUES:
                return False
            if value in _ALLOW_VALUES:
                return True
        return highway in self.highway_speeds_kph

    def speed_kph(self, highway: str, maxspeed_kph: float | None = None) -> float:
        # Ways admitted only through an explicit access tag fall back to the slowest class.
        base = self.highway_speeds_kph.get(highway, min(self.highway_speeds_kph.values()))
        if self.honors_maxspeed and maxspeed_kph is not None and maxspeed_kph > 0:
            base = maxspeed_kph
        return max(1.0, min(self.max_speed_kph, base))

    def direction(self, tags: Mapping[str, str]) -> str:
        """Return ``both``, ``forward`` or ``reverse`` for a way's traversal."""
        if not self.honors_oneway:
            return "both"
        if self.oneway_exemption_tag:
            exemption = str(tags.get(self.oneway_exemption_tag, "")).strip().lower()
            if exemption == "no":
                return "both"
        raw = str(tags.get("oneway", "")).strip().lower()
        if raw in {"yes", "true", "1", "forward"}:
            return "forward"
        if raw in {"-1", "reverse", "backward"}:
            return "reverse"
        highway = str(tags.get("highway", "")).strip().lower()
        junction = str(tags.get("junction", "")).strip().lower()
        if raw != "no" and (highway in {"motorway", "motorway_link"} or junction == "roundabout"):
            return "forward"
        return "both"


PROFILES: dict[Vehicle, VehicleProfile] = {
    Vehicle.FOOT: VehicleProfile(
        vehicle=Vehicle.FOOT,
        highway_speeds_kph={
            "primary": 5.0,
            "primary_link": 5.0,
            "secondary": 5.0,
            "secondary_link": 5.0,
            "tertiary": 5.0,
            "tertiary_link": 5.0,
            "unclassified": 5.0,
            "residential": 5.0,
            "living_street": 5.0,
            "service": 5.0,
            "road": 5.0,
            "track": 4.5,
            "path": 4.5,
            "cycleway": 5.0,
            "footway": 5.0,
            "pedestrian": 5.0,
            "bridleway": 4.5,
            "steps": 2.0,
        },
        access_tags=("access", "foot"),
        honors_oneway=False,
        max_speed_kph=6.0,
    ),
    Vehicle.BIKE: VehicleProfile(
        vehicle=Vehicle.BIKE,
        highway_speeds_kph={
            "primary": 18.0,
            "primary_link": 18.0,
            "secondary": 18.0,
            "secondary_link": 18.0,
            "tertiary": 18.0,
            "tertiary_link": 18.0,
            "unclassified": 16.0,
            "residential": 16.0,
            "living_street": 10.0,
            "service": 12.0,
            "road": 14.0,
            "track": 10.0,
            "path": 10.0,
            "cycleway": 18.0,
        },
        access_tags=("access", "vehicle", "bicycle"),
        honors_oneway=True,
        oneway_exemption_tag="oneway:bicycle",
        max_speed_kph=30.0,
    ),
    Vehicle.CAR: VehicleProfile(
        vehicle=Vehicle.CAR,
        highway_speeds_kph={
            "motorway": 110.0,
            "motorway_link": 60.0,
            "trunk": 90.0,
            "trunk_link": 50.0,
            "primary": 65.0,
            "primary_link": 45.0,
            "secondary": 55.0,
            "secondary_link": 40.0,
            "tertiary": 45.0,
            "tertiary_link": 35.0,
            "unclassified": 35.0,
            "residential": 30.0,
            "living_street": 10.0,
            "service": 15.0,
            "road": 30.0,
        },
        access_tags=("access", "vehicle", "motor_vehicle", "motorcar"),
        honors_oneway=True,
        honors_maxspeed=True,
        max_speed_kph=130.0,
    ),
}


def profile_for(vehicle: Vehicle | str) -> VehicleProfile:
    return PROFILES[Vehicle.parse(vehicle)]
