from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Lock

from .errors import AgentNotAdmitted, RouteComputationFailure, SnapFailure
from .graph_pool import RoutingGraphPool
from .logging_utils import log_event
from .models import Position, Route
from .route_cache import RouteCache
from .settings import Settings, settings
from .traces import Trace, TracePlayer
from .vehicles import Vehicle
from .workspace import WorkspaceResolver, default_candidate_roots


class PlacementState(str, Enum):
    TRACED = "traced"
    STATIC = "static"


@dataclass(frozen=True)
class Placement:
    state: PlacementState
    initial_position: Position


class MobilityEnvironment:
    """Where agents are, and how they get between places.

    Each admitted agent is either *traced* (driven by a recorded trace) or
    *static* (placed once, optionally snapped to the street network). The
    decision is taken at admission and never revisited.
    """

    def __init__(
        self,
        *,
        pool: RoutingGraphPool,
        cache: RouteCache | None = None,
        player: TracePlayer | None = None,
        on_streets: bool | None = None,
        only_on_streets: bool | None = None,
        snap_vehicle: Vehicle | str | None = None,
    ) -> None:
        self._pool = pool
        self._cache = cache if cache is not None else RouteCache(pool)
        self._player = player if player is not None else TracePlayer()
        self._on_streets = settings.on_streets if on_streets is None else bool(on_streets)
        self._only_on_streets = settings.only_on_streets if only_on_streets is None else bool(only_on_streets)
        self._snap_vehicle = Vehicle.parse(snap_vehicle if snap_vehicle is not None else settings.snap_vehicle)
        self._lock = Lock()
        self._placements: dict[int, Placement] = {}
        self._static_positions: dict[int, Position] = {}

    @property
    def pool(self) -> RoutingGraphPool:
        return self._pool

    @property
    def cache(self) -> RouteCache:
        return self._cache

    @property
    def player(self) -> TracePlayer:
        return self._player

    def _snap(self, position: Position) -> Position:
        snapped = self._pool.snap_to_nearest_road(self._snap_vehicle, position)
        if snapped is None:
            raise SnapFailure(
                f"No {self._snap_vehicle} road within reach of {position}",
                details={"vehicle": self._snap_vehicle.value, "lat": position.lat, "lon": position.lon},
            )
        return snapped

    def admit(self, agent_id: int, declared_position: Position) -> bool:
        """Register an agent; returns False when it must stay out of the simulation.

        The only rejection: no trace, streets are mandatory, and no road is
        close enough to the declared position. Admitting an agent twice keeps
        the first placement.
        """
        with self._lock:
            if agent_id in self._placements:
                return True
        if self._player.has_trace(agent_id):
            placement = Placement(PlacementState.TRACED, self._player.position_at(agent_id, 0.0))
        else:
            position = declared_position
            if self._on_streets or self._only_on_streets:
                try:
                    snapped = self._snap(declared_position)
                except SnapFailure as exc:
                    if self._only_on_streets:
                        log_event(
                            "agent_rejected",
                            level=logging.INFO,
                            agent_id=agent_id,
                            reason_code=exc.reason_code,
                            lat=declared_position.lat,
                            lon=declared_position.lon,
                        )
                        return False
                else:
                    if self._on_streets:
                        position = snapped
            placement = Placement(PlacementState.STATIC, position)
        with self._lock:
            if agent_id in self._placements:
                return True
            self._placements[agent_id] = placement
            if placement.state is PlacementState.STATIC:
                self._static_positions[agent_id] = placement.initial_position
        return True

    def placement(self, agent_id: int) -> Placement:
        with self._lock:
            placement = self._placements.get(agent_id)
        if placement is None:
            raise AgentNotAdmitted(agent_id)
        return placement

    def is_admitted(self, agent_id: int) -> bool:
        with self._lock:
            return agent_id in self._placements

    def admitted_agents(self) -> tuple[int, ...]:
        with self._lock:
            return tuple(sorted(self._placements))

    def initial_position(self, agent_id: int) -> Position:
        return self.placement(agent_id).initial_position

    def trace_for(self, agent_id: int) -> Trace | None:
        if self.placement(agent_id).state is PlacementState.TRACED:
            return self._player.trace(agent_id)
        return None

    def move_to(self, agent_id: int, position: Position) -> None:
        if self.placement(agent_id).state is PlacementState.TRACED:
            raise ValueError(f"agent {agent_id} follows a trace and cannot be moved")
        with self._lock:
            self._static_positions[agent_id] = position

    def _static_position(self, agent_id: int) -> Position:
        with self._lock:
            return self._static_positions[agent_id]

    def position_at(self, agent_id: int, time: float) -> Position:
        if self.placement(agent_id).state is PlacementState.TRACED:
            return self._player.position_at(agent_id, time)
        return self._static_position(agent_id)

    def next_position(self, agent_id: int, time: float) -> Position:
        if self.placement(agent_id).state is PlacementState.TRACED:
            return self._player.next_position_after(agent_id, time)
        return self._static_position(agent_id)

    def previous_position(self, agent_id: int, time: float) -> Position:
        if self.placement(agent_id).state is PlacementState.TRACED:
            return self._player.previous_position_before(agent_id, time)
        return self._static_position(agent_id)

    def expected_position(self, agent_id: int, time: float) -> Position:
        if self.placement(agent_id).state is PlacementState.TRACED:
            return self._player.interpolated_position_at(agent_id, time)
        return self._static_position(agent_id)

    def route_between(self, vehicle: Vehicle | str, origin: Position, destination: Position) -> Route | None:
        try:
            return self._cache.get_route(vehicle, origin, destination)
        except RouteComputationFailure:
            # Already logged by the cache; callers retry on their own schedule.
            return None

    def route_from_agent(
        self,
        agent_id: int,
        destination: Position,
        vehicle: Vehicle | str = Vehicle.CAR,
        *,
        time: float = 0.0,
    ) -> Route | None:
        return self.route_between(vehicle, self.position_at(agent_id, time), destination)


def build_environment(config: Settings | None = None, *, workspace_roots: list[Path] | None = None) -> MobilityEnvironment:
    """Resolve the workspace, build every routing graph and load traces."""
    cfg = config if config is not None else settings
    if not cfg.map_file.strip():
        raise ValueError("MAP_FILE is required to build a mobility environment")
    map_file = Path(cfg.map_file)
    roots = workspace_roots if workspace_roots is not None else default_candidate_roots(cfg)
    workspace = WorkspaceResolver(roots).resolve(map_file)
    pool = RoutingGraphPool(
        snap_radius_m=cfg.snap_radius_m,
        max_workers=cfg.graph_build_workers or len(Vehicle),
    )
    pool.initialize(map_file, workspace)
    player = TracePlayer()
    if cfg.trace_file.strip():
        player.load(
            Path(cfg.trace_file),
            min_timestamp=cfg.trace_min_time,
            use_embedded_ids=cfg.trace_use_ids,
        )
    cache = RouteCache(
        pool,
        max_entries=cfg.route_cache_max_entries,
        max_idle_s=cfg.route_cache_max_idle_s,
        search_timeout_s=cfg.route_search_timeout_s,
    )
    return MobilityEnvironment(
        pool=pool,
        cache=cache,
        player=player,
        on_streets=cfg.on_streets,
        only_on_streets=cfg.only_on_streets,
        snap_vehicle=cfg.snap_vehicle,
    )
