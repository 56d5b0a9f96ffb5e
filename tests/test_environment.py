from __future__ import annotations

from pathlib import Path

import pytest

import mobility.graph_pool as graph_pool_mod
import mobility.route_cache as route_cache_mod
from conftest import A, C, D, node_id
from mobility.environment import MobilityEnvironment, PlacementState, build_environment
from mobility.errors import AgentNotAdmitted
from mobility.graph_pool import RoutingGraphPool
from mobility.models import Position
from mobility.settings import Settings
from mobility.traces import Trace, TracePlayer, TracePoint
from mobility.vehicles import Vehicle

NEAR_ROAD = Position(lat=45.0003, lon=12.0005)
OFF_ROAD = Position(lat=45.5, lon=12.5)


def _player() -> TracePlayer:
    trace = Trace(
        agent_id=1,
        points=(
            TracePoint(0.0, A),
            TracePoint(10.0, C),
            TracePoint(20.0, D),
        ),
    )
    return TracePlayer.from_traces([trace])


def _env(pool: RoutingGraphPool, **kwargs) -> MobilityEnvironment:
    return MobilityEnvironment(pool=pool, player=_player(), snap_vehicle=Vehicle.BIKE, **kwargs)


def test_traced_agent_starts_on_its_trace(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=True, only_on_streets=True)

    assert env.admit(1, OFF_ROAD) is True
    assert env.placement(1).state is PlacementState.TRACED
    assert env.initial_position(1) == A
    assert env.position_at(1, 12.0) == C
    assert env.next_position(1, 12.0) == D
    assert env.previous_position(1, 12.0) == C
    assert env.expected_position(1, 5.0).lon == pytest.approx(12.001)
    assert env.trace_for(1) is not None
    with pytest.raises(ValueError, match="follows a trace"):
        env.move_to(1, C)


def test_static_agent_is_snapped_to_street(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=True, only_on_streets=True)

    assert env.admit(2, NEAR_ROAD) is True
    placement = env.placement(2)
    assert placement.state is PlacementState.STATIC
    assert placement.initial_position.lat == pytest.approx(45.0, abs=1e-6)
    assert placement.initial_position.lon == pytest.approx(12.0005, abs=1e-6)
    assert env.position_at(2, 99.0) == placement.initial_position
    assert env.trace_for(2) is None


def test_agent_off_street_is_rejected_when_streets_mandatory(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=True, only_on_streets=True)

    assert env.admit(3, OFF_ROAD) is False
    assert not env.is_admitted(3)
    with pytest.raises(AgentNotAdmitted):
        env.placement(3)
    with pytest.raises(KeyError):
        env.position_at(3, 0.0)


def test_snap_failure_falls_back_to_declared_position(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=True, only_on_streets=False)

    assert env.admit(4, OFF_ROAD) is True
    assert env.initial_position(4) == OFF_ROAD


def test_snap_check_without_moving_agent(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=False, only_on_streets=True)

    assert env.admit(5, NEAR_ROAD) is True
    assert env.initial_position(5) == NEAR_ROAD
    assert env.admit(6, OFF_ROAD) is False


def test_no_street_policy_keeps_declared_position(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=False, only_on_streets=False)

    assert env.admit(7, OFF_ROAD) is True
    assert env.initial_position(7) == OFF_ROAD
    env.move_to(7, NEAR_ROAD)
    assert env.position_at(7, 0.0) == NEAR_ROAD
    assert env.expected_position(7, 50.0) == NEAR_ROAD
    assert env.admitted_agents() == (7,)


def test_second_admission_keeps_first_placement(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=True, only_on_streets=True)

    assert env.admit(5, NEAR_ROAD) is True
    first = env.placement(5)
    env.move_to(5, A)

    assert env.admit(5, Position(lat=45.0004, lon=12.0015)) is True
    assert env.admit(5, OFF_ROAD) is True
    assert env.placement(5) == first
    assert env.position_at(5, 0.0) == A
    assert env.admitted_agents() == (5,)


def test_route_between_uses_cache(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=False, only_on_streets=False)

    route = env.route_between("car", A, D)
    again = env.route_between(Vehicle.CAR, A, D)

    assert route is not None
    assert again is route
    assert route.node_ids[-1] == node_id(D)
    assert env.cache.snapshot()["hits"] == 1


def test_route_from_agent_uses_current_position(graph_pool: RoutingGraphPool) -> None:
    env = _env(graph_pool, on_streets=False, only_on_streets=False)
    env.admit(1, OFF_ROAD)

    route = env.route_from_agent(1, D, Vehicle.FOOT, time=10.0)

    assert route is not None
    assert route.start == C
    assert route.end == D


def test_route_between_hides_computation_failures(graph_pool: RoutingGraphPool, monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise RuntimeError("search crashed")

    monkeypatch.setattr(route_cache_mod, "compute_route", _boom)
    env = _env(graph_pool, on_streets=False, only_on_streets=False)

    assert env.route_between("car", A, D) is None
    assert len(env.cache) == 0


def test_route_between_returns_none_for_missing_mode(street_map: Path, tmp_path: Path, monkeypatch) -> None:
    real_extract = graph_pool_mod.extract_network

    def _extract(*, source: Path, vehicle: Vehicle):
        if vehicle is Vehicle.CAR:
            raise RuntimeError("car graph unavailable")
        return real_extract(source=source, vehicle=vehicle)

    monkeypatch.setattr(graph_pool_mod, "extract_network", _extract)
    pool = RoutingGraphPool(snap_radius_m=50.0)
    pool.initialize(street_map, tmp_path / "workspace")
    env = _env(pool, on_streets=True, only_on_streets=True)

    assert env.route_between("car", A, D) is None
    assert env.route_between("foot", A, D) is not None
    assert env.admit(8, NEAR_ROAD) is True


def test_build_environment_from_settings(street_map: Path, tmp_path: Path) -> None:
    traces = tmp_path / "traces.csv"
    traces.write_text("trace_id,time,lat,lon\n11,0,45.0,12.0\n11,10,45.0,12.002\n", encoding="utf-8")
    config = Settings(
        MAP_FILE=str(street_map),
        TRACE_FILE=str(traces),
        TRACE_USE_IDS=True,
        SNAP_RADIUS_M=50.0,
        ROUTE_CACHE_MAX_ENTRIES=10,
    )

    env = build_environment(config, workspace_roots=[tmp_path / "ws"])

    assert env.pool.available_vehicles() == tuple(Vehicle)
    assert env.player.agent_ids() == (11,)
    assert env.cache.snapshot()["max_entries"] == 10
    assert env.admit(11, OFF_ROAD) is True
    assert env.admit(12, OFF_ROAD) is False
    assert env.route_between("bike", A, C) is not None


def test_build_environment_requires_map_file() -> None:
    with pytest.raises(ValueError, match="MAP_FILE"):
        build_environment(Settings(MAP_FILE=""))
