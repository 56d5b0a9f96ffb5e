from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

import mobility.graph_pool as graph_pool_mod
from conftest import A, C, node_id
from mobility.graph_pool import ReadWriteLock, RoutingGraphPool
from mobility.routing_graph import GRAPH_FORMAT_VERSION, graph_artifact_path
from mobility.vehicles import Vehicle


def test_pool_builds_every_mode(graph_pool: RoutingGraphPool) -> None:
    assert graph_pool.available_vehicles() == (Vehicle.FOOT, Vehicle.BIKE, Vehicle.CAR)
    for vehicle in Vehicle:
        graph = graph_pool.lookup(vehicle.value)
        assert graph is not None
        assert graph.vehicle is vehicle
    status = graph_pool.status()
    assert {fields["state"] for fields in status.values()} == {"ready"}
    assert status["car"]["nodes"] > 0


def test_pool_failure_is_isolated_per_mode(street_map: Path, tmp_path: Path, monkeypatch) -> None:
    real_extract = graph_pool_mod.extract_network

    def _extract(*, source: Path, vehicle: Vehicle):
        if vehicle is Vehicle.BIKE:
            raise RuntimeError("bike encoder exploded")
        return real_extract(source=source, vehicle=vehicle)

    monkeypatch.setattr(graph_pool_mod, "extract_network", _extract)
    pool = RoutingGraphPool(snap_radius_m=50.0)

    report = pool.initialize(street_map, tmp_path / "workspace")

    assert report == {"foot": "ready", "bike": "failed", "car": "ready"}
    assert pool.lookup(Vehicle.BIKE) is None
    assert pool.lookup(Vehicle.CAR) is not None
    bike_status = pool.status()["bike"]
    assert bike_status["state"] == "failed"
    assert "bike encoder exploded" in bike_status["error"]
    assert pool.snap_to_nearest_road(Vehicle.BIKE, A) is None


def test_pool_reuses_persisted_graphs(street_map: Path, tmp_path: Path, monkeypatch) -> None:
    workspace = tmp_path / "workspace"
    RoutingGraphPool(snap_radius_m=50.0).initialize(street_map, workspace)

    def _no_extract(**_kwargs):
        raise AssertionError("persisted graphs should be loaded, not rebuilt")

    monkeypatch.setattr(graph_pool_mod, "extract_network", _no_extract)
    pool = RoutingGraphPool(snap_radius_m=50.0)

    assert pool.initialize(street_map, workspace) == {"foot": "ready", "bike": "ready", "car": "ready"}


def test_stale_graph_is_rebuilt_for_that_mode_only(street_map: Path, tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    RoutingGraphPool(snap_radius_m=50.0).initialize(street_map, workspace)
    car_path = graph_artifact_path(workspace / "car")
    foot_path = graph_artifact_path(workspace / "foot")
    car_path.write_text(
        car_path.read_text(encoding="utf-8").replace(GRAPH_FORMAT_VERSION, "mobility-graph-v0"),
        encoding="utf-8",
    )
    foot_mtime = foot_path.stat().st_mtime_ns

    pool = RoutingGraphPool(snap_radius_m=50.0)
    report = pool.initialize(street_map, workspace)

    assert report["car"] == "ready"
    assert GRAPH_FORMAT_VERSION in car_path.read_text(encoding="utf-8")
    assert foot_path.stat().st_mtime_ns == foot_mtime
    car = pool.lookup(Vehicle.CAR)
    assert car is not None and car.version == GRAPH_FORMAT_VERSION


def test_stale_graph_rebuild_is_attempted_once(street_map: Path, tmp_path: Path, monkeypatch) -> None:
    workspace = tmp_path / "workspace"
    RoutingGraphPool(snap_radius_m=50.0).initialize(street_map, workspace)
    car_path = graph_artifact_path(workspace / "car")
    car_path.write_text(
        car_path.read_text(encoding="utf-8").replace(GRAPH_FORMAT_VERSION, "mobility-graph-v0"),
        encoding="utf-8",
    )
    extracted: list[Vehicle] = []

    def _extract(*, source: Path, vehicle: Vehicle):
        extracted.append(vehicle)
        raise RuntimeError("car rebuild failed")

    monkeypatch.setattr(graph_pool_mod, "extract_network", _extract)
    pool = RoutingGraphPool(snap_radius_m=50.0)

    report = pool.initialize(street_map, workspace)

    assert report == {"foot": "ready", "bike": "ready", "car": "failed"}
    assert extracted == [Vehicle.CAR]
    assert not car_path.exists()
    assert "car rebuild failed" in pool.status()["car"]["error"]


def test_lookup_serves_published_modes_while_others_build(street_map: Path, tmp_path: Path, monkeypatch) -> None:
    real_extract = graph_pool_mod.extract_network
    car_started = threading.Event()
    release = threading.Event()

    def _extract(*, source: Path, vehicle: Vehicle):
        if vehicle is Vehicle.CAR:
            car_started.set()
            release.wait(timeout=5.0)
        return real_extract(source=source, vehicle=vehicle)

    monkeypatch.setattr(graph_pool_mod, "extract_network", _extract)
    pool = RoutingGraphPool(snap_radius_m=50.0, max_workers=3)
    reports: list[dict[str, str]] = []
    builder = threading.Thread(target=lambda: reports.append(pool.initialize(street_map, tmp_path / "workspace")))
    builder.start()
    try:
        assert car_started.wait(timeout=5.0)
        deadline = time.monotonic() + 5.0
        while pool.lookup(Vehicle.FOOT) is None or pool.lookup(Vehicle.BIKE) is None:
            assert time.monotonic() < deadline, "foot and bike graphs were not published in time"
            time.sleep(0.005)
        assert pool.lookup(Vehicle.CAR) is None
        assert pool.status()["car"]["state"] == "building"
        assert pool.available_vehicles() == (Vehicle.FOOT, Vehicle.BIKE)
    finally:
        release.set()
        builder.join(timeout=10.0)

    assert reports == [{"foot": "ready", "bike": "ready", "car": "ready"}]
    assert pool.lookup(Vehicle.CAR) is not None


def test_second_initialize_keeps_published_graphs(
    graph_pool: RoutingGraphPool, street_map: Path, tmp_path: Path
) -> None:
    graphs = {vehicle: graph_pool.lookup(vehicle) for vehicle in Vehicle}

    report = graph_pool.initialize(street_map, tmp_path / "workspace")

    assert report == {"foot": "ready", "bike": "ready", "car": "ready"}
    assert all(graph_pool.lookup(vehicle) is graphs[vehicle] for vehicle in Vehicle)
    assert {fields["state"] for fields in graph_pool.status().values()} == {"ready"}


def test_pool_requires_map_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        RoutingGraphPool().initialize(tmp_path / "missing.geojson", tmp_path / "workspace")


def test_publish_is_write_once(graph_pool: RoutingGraphPool) -> None:
    graph = graph_pool.lookup(Vehicle.CAR)
    assert graph is not None
    with pytest.raises(ValueError, match="already published"):
        graph_pool.publish(Vehicle.CAR, graph)


def test_snap_uses_mode_graph(graph_pool: RoutingGraphPool) -> None:
    snapped = graph_pool.snap_to_nearest_road("bike", C)
    assert snapped == C
    graph = graph_pool.lookup(Vehicle.BIKE)
    assert graph is not None and node_id(C) in graph.nodes


def test_read_write_lock_allows_concurrent_readers() -> None:
    lock = ReadWriteLock()
    inside = threading.Barrier(3, timeout=5.0)
    errors: list[BaseException] = []

    def _reader() -> None:
        try:
            with lock.read():
                inside.wait()
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)

    assert errors == []
    with lock.write():
        pass
