from __future__ import annotations

import logging
import shutil
import threading
import time
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .errors import GraphFormatVersionError, PartialGraphBuildFailure
from .logging_utils import log_event
from .models import Position
from .osm_extract import extract_network
from .routing_graph import (
    RoutingGraph,
    graph_from_network,
    graph_summary,
    has_graph_artifact,
    load_graph_artifact,
    snap_to_nearest_road,
    write_graph_artifact,
)
from .settings import settings
from .vehicles import Vehicle


class ReadWriteLock:
    """Many concurrent readers or one writer; writers are not starved."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _build_graph(map_file: Path, directory: Path, vehicle: Vehicle) -> RoutingGraph:
    if has_graph_artifact(directory):
        return load_graph_artifact(directory, vehicle=vehicle)
    network = extract_network(source=map_file, vehicle=vehicle)
    write_graph_artifact(network, directory)
    return graph_from_network(network)


class RoutingGraphPool:
    """One immutable routing graph per travel mode, built once and shared.

    Graphs for different modes are built in parallel. A mode whose build
    fails is simply missing from the pool. Once published a graph is never
    replaced, so ``lookup`` may run while other modes are still building.
    """

    def __init__(self, *, snap_radius_m: float | None = None, max_workers: int | None = None) -> None:
        self._lock = ReadWriteLock()
        self._graphs: dict[Vehicle, RoutingGraph] = {}
        self._status_lock = threading.Lock()
        self._status: dict[Vehicle, dict[str, Any]] = {
            vehicle: {"state": "idle"} for vehicle in Vehicle
        }
        self._snap_radius_m = float(snap_radius_m if snap_radius_m is not None else settings.snap_radius_m)
        workers = max_workers if max_workers is not None else settings.graph_build_workers
        self._max_workers = int(workers) if workers else len(Vehicle)

    @property
    def snap_radius_m(self) -> float:
        return self._snap_radius_m

    def _set_status(self, vehicle: Vehicle, **fields: Any) -> None:
        with self._status_lock:
            self._status[vehicle] = fields

    def publish(self, vehicle: Vehicle, graph: RoutingGraph) -> None:
        with self._lock.write():
            if vehicle in self._graphs:
                raise ValueError(f"graph for {vehicle} already published")
            self._graphs[vehicle] = graph

    def lookup(self, vehicle: Vehicle | str) -> RoutingGraph | None:
        key = Vehicle.parse(vehicle)
        with self._lock.read():
            return self._graphs.get(key)

    def available_vehicles(self) -> tuple[Vehicle, ...]:
        with self._lock.read():
            return tuple(vehicle for vehicle in Vehicle if vehicle in self._graphs)

    def status(self) -> dict[str, dict[str, Any]]:
        with self._status_lock:
            return {vehicle.value: dict(fields) for vehicle, fields in self._status.items()}

    def _build_mode(self, map_file: Path, workspace: Path, vehicle: Vehicle) -> RoutingGraph:
        directory = workspace / vehicle.value
        directory.mkdir(parents=True, exist_ok=True)
        try:
            return _build_graph(map_file, directory, vehicle)
        except GraphFormatVersionError as exc:
            log_event(
                "route_graph_stale_format",
                level=logging.WARNING,
                vehicle=vehicle.value,
                directory=str(directory),
                found_version=(exc.details or {}).get("found"),
            )
            shutil.rmtree(directory)
            directory.mkdir(parents=True, exist_ok=True)
            return _build_graph(map_file, directory, vehicle)

    def _initialize_mode(self, map_file: Path, workspace: Path, vehicle: Vehicle) -> bool:
        if self.lookup(vehicle) is not None:
            return True
        started = time.monotonic()
        self._set_status(vehicle, state="building")
        log_event("route_graph_build_started", vehicle=vehicle.value, workspace=str(workspace))
        try:
            graph = self._build_mode(map_file, workspace, vehicle)
            self.publish(vehicle, graph)
        except Exception as exc:
            failure = PartialGraphBuildFailure(
                f"Unable to initialize navigation data for {vehicle}: {exc}",
                details={"vehicle": vehicle.value, "error_type": type(exc).__name__},
            )
            self._set_status(vehicle, state="failed", error=str(failure))
            log_event(
                "route_graph_build_failed",
                level=logging.WARNING,
                vehicle=vehicle.value,
                reason_code=failure.reason_code,
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )
            return False
        elapsed_ms = round((time.monotonic() - started) * 1000.0, 2)
        summary = graph_summary(graph)
        self._set_status(vehicle, state="ready", elapsed_ms=elapsed_ms, **summary)
        log_event("route_graph_ready", vehicle=vehicle.value, elapsed_ms=elapsed_ms, **summary)
        return True

    def initialize(self, map_file: Path, workspace: Path) -> dict[str, str]:
        map_path = Path(map_file)
        if not map_path.is_file():
            raise FileNotFoundError(str(map_path))
        workspace_path = Path(workspace)
        workspace_path.mkdir(parents=True, exist_ok=True)
        report: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=max(1, self._max_workers), thread_name_prefix="route-graph") as executor:
            futures = {
                executor.submit(self._initialize_mode, map_path, workspace_path, vehicle): vehicle
                for vehicle in Vehicle
            }
            for future in as_completed(futures):
                report[futures[future].value] = "ready" if future.result() else "failed"
        if not all(state == "ready" for state in report.values()):
            log_event(
                "route_graph_pool_incomplete",
                level=logging.WARNING,
                report=report,
                detail="Not all travel modes could be initialized from the map data provided.",
            )
        return {vehicle.value: report[vehicle.value] for vehicle in Vehicle}

    def snap_to_nearest_road(self, vehicle: Vehicle | str, position: Position) -> Position | None:
        graph = self.lookup(vehicle)
        if graph is None:
            return None
        return snap_to_nearest_road(graph, position, max_distance_m=self._snap_radius_m)
