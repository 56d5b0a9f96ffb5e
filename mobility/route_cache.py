from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from .errors import RouteComputationFailure
from .logging_utils import log_event
from .models import Position, Route, RouteKey
from .routing_graph import RoutingGraph, compute_route
from .settings import settings
from .vehicles import Vehicle

ROUTING_ALGORITHM = "dijkstrabi"
ROUTING_WEIGHTING = "fastest"


class GraphProvider(Protocol):
    snap_radius_m: float

    def lookup(self, vehicle: Vehicle | str) -> RoutingGraph | None: ...


class _GraphUnavailable:
    pass


_UNAVAILABLE = _GraphUnavailable()


@dataclass
class _RouteCacheEntry:
    last_access: float
    route: Route | None


class RouteCache:
    """Bounded, idle-expiring route cache with one computation per key.

    Concurrent callers asking for the same key wait on the computation
    already in flight; callers with other keys are not blocked by it. "No
    route" is cached like any other result, but a missing graph is not.
    """

    def __init__(
        self,
        pool: GraphProvider,
        *,
        max_entries: int | None = None,
        max_idle_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        search_timeout_s: float | None = None,
    ) -> None:
        self._pool = pool
        self._max_entries = max(1, int(max_entries if max_entries is not None else settings.route_cache_max_entries))
        self._max_idle_s = max(0.0, float(max_idle_s if max_idle_s is not None else settings.route_cache_max_idle_s))
        self._clock = clock
        timeout = search_timeout_s if search_timeout_s is not None else settings.route_search_timeout_s
        self._search_timeout_s = float(timeout) if timeout and timeout > 0 else None
        self._lock = Lock()
        self._items: OrderedDict[RouteKey, _RouteCacheEntry] = OrderedDict()
        self._in_flight: dict[RouteKey, Future[Route | None | _GraphUnavailable]] = {}

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0
        self._computations = 0

    def _is_expired(self, entry: _RouteCacheEntry, now: float) -> bool:
        return (now - entry.last_access) > self._max_idle_s

    def _expire(self, key: RouteKey) -> None:
        self._items.pop(key, None)
        self._expirations += 1
        log_event("route_cache_expired", level=logging.DEBUG, vehicle=key.vehicle.value)

    def get_route(self, vehicle: Vehicle | str, origin: Position, destination: Position) -> Route | None:
        key = RouteKey(vehicle=Vehicle.parse(vehicle), origin=origin, destination=destination)
        owner = False
        with self._lock:
            now = self._clock()
            entry = self._items.get(key)
            if entry is not None:
                if not self._is_expired(entry, now):
                    entry.last_access = now
                    self._items.move_to_end(key)
                    self._hits += 1
                    return entry.route
                self._expire(key)
            self._misses += 1
            future = self._in_flight.get(key)
            if future is None:
                future = Future()
                self._in_flight[key] = future
                owner = True

        if not owner:
            result = future.result()
            return None if isinstance(result, _GraphUnavailable) else result

        try:
            result = self._compute(key)
        except Exception as exc:
            failure = RouteComputationFailure(
                f"Unable to compute a route from {key.origin} to {key.destination} using {key.vehicle}: {exc}",
                details={"vehicle": key.vehicle.value, "error_type": type(exc).__name__},
            )
            with self._lock:
                self._in_flight.pop(key, None)
            log_event(
                "route_computation_failed",
                level=logging.WARNING,
                vehicle=key.vehicle.value,
                error_type=type(exc).__name__,
                error_message=str(exc).strip() or type(exc).__name__,
            )
            future.set_exception(failure)
            raise failure from exc
        except BaseException as exc:
            # Interrupted owner: waiters still get a failure and the key is freed.
            interrupted = RouteComputationFailure(
                f"Route computation from {key.origin} to {key.destination} using {key.vehicle} was interrupted",
                details={"vehicle": key.vehicle.value, "error_type": type(exc).__name__},
            )
            interrupted.__cause__ = exc
            with self._lock:
                self._in_flight.pop(key, None)
            future.set_exception(interrupted)
            raise

        with self._lock:
            self._in_flight.pop(key, None)
            if not isinstance(result, _GraphUnavailable):
                self._items[key] = _RouteCacheEntry(last_access=self._clock(), route=result)
                self._items.move_to_end(key)
                self._evict_overflow()
        future.set_result(result)
        return None if isinstance(result, _GraphUnavailable) else result

    def _compute(self, key: RouteKey) -> Route | None | _GraphUnavailable:
        graph = self._pool.lookup(key.vehicle)
        if graph is None:
            return _UNAVAILABLE
        with self._lock:
            self._computations += 1
        deadline = time.monotonic() + self._search_timeout_s if self._search_timeout_s is not None else None
        return compute_route(
            graph,
            origin=key.origin,
            destination=key.destination,
            algorithm=ROUTING_ALGORITHM,
            weighting=ROUTING_WEIGHTING,
            max_snap_distance_m=self._pool.snap_radius_m,
            deadline_monotonic_s=deadline,
        )

    def _evict_overflow(self) -> None:
        while len(self._items) > self._max_entries:
            evicted, _entry = self._items.popitem(last=False)
            self._evictions += 1
            log_event("route_cache_evicted", level=logging.DEBUG, vehicle=evicted.vehicle.value, size=len(self._items))

    def sweep(self) -> int:
        """Drop every idle-expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._items.items() if self._is_expired(entry, now)]
            for key in expired:
                self._expire(key)
            return len(expired)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def snapshot(self) -> dict[str, int | float]:
        with self._lock:
            return {
                "size": len(self._items),
                "in_flight": len(self._in_flight),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "computations": self._computations,
                "max_entries": self._max_entries,
                "max_idle_s": self._max_idle_s,
            }
