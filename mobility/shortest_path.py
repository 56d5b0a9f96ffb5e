from __future__ import annotations

import heapq
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from math import inf

Adjacency = Mapping[str, Sequence[tuple[str, float]]]
HeuristicFn = Callable[[str], float]

MIN_EDGE_COST = 0.001


@dataclass(frozen=True)
class PathResult:
    nodes: tuple[str, ...]
    cost: float


class PathNotFoundError(ValueError):
    pass


class PathSearchTimeout(TimeoutError):
    pass


def _check_deadline(deadline_monotonic_s: float | None) -> None:
    if deadline_monotonic_s is not None and time.monotonic() >= float(deadline_monotonic_s):
        raise PathSearchTimeout("search deadline exceeded")


def _unwind(pred: Mapping[str, str | None], node: str) -> list[str]:
    out: list[str] = []
    current: str | None = node
    while current is not None:
        out.append(current)
        current = pred[current]
    return out


def astar(
    *,
    adjacency: Adjacency,
    start: str,
    goal: str,
    heuristic: HeuristicFn | None = None,
    deadline_monotonic_s: float | None = None,
) -> PathResult:
    """Best-first search; with no heuristic this is plain Dijkstra."""
    h = heuristic or (lambda _node: 0.0)
    best_cost: dict[str, float] = {start: 0.0}
    pred: dict[str, str | None] = {start: None}
    heap: list[tuple[float, float, str]] = [(h(start), 0.0, start)]
    settled: set[str] = set()
    while heap:
        _check_deadline(deadline_monotonic_s)
        _priority, cost, node = heapq.heappop(heap)
        if node in settled:
            continue
        if node == goal:
            return PathResult(nodes=tuple(reversed(_unwind(pred, node))), cost=cost)
        settled.add(node)
        for nxt, edge_cost in adjacency.get(node, ()):
            if nxt in settled:
                continue
            new_cost = cost + max(MIN_EDGE_COST, float(edge_cost))
            prev_best = best_cost.get(nxt)
            if prev_best is not None and new_cost >= prev_best:
                continue
            best_cost[nxt] = new_cost
            pred[nxt] = node
            heapq.heappush(heap, (new_cost + h(nxt), new_cost, nxt))
    raise PathNotFoundError("no path")


def dijkstra(
    *,
    adjacency: Adjacency,
    start: str,
    goal: str,
    deadline_monotonic_s: float | None = None,
) -> PathResult:
    return astar(adjacency=adjacency, start=start, goal=goal, deadline_monotonic_s=deadline_monotonic_s)


def bidirectional_dijkstra(
    *,
    adjacency: Adjacency,
    reverse_adjacency: Adjacency,
    start: str,
    goal: str,
    deadline_monotonic_s: float | None = None,
) -> PathResult:
    if start == goal:
        return PathResult(nodes=(start,), cost=0.0)
    graphs = (adjacency, reverse_adjacency)
    dist: tuple[dict[str, float], dict[str, float]] = ({start: 0.0}, {goal: 0.0})
    pred: tuple[dict[str, str | None], dict[str, str | None]] = ({start: None}, {goal: None})
    heaps: tuple[list[tuple[float, str]], list[tuple[float, str]]] = ([(0.0, start)], [(0.0, goal)])
    settled: tuple[set[str], set[str]] = (set(), set())
    best = inf
    meeting: str | None = None
    while heaps[0] and heaps[1]:
        _check_deadline(deadline_monotonic_s)
        # Every undiscovered path costs at least the sum of both frontiers.
        if heaps[0][0][0] + heaps[1][0][0] >= best:
            break
        side = 0 if heaps[0][0][0] <= heaps[1][0][0] else 1
        other = 1 - side
        cost, node = heapq.heappop(heaps[side])
        if node in settled[side] or cost > dist[side].get(node, inf):
            continue
        settled[side].add(node)
        for nxt, edge_cost in graphs[side].get(node, ()):
            new_cost = cost + max(MIN_EDGE_COST, float(edge_cost))
            if new_cost < dist[side].get(nxt, inf):
                dist[side][nxt] = new_cost
                pred[side][nxt] = node
                heapq.heappush(heaps[side], (new_cost, nxt))
            reached = dist[other].get(nxt)
            if reached is not None and dist[side][nxt] + reached < best:
                best = dist[side][nxt] + reached
                meeting = nxt
    if meeting is None:
        raise PathNotFoundError("no path")
    forward = list(reversed(_unwind(pred[0], meeting)))
    backward = _unwind(pred[1], meeting)[1:]
    return PathResult(nodes=tuple(forward + backward), cost=best)


ALGORITHMS = ("dijkstra", "dijkstrabi", "astar")
