from __future__ import annotations

import csv
import json
import math
from bisect import bisect_left, bisect_right
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, FiniteFloat, ValidationError

from .errors import DuplicateTraceId, NoTraceForAgent, TraceFormatError
from .logging_utils import log_event
from .models import Position

CSV_COLUMNS: tuple[str, ...] = ("trace_id", "time", "lat", "lon")


@dataclass(frozen=True)
class TracePoint:
    time: float
    position: Position


@dataclass(frozen=True)
class Trace:
    """Recorded positions of one agent, ordered by time."""

    agent_id: int
    points: tuple[TracePoint, ...]
    source_id: int | None = None
    times: tuple[float, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.points:
            raise ValueError("a trace needs at least one point")
        if not all(math.isfinite(point.time) for point in self.points):
            raise ValueError("trace times must be finite")
        ordered = tuple(sorted(self.points, key=lambda point: point.time))
        object.__setattr__(self, "points", ordered)
        object.__setattr__(self, "times", tuple(point.time for point in ordered))

    def __len__(self) -> int:
        return len(self.points)

    @property
    def start_time(self) -> float:
        return self.times[0]

    @property
    def end_time(self) -> float:
        return self.times[-1]

    def filter(self, min_time: float) -> Trace | None:
        kept = self.points[bisect_left(self.times, min_time):]
        if not kept:
            return None
        return Trace(agent_id=self.agent_id, points=kept, source_id=self.source_id)

    def position_at(self, time: float) -> Position:
        idx = max(0, bisect_right(self.times, time) - 1)
        return self.points[idx].position

    def previous_position_before(self, time: float) -> Position:
        idx = max(0, bisect_left(self.times, time) - 1)
        return self.points[idx].position

    def next_position_after(self, time: float) -> Position:
        idx = min(len(self.points) - 1, bisect_right(self.times, time))
        return self.points[idx].position

    def interpolate(self, time: float) -> Position:
        if time <= self.times[0]:
            return self.points[0].position
        if time >= self.times[-1]:
            return self.points[-1].position
        idx = bisect_right(self.times, time) - 1
        before = self.points[idx]
        after = self.points[idx + 1]
        alpha = (time - before.time) / (after.time - before.time)
        a = before.position
        b = after.position
        return Position(lat=a.lat + alpha * (b.lat - a.lat), lon=a.lon + alpha * (b.lon - a.lon))


class TraceRecordModel(BaseModel):
    id: int
    points: list[tuple[FiniteFloat, FiniteFloat, FiniteFloat]] = Field(default_factory=list)


class TraceFileModel(BaseModel):
    traces: list[TraceRecordModel]


_RawRecord = tuple[int, tuple[tuple[float, float, float], ...]]


def _read_csv_records(path: Path) -> list[_RawRecord]:
    records: list[tuple[int, list[tuple[float, float, float]]]] = []
    with path.open("r", encoding="utf-8", newline="") as fh:
        reader = csv.DictReader(fh)
        missing = [col for col in CSV_COLUMNS if col not in (reader.fieldnames or [])]
        if missing:
            raise TraceFormatError(
                f"trace file {path} is missing columns {missing}",
                details={"path": str(path), "missing": missing},
            )
        for line_no, row in enumerate(reader, start=2):
            try:
                trace_id = int(str(row["trace_id"]).strip())
                sample = (float(row["time"]), float(row["lat"]), float(row["lon"]))
                if not all(math.isfinite(value) for value in sample):
                    raise ValueError("non-finite trace value")
            except (TypeError, ValueError) as exc:
                raise TraceFormatError(
                    f"invalid trace row at {path}:{line_no}",
                    details={"path": str(path), "line": line_no},
                ) from exc
            # A new record starts whenever the id changes from the previous row.
            if not records or records[-1][0] != trace_id:
                records.append((trace_id, []))
            records[-1][1].append(sample)
    return [(trace_id, tuple(samples)) for trace_id, samples in records]


def _read_json_records(path: Path) -> list[_RawRecord]:
    try:
        parsed = TraceFileModel.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (ValidationError, json.JSONDecodeError) as exc:
        raise TraceFormatError(f"invalid trace file {path}: {exc}", details={"path": str(path)}) from exc
    return [(record.id, tuple(record.points)) for record in parsed.traces]


@lru_cache(maxsize=32)
def _read_trace_records(path: str, mtime_ns: int, size: int) -> tuple[_RawRecord, ...]:
    # mtime/size are part of the key so an edited file is parsed again.
    _ = (mtime_ns, size)
    source = Path(path)
    if source.suffix.lower() == ".csv":
        return tuple(_read_csv_records(source))
    if source.suffix.lower() == ".json":
        return tuple(_read_json_records(source))
    raise TraceFormatError(f"unsupported trace format: {source.name}", details={"path": path})


def read_trace_records(source_file: Path) -> tuple[_RawRecord, ...]:
    path = Path(source_file).resolve()
    stat = path.stat()
    return _read_trace_records(str(path), stat.st_mtime_ns, stat.st_size)


def load_traces(
    source_file: Path,
    *,
    min_timestamp: float = 0.0,
    use_embedded_ids: bool = False,
) -> list[Trace]:
    records = read_trace_records(source_file)
    if use_embedded_ids:
        seen: set[int] = set()
        for trace_id, _samples in records:
            if trace_id in seen:
                raise DuplicateTraceId(trace_id, source=str(source_file))
            seen.add(trace_id)
    traces: list[Trace] = []
    next_id = 0
    for trace_id, samples in records:
        if not samples:
            continue
        try:
            recorded = Trace(
                agent_id=trace_id,
                points=tuple(TracePoint(time=t, position=Position(lat=lat, lon=lon)) for t, lat, lon in samples),
                source_id=trace_id,
            )
        except ValueError as exc:
            raise TraceFormatError(
                f"invalid samples for trace {trace_id} in {source_file}: {exc}",
                details={"path": str(source_file), "trace_id": trace_id},
            ) from exc
        kept = recorded.filter(min_timestamp)
        if kept is None:
            continue
        if not use_embedded_ids:
            kept = replace(kept, agent_id=next_id)
            next_id += 1
        traces.append(kept)
    return traces


class TracePlayer:
    """Answers position queries for agents driven by recorded traces."""

    def __init__(self, traces: Iterable[Trace] = ()) -> None:
        self._traces: dict[int, Trace] = {}
        self._register(traces, source="")

    def _register(self, traces: Iterable[Trace], *, source: str) -> None:
        batch = list(traces)
        counts = Counter(trace.agent_id for trace in batch)
        for agent_id, count in counts.items():
            if agent_id in self._traces or count > 1:
                raise DuplicateTraceId(agent_id, source=source)
        for trace in batch:
            self._traces[trace.agent_id] = trace

    @classmethod
    def from_traces(cls, traces: Iterable[Trace]) -> TracePlayer:
        return cls(traces)

    @classmethod
    def from_file(
        cls,
        source_file: Path,
        *,
        min_timestamp: float = 0.0,
        use_embedded_ids: bool = False,
    ) -> TracePlayer:
        player = cls()
        player.load(source_file, min_timestamp=min_timestamp, use_embedded_ids=use_embedded_ids)
        return player

    def load(
        self,
        source_file: Path,
        *,
        min_timestamp: float = 0.0,
        use_embedded_ids: bool = False,
    ) -> set[Trace]:
        traces = load_traces(source_file, min_timestamp=min_timestamp, use_embedded_ids=use_embedded_ids)
        self._register(traces, source=str(source_file))
        log_event(
            "traces_loaded",
            source=str(source_file),
            traces=len(traces),
            min_timestamp=min_timestamp,
            use_embedded_ids=use_embedded_ids,
        )
        return set(traces)

    def __len__(self) -> int:
        return len(self._traces)

    def has_trace(self, agent_id: int) -> bool:
        return agent_id in self._traces

    def agent_ids(self) -> tuple[int, ...]:
        return tuple(sorted(self._traces))

    def trace(self, agent_id: int) -> Trace:
        try:
            return self._traces[agent_id]
        except KeyError:
            raise NoTraceForAgent(agent_id) from None

    def position_at(self, agent_id: int, time: float) -> Position:
        return self.trace(agent_id).position_at(time)

    def next_position_after(self, agent_id: int, time: float) -> Position:
        return self.trace(agent_id).next_position_after(time)

    def previous_position_before(self, agent_id: int, time: float) -> Position:
        return self.trace(agent_id).previous_position_before(time)

    def interpolated_position_at(self, agent_id: int, time: float) -> Position:
        return self.trace(agent_id).interpolate(time)
