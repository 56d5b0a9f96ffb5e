from __future__ import annotations

# ruff: noqa: E402
import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mobility.traces import Trace, load_traces


def _trace_summary(trace: Trace) -> dict[str, Any]:
    start = trace.points[0].position
    end = trace.points[-1].position
    path_m = sum(a.position.distance_m(b.position) for a, b in zip(trace.points, trace.points[1:]))
    return {
        "agent_id": trace.agent_id,
        "source_id": trace.source_id,
        "points": len(trace),
        "start_time": trace.start_time,
        "end_time": trace.end_time,
        "start": {"lat": start.lat, "lon": start.lon},
        "end": {"lat": end.lat, "lon": end.lon},
        "path_length_m": round(path_m, 2),
    }


def summarize(*, source: Path, min_timestamp: float = 0.0, use_embedded_ids: bool = False) -> dict[str, Any]:
    traces = load_traces(source, min_timestamp=min_timestamp, use_embedded_ids=use_embedded_ids)
    traces.sort(key=lambda trace: trace.agent_id)
    return {
        "source": str(source),
        "min_timestamp": min_timestamp,
        "use_embedded_ids": use_embedded_ids,
        "traces": len(traces),
        "agents": [_trace_summary(trace) for trace in traces],
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Summarize a trace file (CSV or JSON) per agent.")
    parser.add_argument("--source", type=Path, required=True, help="Trace file (.csv or .json).")
    parser.add_argument("--min-time", type=float, default=0.0, help="Drop samples recorded before this time.")
    parser.add_argument(
        "--use-ids",
        action="store_true",
        help="Use the ids stored in the file instead of sequential ids.",
    )
    args = parser.parse_args(argv)
    summary = summarize(source=args.source, min_timestamp=args.min_time, use_embedded_ids=args.use_ids)
    print(json.dumps(summary, indent=2))


if __name__ == "__main__":
    main()
