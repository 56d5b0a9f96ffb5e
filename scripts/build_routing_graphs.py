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

from mobility.graph_pool import RoutingGraphPool
from mobility.settings import settings
from mobility.workspace import WorkspaceResolver, default_candidate_roots


def build(
    *,
    source: Path,
    workspace_roots: list[Path] | None = None,
    snap_radius_m: float | None = None,
    max_workers: int | None = None,
) -> dict[str, Any]:
    roots = workspace_roots if workspace_roots else default_candidate_roots()
    workspace = WorkspaceResolver(roots).resolve(source)
    pool = RoutingGraphPool(snap_radius_m=snap_radius_m, max_workers=max_workers)
    report = pool.initialize(source, workspace)
    return {
        "source": str(source),
        "workspace": str(workspace),
        "modes": report,
        "status": pool.status(),
        "complete": all(state == "ready" for state in report.values()),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Prebuild per-mode routing graphs for a map file.")
    parser.add_argument(
        "--source",
        type=Path,
        default=Path(settings.map_file) if settings.map_file else None,
        help="Map file (.pbf/.osm preferred, GeoJSON supported). Defaults to MAP_FILE.",
    )
    parser.add_argument(
        "--workspace-root",
        type=Path,
        action="append",
        default=[],
        help="Candidate workspace root; repeat to add fallbacks in order.",
    )
    parser.add_argument("--snap-radius-m", type=float, default=None)
    parser.add_argument(
        "--workers",
        type=int,
        default=0,
        help="Parallel graph builds (0 means one per travel mode).",
    )
    args = parser.parse_args(argv)
    if args.source is None:
        parser.error("--source is required when MAP_FILE is not set")
    report = build(
        source=args.source,
        workspace_roots=list(args.workspace_root),
        snap_radius_m=args.snap_radius_m,
        max_workers=max(0, int(args.workers)) or None,
    )
    print(json.dumps(report, indent=2))
    if not report["complete"]:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
