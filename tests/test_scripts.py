from __future__ import annotations

import json
from pathlib import Path

import scripts.build_routing_graphs as build_routing_graphs
import scripts.inspect_traces as inspect_traces


def test_build_routing_graphs_report(street_map: Path, tmp_path: Path) -> None:
    report = build_routing_graphs.build(
        source=street_map,
        workspace_roots=[tmp_path / "ws"],
        snap_radius_m=50.0,
    )

    assert report["complete"] is True
    assert report["modes"] == {"foot": "ready", "bike": "ready", "car": "ready"}
    workspace = Path(report["workspace"])
    assert workspace.parent == tmp_path / "ws"
    for mode in ("foot", "bike", "car"):
        assert (workspace / mode / "graph.json").is_file()
        assert report["status"][mode]["state"] == "ready"


def test_build_routing_graphs_main_prints_json(street_map: Path, tmp_path: Path, capsys) -> None:
    build_routing_graphs.main(["--source", str(street_map), "--workspace-root", str(tmp_path / "ws")])

    payload = json.loads(capsys.readouterr().out)
    assert payload["complete"] is True


def test_inspect_traces_summary(tmp_path: Path, capsys) -> None:
    source = tmp_path / "traces.csv"
    source.write_text(
        "trace_id,time,lat,lon\n5,0,45.0,12.0\n5,10,45.0,12.001\n2,3,45.1,12.1\n",
        encoding="utf-8",
    )

    summary = inspect_traces.summarize(source=source, use_embedded_ids=True)

    assert summary["traces"] == 2
    assert [agent["agent_id"] for agent in summary["agents"]] == [2, 5]
    assert summary["agents"][1]["points"] == 2
    assert summary["agents"][1]["path_length_m"] > 70.0

    inspect_traces.main(["--source", str(source), "--min-time", "5"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["traces"] == 1
    assert payload["agents"][0]["agent_id"] == 0
    assert payload["agents"][0]["source_id"] == 5
