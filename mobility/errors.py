from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "workspace_unavailable",
        "routing_graph_build_failed",
        "routing_graph_stale_format",
        "routing_graph_unavailable",
        "route_computation_failed",
        "route_search_timeout",
        "duplicate_trace_id",
        "trace_format_invalid",
        "no_trace_for_agent",
        "snap_failed",
        "agent_not_admitted",
    }
)


@dataclass(eq=False)
class MobilityError(Exception):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class WorkspaceUnavailable(MobilityError):
    """No candidate root could hold the processed graph artifacts."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("workspace_unavailable", message, details)


class PartialGraphBuildFailure(MobilityError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("routing_graph_build_failed", message, details)


class GraphFormatVersionError(MobilityError):
    """Artifacts on disk were written by an incompatible graph format."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("routing_graph_stale_format", message, details)


class RouteComputationFailure(MobilityError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("route_computation_failed", message, details)


class DuplicateTraceId(MobilityError):
    def __init__(self, trace_id: int, *, source: str = "") -> None:
        super().__init__(
            "duplicate_trace_id",
            f"trace id {trace_id} appears more than once in {source or 'trace input'}",
            {"trace_id": trace_id, "source": source},
        )


class TraceFormatError(MobilityError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("trace_format_invalid", message, details)


class NoTraceForAgent(MobilityError, KeyError):
    def __init__(self, agent_id: int) -> None:
        super().__init__("no_trace_for_agent", f"no trace for agent {agent_id}", {"agent_id": agent_id})

    # KeyError.__str__ would quote the message
    def __str__(self) -> str:
        return self.message


class SnapFailure(MobilityError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__("snap_failed", message, details)


class AgentNotAdmitted(MobilityError, KeyError):
    def __init__(self, agent_id: int) -> None:
        super().__init__("agent_not_admitted", f"agent {agent_id} was never admitted", {"agent_id": agent_id})

    def __str__(self) -> str:
        return self.message


def normalize_reason_code(reason_code: str, *, default: str = "route_computation_failed") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default
