from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from tempfile import gettempdir

from .errors import WorkspaceUnavailable
from .logging_utils import log_event
from .settings import Settings, settings

_CHECKSUM_CHARS = 12
_CHUNK_BYTES = 1 << 20


def map_checksum(map_file: Path) -> str:
    digest = hashlib.sha256()
    with Path(map_file).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()[:_CHECKSUM_CHARS]


def workspace_name(map_file: Path) -> str:
    path = Path(map_file)
    return f"{path.name}-{map_checksum(path)}"


def default_candidate_roots(config: Settings | None = None) -> list[Path]:
    cfg = config if config is not None else settings
    configured = cfg.workspace_root_candidates()
    if configured:
        return [Path(root).expanduser() for root in configured]
    return [
        Path(cfg.workspace_cache_root).expanduser(),
        Path(gettempdir()) / "osm-mobility",
        Path.cwd(),
        Path("."),
    ]


def _is_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / ".writetest"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return True
    except OSError:
        return False


class WorkspaceResolver:
    """Picks the first writable directory for processed graph artifacts.

    Two processes may resolve the same directory concurrently; that only
    costs a redundant graph build, since builds are deterministic and
    overwrite each other idempotently.
    """

    def __init__(self, candidate_roots: list[Path] | None = None) -> None:
        roots = candidate_roots if candidate_roots is not None else default_candidate_roots()
        self._candidate_roots = [Path(root) for root in roots]

    @property
    def candidate_roots(self) -> tuple[Path, ...]:
        return tuple(self._candidate_roots)

    def resolve(self, map_file: Path) -> Path:
        map_path = Path(map_file)
        if not map_path.is_file():
            raise FileNotFoundError(str(map_path))
        name = workspace_name(map_path)
        tried: list[str] = []
        for idx, root in enumerate(self._candidate_roots):
            target = root / name
            if _is_writable_dir(target):
                log_event("workspace_resolved", workspace=str(target), candidate_index=idx)
                return target
            tried.append(str(target))
            next_root = self._candidate_roots[idx + 1] if idx + 1 < len(self._candidate_roots) else None
            log_event(
                "workspace_fallback",
                level=logging.WARNING,
                unusable=str(target),
                next_candidate=str(next_root) if next_root is not None else None,
            )
        raise WorkspaceUnavailable(
            f"None of {tried} is writable; cannot persist routing graphs.",
            details={"candidates": tried, "map_file": str(map_path)},
        )


def resolve_workspace(map_file: Path, candidate_roots: list[Path] | None = None) -> Path:
    return WorkspaceResolver(candidate_roots).resolve(map_file)
