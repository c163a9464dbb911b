"""Per-run directory layout under the supervisor state dir."""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True, slots=True)
class RunDirs:
    """Scoped log dir (kept) and disposable output dir (removed on exit)."""

    log_dir: Path
    output_dir: Path


class RunWorkdirManager:
    """Creates deterministic per-run directory layout."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def paths_for(self, run_id: str) -> RunDirs:
        base_dir = self.root_dir / "runs" / _safe_component(run_id)
        return RunDirs(log_dir=base_dir / "logs", output_dir=base_dir / "output")


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def _safe_component(value: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("-", value).strip(".-")
    return cleaned or "run"
