"""Run folders for simplification batches.

Each batch gets ``<runs_root>/<timestamp>_<slug>/`` holding a copy of the
input, an ``artifacts/`` folder (buildings.json, records.txt) and the
top-level manifest, metrics and summary. ``<runs_root>/latest`` points at
the most recent run.
"""

from __future__ import annotations

import json
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

LATEST_NAME = "latest"
LATEST_FILE = "latest_run.txt"


@dataclass
class RunPaths:
    run_id: str
    run_dir: Path
    input_dir: Path
    artifacts_dir: Path
    buildings_path: Path
    records_path: Path
    manifest_path: Path
    metrics_path: Path
    summary_path: Path

    @classmethod
    def for_run(cls, runs_root: Union[str, Path], run_id: str) -> "RunPaths":
        run_dir = Path(runs_root) / run_id
        artifacts_dir = run_dir / "artifacts"
        return cls(
            run_id=run_id,
            run_dir=run_dir,
            input_dir=run_dir / "input",
            artifacts_dir=artifacts_dir,
            buildings_path=artifacts_dir / "buildings.json",
            records_path=artifacts_dir / "records.txt",
            manifest_path=run_dir / "manifest.json",
            metrics_path=run_dir / "metrics.json",
            summary_path=run_dir / "summary.md",
        )


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")
    return slug or "run"


def create_run_id(run_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S_%f")
    return f"{stamp}_{slugify(run_name)}"


def prepare_run_dir(runs_root: Union[str, Path], run_name: str) -> RunPaths:
    """Create a fresh run folder; a clashing id gets a numeric suffix."""
    root = Path(runs_root)
    root.mkdir(parents=True, exist_ok=True)

    base_id = create_run_id(run_name)
    run_id, attempt = base_id, 1
    while (root / run_id).exists():
        run_id = f"{base_id}_{attempt}"
        attempt += 1

    paths = RunPaths.for_run(root, run_id)
    paths.input_dir.mkdir(parents=True)
    paths.artifacts_dir.mkdir(parents=True)
    return paths


def copy_input(input_path: Union[str, Path], input_dir: Path) -> Path:
    src = Path(input_path)
    dst = input_dir / src.name
    if src.resolve() != dst.resolve():
        shutil.copy2(src, dst)
    return dst


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    """Pretty JSON; numpy scalars/arrays and paths are converted on the way."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=_json_default)


def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def update_latest_pointer(runs_root: Union[str, Path], run_dir: Path) -> None:
    """Point ``latest`` at *run_dir*: a relative symlink, else a pointer file."""
    root = Path(runs_root)
    latest = root / LATEST_NAME

    if latest.is_symlink() or latest.is_file():
        latest.unlink()
    elif latest.is_dir():
        shutil.rmtree(latest)

    try:
        latest.symlink_to(os.path.relpath(run_dir, root))
    except OSError:
        latest.mkdir(parents=True, exist_ok=True)
        (latest / LATEST_FILE).write_text(run_dir.name, encoding="utf-8")


def resolve_latest_run(runs_root: Union[str, Path]) -> Optional[Path]:
    """Run folder that ``latest`` points at, or None when there is none."""
    root = Path(runs_root)
    latest = root / LATEST_NAME
    if latest.is_symlink():
        target = latest.resolve()
        return target if target.is_dir() else None
    pointer = latest / LATEST_FILE
    if pointer.is_file():
        target = root / pointer.read_text(encoding="utf-8").strip()
        return target if target.is_dir() else None
    return None


def _json_default(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
