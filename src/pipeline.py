"""Batch pipeline: voxel/mesh file -> simplified trees -> run artifacts."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from building_layer import BuildingTree
from building_simplifier import SimplificationConfig, simplify_buildings
from run_protocol import (
    copy_input,
    prepare_run_dir,
    update_latest_pointer,
    write_json,
    write_text,
)
from simplification_stats import SimplificationRecord, summarize_records, write_records
from simplification_strategies import (
    DEFAULT_ANGLE_THRESHOLD,
    DEFAULT_CURVE_THRESHOLD,
    DEFAULT_EPSILON,
    DEFAULT_RESOLUTION,
    Algorithm,
    normalize_algorithms,
)
from voxel_io import load_voxel_buildings

logger = logging.getLogger(__name__)


def default_algorithms() -> Dict[Algorithm, List[float]]:
    return {
        Algorithm.DP: [DEFAULT_EPSILON],
        Algorithm.RIGHT_ANGLE: [DEFAULT_RESOLUTION],
        Algorithm.CURVE: [DEFAULT_EPSILON, DEFAULT_CURVE_THRESHOLD],
        Algorithm.CURVE_RIGHT_ANGLE: [
            DEFAULT_EPSILON, DEFAULT_CURVE_THRESHOLD, DEFAULT_ANGLE_THRESHOLD,
        ],
    }


@dataclass
class PipelineConfig:
    runs_dir: str = "runs"
    pitch: float = 1.0
    copy_input: bool = True
    algorithms: Mapping = field(default_factory=default_algorithms)
    simplification: SimplificationConfig = field(default_factory=SimplificationConfig)


@dataclass
class PipelineResult:
    run_id: str
    run_dir: str
    buildings_json_path: str
    records_path: str
    metrics_path: str
    summary_path: str
    manifest_path: str
    input_path: str
    num_input_buildings: int = 0
    trees: List[BuildingTree] = field(default_factory=list)
    records: List[SimplificationRecord] = field(default_factory=list)


def run_simplification(
    input_path: str,
    run_name: str = "buildings",
    config: Optional[PipelineConfig] = None,
) -> PipelineResult:
    """Load *input_path* (.npy/.npz volume or mesh), simplify, write a run folder."""
    if not os.path.isfile(input_path):
        raise FileNotFoundError(f"Input file not found: {input_path}")

    if config is None:
        config = PipelineConfig()
    spec = normalize_algorithms(config.algorithms)
    config.simplification.validate()

    started = time.perf_counter()
    paths = prepare_run_dir(config.runs_dir, run_name)
    copied = copy_input(input_path, paths.input_dir) if config.copy_input else input_path

    logger.info("Loading voxel buildings from %s", input_path)
    buildings = load_voxel_buildings(input_path, pitch=config.pitch)

    records: List[SimplificationRecord] = []
    trees = simplify_buildings(buildings, spec, config.simplification, stats_sink=records)

    buildings_json_path = paths.buildings_path
    write_json(buildings_json_path, {"buildings": [t.to_dict() for t in trees]})
    records_path = write_records(paths.records_path, records)

    elapsed = time.perf_counter() - started
    totals = [t.total_cost() for t in trees]
    reference_area = sum(c.reference_area for c in totals)
    accuracy_cost = sum(c.accuracy_cost for c in totals)

    metrics_payload: Dict[str, object] = {
        "run_id": paths.run_id,
        "elapsed_s": round(elapsed, 3),
        "counts": {
            "input_buildings": len(buildings),
            "simplified_buildings": len(trees),
            "layers": sum(len(t.layers) for t in trees),
            "contours": len(records),
        },
        "cost": {
            "accuracy_cost": accuracy_cost,
            "reference_area": reference_area,
            "error_ratio": accuracy_cost / reference_area if reference_area > 0 else 0.0,
            "primitive_count": sum(c.primitive_count for c in totals),
        },
        "records": summarize_records(records),
    }
    write_json(paths.metrics_path, metrics_payload)
    write_text(
        paths.summary_path,
        _build_summary(paths.run_id, elapsed, len(buildings), trees, records),
    )

    manifest = {
        "run_id": paths.run_id,
        "run_name": run_name,
        "input": str(copied),
        "created_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "config": {
            "runs_dir": config.runs_dir,
            "pitch": config.pitch,
            "algorithms": {alg.label: list(v) for alg, v in spec.items()},
            "simplification": asdict(config.simplification),
        },
        "artifacts": {
            "buildings_json": str(buildings_json_path),
            "records": str(records_path),
            "metrics": str(paths.metrics_path),
            "summary": str(paths.summary_path),
        },
    }
    write_json(paths.manifest_path, manifest)
    update_latest_pointer(config.runs_dir, paths.run_dir)

    return PipelineResult(
        run_id=paths.run_id,
        run_dir=str(paths.run_dir),
        buildings_json_path=str(buildings_json_path),
        records_path=str(records_path),
        metrics_path=str(paths.metrics_path),
        summary_path=str(paths.summary_path),
        manifest_path=str(paths.manifest_path),
        input_path=str(copied),
        num_input_buildings=len(buildings),
        trees=trees,
        records=records,
    )


def _build_summary(
    run_id: str,
    elapsed_s: float,
    num_input: int,
    trees: Sequence[BuildingTree],
    records: Sequence[SimplificationRecord],
) -> str:
    stats = summarize_records(records)
    overall = stats["overall"]
    lines = [
        f"# Run {run_id}",
        "",
        f"- Duration: {elapsed_s:.2f}s",
        f"- Buildings: {len(trees)} simplified of {num_input}",
        f"- Layers: {sum(len(t.layers) for t in trees)}",
        f"- Contours: {overall['count']}",
        f"- Mean error ratio: {overall['mean_error_ratio']:.4f}",
        f"- Mean primitives per contour: {overall['mean_primitive_count']:.1f}",
        "",
        "## Algorithms",
    ]
    if not records:
        lines.append("- None")
    else:
        for alg_id, group in stats["by_algorithm"].items():
            label = Algorithm(int(alg_id)).label
            lines.append(
                f"- {label}: {group['count']} contours, "
                f"mean error {group['mean_error_ratio']:.4f}, "
                f"mean primitives {group['mean_primitive_count']:.1f}"
            )
    return "\n".join(lines) + "\n"
