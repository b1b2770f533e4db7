#!/usr/bin/env python3
"""
Simplify voxelized buildings into compact footprint layer trees.

Takes a voxel volume (.npy / .npz, indexed [z, y, x]) or a mesh, splits it
into buildings, layers each building, and arbitrates among the DP,
RightAngle, Curve and CurveRightAngle strategies per layer. Results land
in a run folder (buildings.json, records.txt, metrics.json, summary.md).

Usage:
    python scripts/simplify_buildings.py --input city.npy
    python scripts/simplify_buildings.py --input block.obj --pitch 0.5 --alpha 0.7
    python scripts/simplify_buildings.py --input city.npz --algorithm dp --epsilon 1.5 --workers 4
"""
import sys
import math
import argparse
import logging
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from building_simplifier import SimplificationConfig
from pipeline import PipelineConfig, run_simplification
from simplification_strategies import (
    DEFAULT_CURVE_THRESHOLD,
    DEFAULT_EPSILON,
    DEFAULT_RESOLUTION,
    LegacyParameters,
    parse_algorithm,
)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Simplify voxelized buildings into footprint layer trees.",
    )
    parser.add_argument(
        "--input", required=True,
        help="Voxel volume (.npy, .npz) or mesh (STL, OBJ, PLY, GLB)",
    )
    parser.add_argument(
        "--runs-dir", default="runs",
        help="Root folder for run outputs (default: runs)",
    )
    parser.add_argument(
        "--name", default=None,
        help="Run name (default: input file stem)",
    )
    parser.add_argument(
        "--pitch", type=float, default=1.0,
        help="Voxel size in model units (default: 1.0)",
    )
    parser.add_argument(
        "--algorithm", default=None,
        help="Restrict to one strategy: dp, rightangle, curve, curverightangle or 1-4 "
             "(default: arbitrate among all four)",
    )
    parser.add_argument(
        "--alpha", type=float, default=0.5,
        help="Accuracy weight 0-1; 1 favours accuracy, 0 simplicity (default: 0.5)",
    )
    parser.add_argument(
        "--layering-threshold", type=float, default=0.7,
        help="Minimum slice-to-slice IOU within one layer (default: 0.7)",
    )
    parser.add_argument(
        "--min-slices", type=int, default=1,
        help="Minimum slices per layer (default: 1)",
    )
    parser.add_argument(
        "--epsilon", type=float, default=DEFAULT_EPSILON,
        help=f"DP / curve straight-run tolerance (default: {DEFAULT_EPSILON})",
    )
    parser.add_argument(
        "--resolution", type=float, default=DEFAULT_RESOLUTION,
        help=f"RightAngle grid size (default: {DEFAULT_RESOLUTION})",
    )
    parser.add_argument(
        "--curve-threshold", type=float, default=DEFAULT_CURVE_THRESHOLD,
        help=f"Max radial error of a fitted arc (default: {DEFAULT_CURVE_THRESHOLD})",
    )
    parser.add_argument(
        "--angle-threshold-deg", type=float, default=10.0,
        help="CurveRightAngle snapping angle in degrees (default: 10)",
    )
    parser.add_argument(
        "--snapping-threshold", type=float, default=0.0,
        help="Child-to-parent vertex snapping distance, 0 disables (default: 0)",
    )
    parser.add_argument(
        "--orientation-deg", type=float, default=None,
        help="Fixed principal orientation in degrees (default: estimated per contour)",
    )
    parser.add_argument(
        "--min-hole-ratio", type=float, default=0.0,
        help="Drop holes smaller than this fraction of the contour area (default: 0)",
    )
    parser.add_argument(
        "--workers", type=int, default=1,
        help="Worker processes, 0 for one per CPU (default: 1)",
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="Per-building timeout in seconds, process pool only",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    input_path = Path(args.input).resolve()
    if not input_path.is_file():
        parser.error(f"Input file not found: {input_path}")

    algorithm = None
    if args.algorithm is not None:
        try:
            algorithm = parse_algorithm(args.algorithm)
        except ValueError as exc:
            parser.error(str(exc))

    params = LegacyParameters(
        algorithm=algorithm,
        epsilon=args.epsilon,
        resolution=args.resolution,
        curve_threshold=args.curve_threshold,
        angle_threshold=math.radians(args.angle_threshold_deg),
    )
    simplification = SimplificationConfig(
        alpha=args.alpha,
        layering_threshold=args.layering_threshold,
        min_num_slices_per_layer=args.min_slices,
        snapping_threshold=args.snapping_threshold,
        orientation=(
            math.radians(args.orientation_deg) if args.orientation_deg is not None else None
        ),
        min_hole_ratio=args.min_hole_ratio,
        max_workers=None if args.workers == 0 else args.workers,
        building_timeout_s=args.timeout,
    )
    config = PipelineConfig(
        runs_dir=args.runs_dir,
        pitch=args.pitch,
        algorithms=params.to_spec(),
        simplification=simplification,
    )

    print(f"Simplifying {input_path} ...")
    try:
        result = run_simplification(str(input_path), args.name or input_path.stem, config)
    except ValueError as exc:
        parser.error(str(exc))

    print(f"\nResult: {len(result.trees)} of {result.num_input_buildings} buildings, "
          f"{len(result.records)} contours")
    for tree in result.trees:
        cost = tree.total_cost()
        print(f"  building {tree.building_id}: {len(tree.layers)} layers, "
              f"{cost.primitive_count} primitives, error {cost.error_ratio:.4f}")
    print(f"\nRun folder: {result.run_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
