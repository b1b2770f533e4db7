"""
Building simplification orchestrator.

Turns voxel buildings into simplified layer trees:

1. layering() groups the slices into a raw BuildingTree.
2. Every node is simplified independently. Each representative contour is
   run through the enabled strategies (DP, RightAngle, Curve,
   CurveRightAngle, in that order) and the candidate with the lowest
   combined cost wins; earlier strategies win ties. When every strategy
   fails, DP at FALLBACK_EPSILON is tried before the contour is dropped.
3. Children are simplified one by one; a failing child is dropped without
   affecting its siblings or its parent.

Buildings are independent, so batches are spread over a process pool with
one task per building and collected back in input order. A building that
raises, or runs past the per-building timeout, is skipped; the rest of the
batch carries on.
"""
from __future__ import annotations

import logging
import os
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

import shapely
from shapely.errors import GEOSException

from building_layer import BuildingTree, LayerCost, LayerDraft, VoxelBuilding
from geometry_primitives import (
    BuildingSimplificationError,
    FootprintPolygon,
    PrimitiveKind,
    estimate_orientation,
    footprint_union,
    is_simple_contour,
    line_primitives,
)
from layering import layering
from scoring import baseline_primitive_count, calculate_layer_cost, combined_cost
from simplification_stats import DEFAULT_STATS_PATH, SimplificationRecord, write_records
from simplification_strategies import (
    DEFAULT_ANGLE_THRESHOLD,
    DEFAULT_CURVE_THRESHOLD,
    DEFAULT_EPSILON,
    DEFAULT_RESOLUTION,
    Algorithm,
    AlgorithmKey,
    AlgorithmSpec,
    LegacyParameters,
    apply_strategy,
    normalize_algorithms,
    parse_algorithm,
)

logger = logging.getLogger(__name__)

FALLBACK_EPSILON = 2.0

AlgorithmsArg = Union[Mapping[AlgorithmKey, Sequence[float]], LegacyParameters]


class SimplificationFailure(BuildingSimplificationError):
    """No strategy, fallback included, produced a valid result."""
    pass


@dataclass
class SimplificationConfig:
    """Knobs shared by every building in a batch."""
    alpha: float = 0.5                       # 1 favours accuracy, 0 simplicity
    layering_threshold: float = 0.7
    min_num_slices_per_layer: int = 1
    snapping_threshold: float = 0.0          # 0 disables child-to-parent snapping
    orientation: Optional[float] = None      # None: estimated per contour
    min_hole_ratio: float = 0.0
    record_stats: bool = False
    stats_path: str = DEFAULT_STATS_PATH
    max_workers: Optional[int] = 1           # None: one worker per CPU
    building_timeout_s: Optional[float] = None

    def validate(self) -> None:
        if not 0.0 <= self.alpha <= 1.0:
            raise ValueError(f"alpha must be in [0, 1], got {self.alpha}")
        if not 0.0 <= self.layering_threshold <= 1.0:
            raise ValueError(
                f"layering_threshold must be in [0, 1], got {self.layering_threshold}"
            )
        if self.min_num_slices_per_layer < 1:
            raise ValueError(
                f"min_num_slices_per_layer must be >= 1, got {self.min_num_slices_per_layer}"
            )
        if self.snapping_threshold < 0:
            raise ValueError(
                f"snapping_threshold must be >= 0, got {self.snapping_threshold}"
            )
        if not 0.0 <= self.min_hole_ratio <= 1.0:
            raise ValueError(f"min_hole_ratio must be in [0, 1], got {self.min_hole_ratio}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.building_timeout_s is not None and self.building_timeout_s <= 0:
            raise ValueError(
                f"building_timeout_s must be > 0, got {self.building_timeout_s}"
            )


@dataclass(frozen=True)
class ContourChoice:
    """The polygon kept for one representative contour."""
    algorithm: Algorithm
    polygon: FootprintPolygon
    cost: LayerCost


@dataclass(frozen=True)
class BuildingResult:
    tree: BuildingTree
    records: Tuple[SimplificationRecord, ...]


# (contour, raw_footprints, parent_geometry, baseline) -> ContourChoice
Chooser = Callable[
    [FootprintPolygon, Sequence[Sequence[FootprintPolygon]], object, int], ContourChoice
]


# ─── Per-contour arbitration ─────────────────────────────────────────────────

def arbitrate_contour(
    contour: FootprintPolygon,
    raw_footprints: Sequence[Sequence[FootprintPolygon]],
    algorithms: AlgorithmSpec,
    config: SimplificationConfig,
    baseline: int,
    parent_geometry=None,
) -> ContourChoice:
    """Pick the minimum-cost candidate among the enabled strategies.

    Raises:
        SimplificationFailure: when every strategy and the DP fallback fail.
    """
    orientation = _orientation_for(contour, config)
    best: Optional[ContourChoice] = None
    best_score = float("inf")

    for algorithm, params in algorithms.items():
        outcome = apply_strategy(
            algorithm, contour, params, orientation, config.min_hole_ratio,
        )
        if not outcome.ok:
            continue
        polygon = snap_to_parent(outcome.polygon, parent_geometry, config.snapping_threshold)
        cost = calculate_layer_cost(polygon, contour, raw_footprints)
        score = combined_cost(cost, config.alpha, baseline)
        logger.debug(
            "  %s: error=%.4f primitives=%d score=%.4f",
            algorithm.label, cost.error_ratio, cost.primitive_count, score,
        )
        if score < best_score:
            best, best_score = ContourChoice(algorithm, polygon, cost), score

    if best is not None:
        return best

    outcome = apply_strategy(
        Algorithm.DP, contour, (FALLBACK_EPSILON,), orientation, config.min_hole_ratio,
    )
    if outcome.ok:
        logger.debug("  all strategies failed, DP fallback epsilon=%.1f", FALLBACK_EPSILON)
        cost = calculate_layer_cost(outcome.polygon, contour, raw_footprints)
        return ContourChoice(Algorithm.DP, outcome.polygon, cost)
    raise SimplificationFailure(
        f"No strategy simplified a contour with {len(contour.contour)} vertices"
    )


def snap_to_parent(
    polygon: FootprintPolygon,
    parent_geometry,
    threshold: float,
) -> FootprintPolygon:
    """Snap vertices of a line-only polygon onto the parent layer's outline.

    Polygons with arcs, and snaps that would break validity, are returned
    unchanged.
    """
    if parent_geometry is None or parent_geometry.is_empty or threshold <= 0:
        return polygon
    if any(p.kind is PrimitiveKind.ARC for p in polygon.primitive_shapes):
        return polygon

    snapped = shapely.snap(polygon.to_shapely(), parent_geometry.boundary, threshold)
    if snapped.is_empty or snapped.geom_type != "Polygon" or not snapped.is_valid:
        return polygon
    result = FootprintPolygon.from_shapely(snapped)
    if len(result.contour) < 3 or not is_simple_contour(result.contour):
        return polygon

    primitives = line_primitives(result.contour)
    for hole in result.holes:
        primitives.extend(line_primitives(hole))
    return FootprintPolygon(result.contour, result.holes, tuple(primitives))


# ─── Tree simplification ─────────────────────────────────────────────────────

def simplify_building_by_all(
    tree: BuildingTree,
    algorithms: AlgorithmsArg,
    config: Optional[SimplificationConfig] = None,
    records: Optional[List[SimplificationRecord]] = None,
) -> BuildingTree:
    """Simplify every layer of *tree*, arbitrating among *algorithms*.

    Args:
        tree: Raw tree from layering().
        algorithms: Mapping of algorithm key to parameter vector, or
            LegacyParameters.
        config: Alpha, snapping, orientation and hole settings.
        records: When given, one SimplificationRecord per kept contour is
            appended.

    Raises:
        SimplificationFailure: if nothing at all could be simplified.
    """
    config = config or SimplificationConfig()
    config.validate()
    spec = normalize_algorithms(algorithms)

    def choose(contour, raw_footprints, parent_geometry, baseline):
        return arbitrate_contour(contour, raw_footprints, spec, config, baseline, parent_geometry)

    return _simplify_tree(tree, choose, config, records)


def simplify_building_by_algorithm(
    tree: BuildingTree,
    algorithm: AlgorithmKey,
    params: Sequence[float],
    config: Optional[SimplificationConfig] = None,
    records: Optional[List[SimplificationRecord]] = None,
) -> BuildingTree:
    """Simplify every layer with one strategy, no arbitration and no fallback."""
    config = config or SimplificationConfig()
    config.validate()
    alg = parse_algorithm(algorithm)
    params = normalize_algorithms({alg: params})[alg]

    def choose(contour, raw_footprints, parent_geometry, baseline):
        outcome = apply_strategy(
            alg, contour, params, _orientation_for(contour, config), config.min_hole_ratio,
        )
        if not outcome.ok:
            raise SimplificationFailure(f"{alg.label} failed: {outcome.error}")
        polygon = snap_to_parent(outcome.polygon, parent_geometry, config.snapping_threshold)
        return ContourChoice(alg, polygon, calculate_layer_cost(polygon, contour, raw_footprints))

    return _simplify_tree(tree, choose, config, records)


def simplify_building_by_dp(tree, epsilon, config=None, records=None) -> BuildingTree:
    return simplify_building_by_algorithm(tree, Algorithm.DP, (epsilon,), config, records)


def simplify_building_by_right_angle(tree, resolution, config=None, records=None) -> BuildingTree:
    return simplify_building_by_algorithm(
        tree, Algorithm.RIGHT_ANGLE, (resolution,), config, records,
    )


def simplify_building_by_curve(
    tree, epsilon, curve_threshold, config=None, records=None,
) -> BuildingTree:
    return simplify_building_by_algorithm(
        tree, Algorithm.CURVE, (epsilon, curve_threshold), config, records,
    )


def simplify_building_by_curve_right_angle(
    tree, epsilon, curve_threshold, angle_threshold, config=None, records=None,
) -> BuildingTree:
    return simplify_building_by_algorithm(
        tree, Algorithm.CURVE_RIGHT_ANGLE,
        (epsilon, curve_threshold, angle_threshold), config, records,
    )


def _simplify_tree(
    tree: BuildingTree,
    choose: Chooser,
    config: SimplificationConfig,
    records: Optional[List[SimplificationRecord]],
) -> BuildingTree:
    """Simplify every layer top-down, then assemble the survivors bottom-up.

    Both passes use explicit stacks, so tree depth is not bounded by the
    recursion limit. A layer that fails is dropped with its subtree; a
    layer left with no polygon and no child is dropped too. Either raises
    for the root.
    """
    if tree.is_empty:
        return BuildingTree.empty(tree.building_id)

    simplified: Dict[int, _SimplifiedLayer] = {}
    order: List[int] = []
    stack: List[Tuple[int, object]] = [(0, None)]
    while stack:
        index, parent_geometry = stack.pop()
        try:
            node = _simplify_node(tree, index, choose, config, parent_geometry)
        except (BuildingSimplificationError, GEOSException) as exc:
            if index == 0:
                raise
            _warn_dropped_layer(tree, index, exc)
            continue
        simplified[index] = node
        order.append(index)
        for child_index in reversed(tree.layers[index].children):
            stack.append((child_index, node.child_parent))

    drafts: Dict[int, LayerDraft] = {}
    for index in reversed(order):
        layer = tree.layers[index]
        node = simplified[index]
        children = [drafts[c] for c in layer.children if c in drafts]
        if not node.polygons and not children:
            failure = SimplificationFailure(
                f"Layer [{layer.bottom_height}, {layer.top_height}) produced no polygon"
            )
            if index == 0:
                raise failure
            _warn_dropped_layer(tree, index, failure)
            continue
        drafts[index] = LayerDraft(
            bottom_height=layer.bottom_height,
            top_height=layer.top_height,
            raw_footprints=list(layer.raw_footprints),
            footprint=tuple(node.polygons),
            costs=node.costs,
            children=children,
        )

    if records is not None:
        for index in order:
            if index in drafts:
                records.extend(simplified[index].records)
    return BuildingTree.from_draft(tree.building_id, drafts[0])


@dataclass
class _SimplifiedLayer:
    polygons: List[FootprintPolygon]
    costs: LayerCost
    records: List[SimplificationRecord]
    child_parent: object


def _simplify_node(
    tree: BuildingTree,
    index: int,
    choose: Chooser,
    config: SimplificationConfig,
    parent_geometry,
) -> _SimplifiedLayer:
    layer = tree.layers[index]
    logger.debug(
        "Building %d layer [%d, %d): %d contour(s)",
        tree.building_id, layer.bottom_height, layer.top_height, len(layer.footprint),
    )

    # recomputed at every node from its own contours
    baseline = baseline_primitive_count(layer.footprint, config.min_hole_ratio)

    polygons: List[FootprintPolygon] = []
    costs = LayerCost()
    records: List[SimplificationRecord] = []
    for i, contour in enumerate(layer.footprint):
        try:
            choice = choose(contour, layer.raw_footprints, parent_geometry, baseline)
        except (SimplificationFailure, GEOSException) as exc:
            logger.warning(
                "Building %d layer [%d, %d): dropping contour %d: %s",
                tree.building_id, layer.bottom_height, layer.top_height, i, exc,
            )
            continue
        logger.debug(
            "  contour %d -> %s (error=%.4f, primitives=%d)",
            i, choice.algorithm.label, choice.cost.error_ratio, choice.cost.primitive_count,
        )
        polygons.append(choice.polygon)
        costs = costs + choice.cost
        records.append(SimplificationRecord(
            error_ratio=choice.cost.error_ratio,
            primitive_count=choice.cost.primitive_count,
            algorithm=int(choice.algorithm),
        ))

    child_parent = footprint_union(polygons) if config.snapping_threshold > 0 else None
    return _SimplifiedLayer(polygons, costs, records, child_parent)


def _warn_dropped_layer(tree: BuildingTree, index: int, exc: Exception) -> None:
    layer = tree.layers[index]
    logger.warning(
        "Building %d: dropping layer [%d, %d): %s",
        tree.building_id, layer.bottom_height, layer.top_height, exc,
    )


def _orientation_for(contour: FootprintPolygon, config: SimplificationConfig) -> float:
    if config.orientation is not None:
        return config.orientation
    return estimate_orientation(contour)


# ─── Batch entry points ──────────────────────────────────────────────────────

def simplify_voxel_building(
    voxel_building: VoxelBuilding,
    algorithms: AlgorithmsArg,
    config: Optional[SimplificationConfig] = None,
    building_id: Optional[int] = None,
) -> BuildingResult:
    """Layer and simplify one building (raises on failure)."""
    config = config or SimplificationConfig()
    if building_id is None:
        building_id = voxel_building.building_id if voxel_building.building_id is not None else 0
    raw = layering(
        voxel_building,
        layering_threshold=config.layering_threshold,
        min_num_slices_per_layer=config.min_num_slices_per_layer,
        building_id=building_id,
    )
    records: List[SimplificationRecord] = []
    tree = simplify_building_by_all(raw, algorithms, config, records)
    return BuildingResult(tree=tree, records=tuple(records))


def simplify_buildings(
    voxel_buildings: Sequence[VoxelBuilding],
    algorithms: AlgorithmsArg,
    config: Optional[SimplificationConfig] = None,
    stats_sink: Optional[List[SimplificationRecord]] = None,
) -> List[BuildingTree]:
    """Simplify a batch of voxel buildings.

    Args:
        voxel_buildings: Buildings in input order.
        algorithms: Algorithm mapping or LegacyParameters.
        config: Batch settings; ``max_workers != 1`` uses a process pool.
        stats_sink: When given, every record of the batch is appended once
            the batch is done.

    Returns:
        Simplified trees in input order; failed and empty buildings are
        omitted.
    """
    config = config or SimplificationConfig()
    config.validate()
    spec = normalize_algorithms(algorithms)
    buildings = list(voxel_buildings)

    start = time.perf_counter()
    results = _run_batch(buildings, spec, config)

    trees: List[BuildingTree] = []
    records: List[SimplificationRecord] = []
    for result in results:
        if result is None or result.tree.is_empty:
            continue
        trees.append(result.tree)
        records.extend(result.records)

    logger.info(
        "Simplified %d/%d buildings in %.2fs (%d contours)",
        len(trees), len(buildings), time.perf_counter() - start, len(records),
    )

    if stats_sink is not None:
        stats_sink.extend(records)
    if config.record_stats:
        write_records(config.stats_path, records)
    return trees


def simplify_buildings_legacy(
    voxel_buildings: Sequence[VoxelBuilding],
    algorithm: Optional[AlgorithmKey] = None,
    record_stats: bool = False,
    min_num_slices_per_layer: int = 1,
    alpha: float = 0.5,
    layering_threshold: float = 0.7,
    epsilon: float = DEFAULT_EPSILON,
    resolution: float = DEFAULT_RESOLUTION,
    curve_threshold: float = DEFAULT_CURVE_THRESHOLD,
    angle_threshold: float = DEFAULT_ANGLE_THRESHOLD,
    min_hole_ratio: float = 0.0,
    stats_sink: Optional[List[SimplificationRecord]] = None,
) -> List[BuildingTree]:
    """Flat-scalar form of simplify_buildings.

    ``algorithm=None`` arbitrates among all four strategies; a single
    algorithm restricts arbitration to that strategy.

    Right-angle grids follow each contour's estimated orientation and
    snapping stays off. Use simplify_buildings with a SimplificationConfig
    to pin the orientation (``orientation=0.0`` for axis-aligned grids) or
    to enable snapping.
    """
    params = LegacyParameters(
        algorithm=algorithm,
        epsilon=epsilon,
        resolution=resolution,
        curve_threshold=curve_threshold,
        angle_threshold=angle_threshold,
    )
    config = SimplificationConfig(
        alpha=alpha,
        layering_threshold=layering_threshold,
        min_num_slices_per_layer=min_num_slices_per_layer,
        min_hole_ratio=min_hole_ratio,
        record_stats=record_stats,
    )
    return simplify_buildings(voxel_buildings, params, config, stats_sink)


# ─── Workers ─────────────────────────────────────────────────────────────────

# (index, building, spec, config) -> result; must be picklable for the pool
BuildingTask = Callable[
    [int, VoxelBuilding, AlgorithmSpec, SimplificationConfig], Optional[BuildingResult]
]


def _simplify_task(
    index: int,
    voxel_building: VoxelBuilding,
    spec: AlgorithmSpec,
    config: SimplificationConfig,
) -> Optional[BuildingResult]:
    building_id = voxel_building.building_id if voxel_building.building_id is not None else index
    try:
        return simplify_voxel_building(voxel_building, spec, config, building_id)
    except (BuildingSimplificationError, GEOSException) as exc:
        logger.warning("Skipping building %d: %s", building_id, exc)
        return None
    except Exception as exc:
        logger.warning(
            "Skipping building %d after unexpected %s: %s",
            building_id, type(exc).__name__, exc, exc_info=True,
        )
        return None


def _run_batch(
    buildings: List[VoxelBuilding],
    spec: AlgorithmSpec,
    config: SimplificationConfig,
    task: BuildingTask = _simplify_task,
) -> List[Optional[BuildingResult]]:
    """Run *task* for every building; results come back in input order.

    When the pool cannot start, everything runs in-process. When it breaks
    after finishing some buildings, the buildings it was running are
    skipped and only the ones it never finished are rerun in-process.
    """
    workers = config.max_workers or os.cpu_count() or 1
    if workers == 1 or len(buildings) <= 1:
        return [task(i, b, spec, config) for i, b in enumerate(buildings)]

    results: List[Optional[BuildingResult]] = [None] * len(buildings)
    finished: Set[int] = set()
    running: Set[int] = set()
    try:
        _run_in_pool(
            buildings, spec, config, min(workers, len(buildings)),
            results, finished, running, task,
        )
    except Exception as exc:
        if not _is_process_pool_unavailable_error(exc):
            raise
        if finished:
            for i in sorted(running):
                logger.warning("Skipping building %d: worker process died (%s)", i, exc)
                finished.add(i)
        logger.warning(
            "Process pool unavailable (%s); simplifying %d building(s) in-process",
            exc, len(buildings) - len(finished),
        )
        for i, building in enumerate(buildings):
            if i not in finished:
                results[i] = task(i, building, spec, config)
    return results


def _run_in_pool(
    buildings: List[VoxelBuilding],
    spec: AlgorithmSpec,
    config: SimplificationConfig,
    workers: int,
    results: List[Optional[BuildingResult]],
    finished: Set[int],
    running: Set[int],
    task: BuildingTask = _simplify_task,
) -> None:
    """Fill *results* from a process pool, at most *workers* tasks at a time.

    Each building's clock starts when it is handed to a worker. A building
    that runs past ``config.building_timeout_s`` is skipped: the pool is
    torn down with its processes and the other running buildings are
    resubmitted to a fresh one.
    """
    timeout = config.building_timeout_s
    queue = deque(range(len(buildings)))
    future_to_building: Dict[Future, Tuple[int, Optional[float]]] = {}
    executor = ProcessPoolExecutor(max_workers=workers)
    try:
        while queue or future_to_building:
            while queue and len(future_to_building) < workers:
                i = queue.popleft()
                future = executor.submit(task, i, buildings[i], spec, config)
                deadline = time.monotonic() + timeout if timeout is not None else None
                future_to_building[future] = (i, deadline)
                running.add(i)

            wait_s = None
            if timeout is not None:
                next_deadline = min(d for _, d in future_to_building.values())
                wait_s = max(0.0, next_deadline - time.monotonic())
            done, _ = wait(future_to_building, timeout=wait_s, return_when=FIRST_COMPLETED)

            failure: Optional[BaseException] = None
            for future in done:
                i, _ = future_to_building.pop(future)
                exc = future.exception()
                if exc is not None:
                    failure = failure or exc
                    continue
                results[i] = future.result()
                running.discard(i)
                finished.add(i)
            if failure is not None:
                raise failure

            now = time.monotonic()
            expired = [
                future for future, (_, deadline) in future_to_building.items()
                if deadline is not None and deadline <= now and not future.done()
            ]
            if not expired:
                continue

            for future in expired:
                i, _ = future_to_building.pop(future)
                logger.warning("Building %d exceeded %.1fs, skipping", i, timeout)
                running.discard(i)
                finished.add(i)
            retry = sorted(i for i, _ in future_to_building.values())
            future_to_building.clear()
            running.clear()
            queue.extendleft(reversed(retry))
            _terminate_pool(executor)
            executor = ProcessPoolExecutor(max_workers=workers)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def _terminate_pool(executor: ProcessPoolExecutor) -> None:
    """Stop a pool whose workers may be stuck in a task."""
    # no public API before Python 3.14 (terminate_workers)
    processes = list((executor._processes or {}).values())
    executor.shutdown(wait=False, cancel_futures=True)
    for process in processes:
        process.terminate()
    for process in processes:
        process.join(timeout=5.0)


def _is_process_pool_unavailable_error(exc: Exception) -> bool:
    """Return True if an exception indicates process pool execution is unavailable."""
    if isinstance(exc, (PermissionError, BrokenProcessPool)):
        return True
    if isinstance(exc, OSError) and "SC_SEM_NSEMS_MAX" in str(exc):
        return True
    if isinstance(exc, NotImplementedError):
        return True
    return False
