"""
Simplification cost scoring.

A simplified contour is scored by how much area it gets wrong (1 - IOU
against the raw footprint, weighted by reference area) and by how many
primitive shapes it needs. combined_cost folds both into one scalar with
alpha trading accuracy against simplicity.
"""
import logging
from typing import Sequence, Union

from shapely.errors import GEOSException

from building_layer import LayerCost
from dp_simplification import simplify_dp
from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    calculate_iou_geoms,
    footprint_union,
)

logger = logging.getLogger(__name__)

BASELINE_EPSILON = 0.5

Reference = Union[FootprintPolygon, Sequence[FootprintPolygon]]


def calculate_cost(
    simplified: FootprintPolygon,
    reference: Reference,
    height: float = 1.0,
) -> LayerCost:
    """Cost of *simplified* against one reference footprint.

    Args:
        simplified: The simplified polygon.
        reference: Reference polygon, or several polygons taken as their union.
        height: Number of slices the reference stands for.

    Returns:
        LayerCost with accuracy_cost = (1 - IOU) * area * height and
        reference_area = area * height.
    """
    if isinstance(reference, FootprintPolygon):
        reference = [reference]
    ref_geom = footprint_union(reference)
    sim_geom = footprint_union([simplified])
    area = float(ref_geom.area)
    iou = calculate_iou_geoms(sim_geom, ref_geom)
    return LayerCost(
        accuracy_cost=(1.0 - iou) * area * height,
        reference_area=area * height,
        primitive_count=simplified.primitive_count,
    )


def calculate_layer_cost(
    simplified: FootprintPolygon,
    representative: FootprintPolygon,
    raw_footprints: Sequence[Sequence[FootprintPolygon]],
) -> LayerCost:
    """Cost of *simplified* summed over every raw slice of a layer.

    Each slice contributes the union of its polygons that overlap the
    representative contour, so a contour is judged against its own
    component in every slice and not against its siblings.
    """
    rep_geom = footprint_union([representative])
    sim_geom = footprint_union([simplified])

    accuracy = 0.0
    reference_area = 0.0
    for slice_polygons in raw_footprints:
        overlapping = []
        for poly in slice_polygons:
            geom = footprint_union([poly])
            if not geom.is_empty and geom.intersection(rep_geom).area > 0.0:
                overlapping.append(poly)
        if not overlapping:
            continue
        ref_geom = footprint_union(overlapping)
        area = float(ref_geom.area)
        accuracy += (1.0 - calculate_iou_geoms(sim_geom, ref_geom)) * area
        reference_area += area

    if reference_area <= 0.0:
        return calculate_cost(simplified, representative, height=max(1, len(raw_footprints)))
    return LayerCost(accuracy, reference_area, simplified.primitive_count)


def combined_cost(cost: LayerCost, alpha: float, baseline_primitive_count: float) -> float:
    """alpha * error ratio + (1 - alpha) * primitive count / baseline.

    A zero reference area counts as full error; a baseline below one is
    treated as one.
    """
    baseline = max(float(baseline_primitive_count), 1.0)
    return alpha * cost.error_ratio + (1.0 - alpha) * cost.primitive_count / baseline


def baseline_primitive_count(
    contours: Sequence[FootprintPolygon],
    min_hole_ratio: float = 0.0,
) -> int:
    """Primitive count of the node's contours after DP at BASELINE_EPSILON.

    A contour DP cannot simplify keeps its raw primitive count.
    """
    total = 0
    for contour in contours:
        try:
            total += simplify_dp(contour, BASELINE_EPSILON, min_hole_ratio).primitive_count
        except (GeometryError, GEOSException) as exc:
            logger.debug("Baseline DP failed, using raw count: %s", exc)
            total += contour.primitive_count
    return max(total, 1)
