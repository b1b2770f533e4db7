"""
Right-angle (rectilinear) footprint fitting.

The footprint is rotated into its principal frame, rasterized onto a grid
of square cells, and the cells covered at least half by the footprint are
unioned back into an axis-aligned polygon. Each axis-aligned edge is then
pulled onto the original vertices that lie near it, which recovers exact
walls whenever the grid is coarser than the building detail.
"""
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import MultiPolygon, Polygon

from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    Point,
    Ring,
    calculate_iou_geoms,
    is_simple_contour,
    line_primitives,
    open_ring,
    ring_to_array,
    rotate_polygon,
)

logger = logging.getLogger(__name__)

COVERAGE_THRESHOLD = 0.5


def simplify_right_angle(
    polygon: FootprintPolygon,
    resolution: float,
    orientation: float = 0.0,
    min_hole_ratio: float = 0.0,
    offset: Optional[Tuple[int, int]] = None,
) -> FootprintPolygon:
    """Fit a rectilinear polygon aligned with *orientation*.

    Args:
        polygon: Footprint to simplify.
        resolution: Grid cell size, in footprint units.
        orientation: Principal direction in radians; the grid is aligned
            with it.
        min_hole_ratio: Holes smaller than this fraction of the contour
            area are dropped.
        offset: Integer grid phase (dx, dy). When None every offset in
            ``range(round(resolution))`` is tried and the best IOU kept.

    Raises:
        GeometryError: if no grid phase yields a simple polygon.
    """
    if resolution <= 0:
        raise ValueError(f"resolution must be > 0, got {resolution}")
    if polygon.is_degenerate():
        raise GeometryError("Cannot fit a right-angle polygon to a degenerate contour")

    aligned = rotate_polygon(polygon, -orientation)
    target = aligned.to_shapely()
    if not target.is_valid:
        target = target.buffer(0)

    if offset is None:
        steps = max(1, int(round(resolution)))
        offsets = [(dx, dy) for dx in range(steps) for dy in range(steps)]
    else:
        offsets = [(int(offset[0]), int(offset[1]))]

    best: Optional[Polygon] = None
    best_iou = -1.0
    for dx, dy in offsets:
        for candidate in _fit_at_offset(target, aligned.contour, resolution, dx, dy):
            iou = calculate_iou_geoms(candidate, target)
            if iou > best_iou + 1e-12:
                best, best_iou = candidate, iou

    if best is None:
        raise GeometryError(f"No rectilinear fit at resolution {resolution}")

    fitted = FootprintPolygon.from_shapely(best)
    contour_area = fitted.to_shapely().area
    holes = [
        h for h in fitted.holes
        if contour_area > 0 and Polygon(h).area / contour_area >= min_hole_ratio
    ]
    fitted = FootprintPolygon(contour=fitted.contour, holes=tuple(holes))
    result = rotate_polygon(fitted, orientation)

    primitives = line_primitives(result.contour)
    for hole in result.holes:
        primitives.extend(line_primitives(hole))
    return FootprintPolygon(
        contour=result.contour,
        holes=result.holes,
        primitive_shapes=tuple(primitives),
    )


def _fit_at_offset(
    target,
    original_contour: Sequence[Point],
    resolution: float,
    dx: int,
    dy: int,
) -> List[Polygon]:
    """Raster fit (and its refined version) for one grid phase."""
    raster = rasterize(target, resolution, dx, dy)
    if raster is None:
        return []

    contour = drop_collinear(open_ring(raster.exterior.coords))
    holes = [drop_collinear(open_ring(h.coords)) for h in raster.interiors]
    holes = [h for h in holes if len(h) >= 4]
    if len(contour) < 4 or not is_simple_contour(contour):
        return []

    candidates = [Polygon(contour, holes)]
    refined = refine_rectilinear(contour, original_contour, resolution)
    if refined is not None:
        candidate = Polygon(refined, holes)
        if candidate.is_valid:
            candidates.insert(0, candidate)
    return candidates


def rasterize(target, resolution: float, dx: float = 0.0, dy: float = 0.0) -> Optional[Polygon]:
    """Union of grid cells covered at least half by *target*.

    The grid origin is congruent to (dx, dy) modulo *resolution*. Returns
    the largest resulting polygon, or None when no cell qualifies.
    """
    minx, miny, maxx, maxy = target.bounds
    x0 = math.floor((minx - dx) / resolution) * resolution + dx
    y0 = math.floor((miny - dy) / resolution) * resolution + dy
    nx = max(1, int(math.ceil((maxx - x0) / resolution - 1e-9)))
    ny = max(1, int(math.ceil((maxy - y0) / resolution - 1e-9)))

    xs = x0 + np.arange(nx + 1) * resolution
    ys = y0 + np.arange(ny + 1) * resolution
    gx, gy = np.meshgrid(xs[:-1], ys[:-1], indexing="ij")
    gx, gy = gx.ravel(), gy.ravel()
    cells = shapely.box(gx, gy, gx + resolution, gy + resolution)

    shapely.prepare(target)
    covered = shapely.area(shapely.intersection(cells, target))
    kept = cells[covered >= COVERAGE_THRESHOLD * resolution * resolution - 1e-9]
    if len(kept) == 0:
        return None

    merged = shapely.union_all(kept)
    if isinstance(merged, MultiPolygon):
        merged = max(merged.geoms, key=lambda g: g.area)
    if not isinstance(merged, Polygon) or merged.is_empty:
        return None
    return merged


def drop_collinear(ring: Sequence[Point], tol: float = 1e-9) -> Ring:
    """Remove repeated vertices and vertices on the line through their neighbours."""
    points: List[Point] = []
    for p in ring:
        if not points or math.hypot(p[0] - points[-1][0], p[1] - points[-1][1]) > tol:
            points.append(p)
    while len(points) > 1 and math.hypot(
        points[0][0] - points[-1][0], points[0][1] - points[-1][1],
    ) <= tol:
        points.pop()

    changed = True
    while changed and len(points) > 3:
        changed = False
        pts = ring_to_array(points)
        prev = np.roll(pts, 1, axis=0)
        nxt = np.roll(pts, -1, axis=0)
        a = pts - prev
        b = nxt - pts
        cross = a[:, 0] * b[:, 1] - a[:, 1] * b[:, 0]
        scale = np.linalg.norm(a, axis=1) * np.linalg.norm(b, axis=1)
        flat = np.abs(cross) <= tol * np.maximum(scale, 1.0)
        if flat.any():
            points = [p for p, f in zip(points, flat) if not f]
            changed = True
    return tuple(points)


def refine_rectilinear(
    contour: Sequence[Point],
    original: Sequence[Point],
    resolution: float,
) -> Optional[Ring]:
    """Snap each axis-aligned edge onto the original vertices near it.

    Every edge moves to the mean coordinate of the original vertices that
    lie within *resolution* of the edge line and inside its span (padded
    by half a cell). Edges with no nearby vertex keep their grid position.
    Returns None when the refined ring is not simple.
    """
    pts = ring_to_array(contour)
    orig = ring_to_array(original)
    n = len(pts)
    if n < 4 or len(orig) == 0:
        return None

    values = np.zeros(n)
    vertical = np.zeros(n, dtype=bool)
    pad = resolution / 2.0
    for i in range(n):
        a, b = pts[i], pts[(i + 1) % n]
        is_vertical = abs(a[0] - b[0]) < abs(a[1] - b[1])
        vertical[i] = is_vertical
        axis, span_axis = (0, 1) if is_vertical else (1, 0)
        line = a[axis]
        lo, hi = sorted((a[span_axis], b[span_axis]))
        near = (
            (np.abs(orig[:, axis] - line) <= resolution)
            & (orig[:, span_axis] >= lo - pad)
            & (orig[:, span_axis] <= hi + pad)
        )
        values[i] = float(orig[near, axis].mean()) if near.any() else float(line)

    refined = []
    for i in range(n):
        prev = (i - 1) % n
        if vertical[prev] == vertical[i]:
            return None
        x = values[prev] if vertical[prev] else values[i]
        y = values[i] if vertical[prev] else values[prev]
        refined.append((float(x), float(y)))

    ring = drop_collinear(refined)
    if len(ring) < 4 or not is_simple_contour(ring):
        return None
    return ring
