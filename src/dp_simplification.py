"""
Douglas-Peucker simplification of closed footprint rings.

The ring is split at vertex 0 and at the vertex farthest from it; both
halves are simplified as open polylines with an explicit stack, so deep
recursion on many-vertex contours is never a problem.
"""
import logging
from typing import List, Sequence

import numpy as np

from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    Point,
    Ring,
    is_simple_contour,
    line_primitives,
    ring_area,
    ring_to_array,
)

logger = logging.getLogger(__name__)


def simplify_dp(
    polygon: FootprintPolygon,
    epsilon: float,
    min_hole_ratio: float = 0.0,
) -> FootprintPolygon:
    """Douglas-Peucker simplify the contour and every hole at *epsilon*.

    Holes whose area is below ``min_hole_ratio`` times the contour area,
    or that collapse below three vertices, are dropped.

    Raises:
        GeometryError: if the simplified contour has fewer than 3 vertices.
    """
    if epsilon < 0:
        raise ValueError(f"epsilon must be >= 0, got {epsilon}")
    if len(set(polygon.contour)) < 3:
        raise GeometryError(
            f"Cannot simplify a contour with {len(set(polygon.contour))} distinct points"
        )

    contour = dp_ring(polygon.contour, epsilon)
    if len(contour) < 3:
        raise GeometryError(
            f"DP epsilon={epsilon} collapsed contour to {len(contour)} vertices"
        )

    contour_area = abs(ring_area(contour))
    holes: List[Ring] = []
    for hole in polygon.holes:
        simplified = dp_ring(hole, epsilon)
        if len(simplified) < 3 or not is_simple_contour(simplified):
            continue
        if contour_area <= 0 or abs(ring_area(simplified)) / contour_area < min_hole_ratio:
            continue
        holes.append(simplified)

    primitives = line_primitives(contour)
    for hole in holes:
        primitives.extend(line_primitives(hole))
    return FootprintPolygon(contour=contour, holes=tuple(holes), primitive_shapes=tuple(primitives))


def dp_ring(ring: Sequence[Point], epsilon: float) -> Ring:
    """Simplify a closed (open-stored) ring."""
    pts = ring_to_array(ring)
    n = len(pts)
    if n <= 3:
        return tuple(tuple(p) for p in ring)

    far = int(np.argmax(np.linalg.norm(pts - pts[0], axis=1)))
    if far == 0:
        return (tuple(ring[0]),)

    closed = np.vstack([pts, pts[:1]])
    first = dp_polyline_indices(closed[: far + 1], epsilon)
    second = dp_polyline_indices(closed[far:], epsilon)
    keep = list(first) + [far + i for i in second[1:-1]]
    return tuple((float(pts[i][0]), float(pts[i][1])) for i in keep)


def dp_polyline(points: Sequence[Point], epsilon: float) -> List[Point]:
    """Simplify an open polyline, keeping both endpoints."""
    pts = ring_to_array(points)
    if len(pts) <= 2:
        return [tuple(map(float, p)) for p in pts]
    return [(float(pts[i][0]), float(pts[i][1])) for i in dp_polyline_indices(pts, epsilon)]


def dp_polyline_indices(pts: np.ndarray, epsilon: float) -> List[int]:
    """Indices of the vertices Douglas-Peucker keeps on an open polyline."""
    n = len(pts)
    if n <= 2:
        return list(range(n))

    keep = np.zeros(n, dtype=bool)
    keep[0] = keep[-1] = True
    stack = [(0, n - 1)]
    while stack:
        lo, hi = stack.pop()
        if hi - lo < 2:
            continue
        dists = _point_line_distances(pts[lo + 1:hi], pts[lo], pts[hi])
        k = int(np.argmax(dists))
        if dists[k] > epsilon:
            mid = lo + 1 + k
            keep[mid] = True
            stack.append((lo, mid))
            stack.append((mid, hi))
    return [int(i) for i in np.flatnonzero(keep)]


def _point_line_distances(points: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Perpendicular distance of each point to the line through a and b."""
    ab = b - a
    length = float(np.hypot(ab[0], ab[1]))
    if length < 1e-12:
        return np.linalg.norm(points - a, axis=1)
    ap = points - a
    return np.abs(ab[0] * ap[:, 1] - ab[1] * ap[:, 0]) / length

