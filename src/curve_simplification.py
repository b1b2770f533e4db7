"""
Curve-aware simplification: circular arcs plus straight edges.

simplify_curve replaces vertex runs that lie on a circle with single arc
primitives and Douglas-Peucker simplifies what is left between them.
simplify_curve_right_angle additionally snaps the remaining straight edges
onto the building's principal axes.
"""
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from dp_simplification import dp_polyline, dp_ring
from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    Point,
    PrimitiveKind,
    PrimitiveShape,
    Ring,
    is_simple_contour,
    line_primitives,
    ring_area,
    ring_to_array,
)

logger = logging.getLogger(__name__)

MIN_ARC_POINTS = 5
MAX_ARC_STEP = math.pi / 6          # largest angular gap between arc vertices
MIN_ARC_SWEEP = math.pi / 6
ARC_SAMPLE_STEP = math.pi / 36      # arc rendering resolution


# ─── Public API ──────────────────────────────────────────────────────────────

def simplify_curve(
    polygon: FootprintPolygon,
    epsilon: float,
    curve_threshold: float,
    orientation: float = 0.0,
    min_hole_ratio: float = 0.0,
) -> FootprintPolygon:
    """Fit arcs to circular vertex runs, DP-simplify the rest.

    ``orientation`` is accepted so every strategy shares one call shape;
    plain curve fitting does not depend on it.

    Raises:
        GeometryError: on a degenerate input or a non-simple result.
    """
    _check_curve_params(epsilon, curve_threshold)
    contour, holes = _curve_parts(polygon, epsilon, curve_threshold)
    return _assemble(contour, holes, min_hole_ratio)


def simplify_curve_right_angle(
    polygon: FootprintPolygon,
    epsilon: float,
    curve_threshold: float,
    angle_threshold: float,
    orientation: float = 0.0,
    min_hole_ratio: float = 0.0,
) -> FootprintPolygon:
    """Curve fitting followed by right-angle snapping of straight edges.

    Lines within *angle_threshold* radians of ``orientation`` or
    ``orientation + pi/2`` are snapped to that axis. Consecutive lines on
    the same axis are merged and the vertices between lines are recomputed
    as line intersections. Lines touching an arc stay anchored at the arc
    endpoint.
    """
    _check_curve_params(epsilon, curve_threshold)
    if angle_threshold < 0:
        raise ValueError(f"angle_threshold must be >= 0, got {angle_threshold}")
    contour, holes = _curve_parts(polygon, epsilon, curve_threshold)
    contour = snap_right_angles(contour, orientation, angle_threshold)
    holes = [snap_right_angles(h, orientation, angle_threshold) for h in holes]
    return _assemble(contour, holes, min_hole_ratio)


# ─── Arc detection ───────────────────────────────────────────────────────────

def fit_circle(points: np.ndarray) -> Optional[Tuple[np.ndarray, float]]:
    """Least-squares (Kasa) circle fit. None for collinear points."""
    if len(points) < 3:
        return None
    mean = points.mean(axis=0)
    p = points - mean
    A = np.column_stack([2.0 * p[:, 0], 2.0 * p[:, 1], np.ones(len(p))])
    b = (p ** 2).sum(axis=1)
    sol, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < 3:
        return None
    r2 = sol[2] + sol[0] ** 2 + sol[1] ** 2
    if r2 <= 0:
        return None
    return mean + sol[:2], float(math.sqrt(r2))


def fit_arc(points: np.ndarray, threshold: float) -> Optional[Tuple[np.ndarray, float, float]]:
    """Circle fit of an ordered vertex run, or None when it is not an arc.

    The run must have max radial error below *threshold* and turn
    monotonically around the center in steps of at most MAX_ARC_STEP;
    each chord's sagitta must be below *threshold* too.
    Returns (center, radius, signed sweep).
    """
    fit = fit_circle(points)
    if fit is None:
        return None
    center, radius = fit
    rel = points - center
    if np.max(np.abs(np.hypot(rel[:, 0], rel[:, 1]) - radius)) >= threshold:
        return None
    angles = np.arctan2(rel[:, 1], rel[:, 0])
    steps = (np.diff(angles) + np.pi) % (2 * np.pi) - np.pi
    if np.any(np.abs(steps) > MAX_ARC_STEP) or np.any(steps == 0):
        return None
    if not (np.all(steps > 0) or np.all(steps < 0)):
        return None
    sagitta = radius * (1.0 - np.cos(np.abs(steps) / 2.0))
    if np.max(sagitta) >= threshold:
        return None
    return center, radius, float(steps.sum())


def fit_ring_primitives(
    ring: Sequence[Point],
    epsilon: float,
    threshold: float,
) -> List[PrimitiveShape]:
    """Decompose a closed ring into arc and line primitives, in ring order."""
    pts = ring_to_array(ring)
    n = len(pts)
    if n < MIN_ARC_POINTS:
        return line_primitives(dp_ring(ring, epsilon))

    full = fit_arc(np.vstack([pts, pts[:1]]), threshold)
    if full is not None and abs(abs(full[2]) - 2 * math.pi) < 1e-6:
        center, radius, sweep = full
        start = (float(pts[0][0]), float(pts[0][1]))
        return [PrimitiveShape.arc(start, start, center, radius, sweep)]

    start = _sharpest_corner(pts)
    q = np.vstack([np.roll(pts, -start, axis=0), pts[start:start + 1]])

    arcs = []
    i = 0
    while i + MIN_ARC_POINTS - 1 <= n:
        j = i + MIN_ARC_POINTS - 1
        fit = fit_arc(q[i:j + 1], threshold)
        if fit is None:
            i += 1
            continue
        while j + 1 <= n:
            extended = fit_arc(q[i:j + 2], threshold)
            if extended is None:
                break
            fit = extended
            j += 1
        if abs(fit[2]) >= MIN_ARC_SWEEP:
            arcs.append((i, j, fit))
            i = j
        else:
            i += 1

    if not arcs:
        return line_primitives(dp_ring(ring, epsilon))

    primitives: List[PrimitiveShape] = []
    pos = 0
    for i, j, (center, radius, sweep) in arcs:
        if i > pos:
            primitives.extend(_chain_lines(q[pos:i + 1], epsilon))
        primitives.append(PrimitiveShape.arc(q[i], q[j], center, radius, sweep))
        pos = j
    if pos < n:
        primitives.extend(_chain_lines(q[pos:n + 1], epsilon))
    return primitives


def ring_from_primitives(primitives: Sequence[PrimitiveShape]) -> Ring:
    """Vertex ring tracing *primitives*; arcs are sampled every ARC_SAMPLE_STEP."""
    points: List[Point] = []
    for prim in primitives:
        points.append(prim.start)
        if prim.kind is PrimitiveKind.ARC:
            points.extend(_arc_samples(prim))
    ring: List[Point] = []
    for p in points:
        if not ring or p != ring[-1]:
            ring.append(p)
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    return tuple(ring)


# ─── Right-angle snapping ────────────────────────────────────────────────────

def snap_right_angles(
    primitives: Sequence[PrimitiveShape],
    orientation: float,
    angle_threshold: float,
) -> List[PrimitiveShape]:
    """Snap near-axis lines to the principal axes and rebuild vertices."""
    prims = list(primitives)
    if not any(p.kind is PrimitiveKind.LINE for p in prims):
        return prims

    axes = [orientation % math.pi, (orientation + math.pi / 2) % math.pi]
    tags = [_snap_axis(p, axes, angle_threshold) for p in prims]
    prims, tags = _merge_axis_runs(prims, tags)
    n = len(prims)
    if n < 2:
        raise GeometryError("Right-angle snapping collapsed the ring")

    # Each line is (anchor point, direction); arcs keep their endpoints.
    lines = []
    for k, (prim, axis) in enumerate(zip(prims, tags)):
        if prim.kind is PrimitiveKind.ARC:
            lines.append(None)
            continue
        prev_arc = prims[k - 1].kind is PrimitiveKind.ARC
        next_arc = prims[(k + 1) % n].kind is PrimitiveKind.ARC
        a, b = np.array(prim.start), np.array(prim.end)
        if axis is None or (prev_arc and next_arc):
            lines.append((a, b - a))
            continue
        direction = np.array([math.cos(axes[axis]), math.sin(axes[axis])])
        if prev_arc:
            anchor = a
        elif next_arc:
            anchor = b
        else:
            anchor = (a + b) / 2.0
        lines.append((anchor, direction))

    # vertex k joins primitive k-1 and primitive k
    vertices = []
    for k in range(n):
        before, after = prims[k - 1], prims[k]
        if before.kind is PrimitiveKind.ARC:
            vertices.append(np.array(before.end))
        elif after.kind is PrimitiveKind.ARC:
            vertices.append(np.array(after.start))
        else:
            reach = max(_length(before), _length(after), 1.0)
            vertices.append(_intersect(lines[k - 1], lines[k], np.array(after.start), reach))

    snapped: List[PrimitiveShape] = []
    for k, prim in enumerate(prims):
        start, end = vertices[k], vertices[(k + 1) % n]
        if prim.kind is PrimitiveKind.ARC:
            snapped.append(prim)
        elif np.hypot(*(end - start)) > 1e-9:
            snapped.append(PrimitiveShape.line(start, end))
    return snapped


def _snap_axis(prim: PrimitiveShape, axes: List[float], threshold: float) -> Optional[int]:
    if prim.kind is not PrimitiveKind.LINE:
        return None
    dx = prim.end[0] - prim.start[0]
    dy = prim.end[1] - prim.start[1]
    if math.hypot(dx, dy) < 1e-12:
        return None
    theta = math.atan2(dy, dx) % math.pi
    best, best_diff = None, None
    for k, axis in enumerate(axes):
        diff = abs(theta - axis)
        diff = min(diff, math.pi - diff)
        if diff <= threshold and (best_diff is None or diff < best_diff):
            best, best_diff = k, diff
    return best


def _merge_axis_runs(
    prims: List[PrimitiveShape],
    tags: List[Optional[int]],
) -> Tuple[List[PrimitiveShape], List[Optional[int]]]:
    """Merge consecutive lines snapped to the same axis (cyclically)."""
    n = len(prims)

    def same(a: int, b: int) -> bool:
        return (
            prims[a].kind is PrimitiveKind.LINE
            and prims[b].kind is PrimitiveKind.LINE
            and tags[a] is not None
            and tags[a] == tags[b]
        )

    start = next((k for k in range(n) if not same(k - 1, k)), None)
    if start is None:
        raise GeometryError("All edges snapped onto a single axis")

    merged: List[PrimitiveShape] = []
    merged_tags: List[Optional[int]] = []
    for step in range(n):
        k = (start + step) % n
        if merged and same(k - 1, k):
            merged[-1] = PrimitiveShape.line(merged[-1].start, prims[k].end)
        else:
            merged.append(prims[k])
            merged_tags.append(tags[k])
    return merged, merged_tags


def _intersect(first, second, fallback: np.ndarray, reach: float) -> np.ndarray:
    """Intersection of two (point, direction) lines, or *fallback*."""
    p, d = first
    q, e = second
    cross = d[0] * e[1] - d[1] * e[0]
    scale = np.hypot(*d) * np.hypot(*e)
    if scale < 1e-12 or abs(cross) < 1e-9 * scale:
        return fallback
    t = ((q[0] - p[0]) * e[1] - (q[1] - p[1]) * e[0]) / cross
    point = p + t * d
    if np.hypot(*(point - fallback)) > 2.0 * reach:
        return fallback
    return point


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _check_curve_params(epsilon: float, curve_threshold: float) -> None:
    if epsilon < 0:
        raise ValueError(f"epsilon must be >= 0, got {epsilon}")
    if curve_threshold <= 0:
        raise ValueError(f"curve_threshold must be > 0, got {curve_threshold}")


def _curve_parts(
    polygon: FootprintPolygon,
    epsilon: float,
    threshold: float,
) -> Tuple[List[PrimitiveShape], List[List[PrimitiveShape]]]:
    if polygon.is_degenerate():
        raise GeometryError("Cannot fit curves to a degenerate contour")
    contour = fit_ring_primitives(polygon.contour, epsilon, threshold)
    holes = [
        fit_ring_primitives(h, epsilon, threshold)
        for h in polygon.holes if len(set(h)) >= 3
    ]
    return contour, holes


def _assemble(
    contour_prims: List[PrimitiveShape],
    hole_prims: List[List[PrimitiveShape]],
    min_hole_ratio: float,
) -> FootprintPolygon:
    contour = ring_from_primitives(contour_prims)
    if len(contour) < 3 or not is_simple_contour(contour):
        raise GeometryError(f"Curve fit produced an invalid contour ({len(contour)} vertices)")
    contour_area = abs(ring_area(contour))

    holes: List[Ring] = []
    primitives = list(contour_prims)
    for prims in hole_prims:
        hole = ring_from_primitives(prims)
        if len(hole) < 3 or not is_simple_contour(hole):
            continue
        if abs(ring_area(hole)) / contour_area < min_hole_ratio:
            continue
        holes.append(hole)
        primitives.extend(prims)
    return FootprintPolygon(contour=contour, holes=tuple(holes), primitive_shapes=tuple(primitives))


def _chain_lines(chain: np.ndarray, epsilon: float) -> List[PrimitiveShape]:
    pts = dp_polyline([tuple(p) for p in chain], epsilon)
    return [
        PrimitiveShape.line(pts[k], pts[k + 1])
        for k in range(len(pts) - 1)
        if pts[k] != pts[k + 1]
    ]


def _arc_samples(arc: PrimitiveShape) -> List[Point]:
    """Interior points of an arc (endpoints excluded)."""
    cx, cy = arc.center
    a0 = math.atan2(arc.start[1] - cy, arc.start[0] - cx)
    count = max(1, int(math.ceil(abs(arc.sweep) / ARC_SAMPLE_STEP)))
    return [
        (
            cx + arc.radius * math.cos(a0 + arc.sweep * t / count),
            cy + arc.radius * math.sin(a0 + arc.sweep * t / count),
        )
        for t in range(1, count)
    ]


def _sharpest_corner(pts: np.ndarray) -> int:
    incoming = pts - np.roll(pts, 1, axis=0)
    outgoing = np.roll(pts, -1, axis=0) - pts
    cross = incoming[:, 0] * outgoing[:, 1] - incoming[:, 1] * outgoing[:, 0]
    dot = (incoming * outgoing).sum(axis=1)
    return int(np.argmax(np.abs(np.arctan2(cross, dot))))

