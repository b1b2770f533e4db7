"""
Core geometry types for building footprint simplification.

Built on Shapely for 2D polygon operations. Provides FootprintPolygon (an
immutable outer contour with holes and the primitive shapes a simplifier
produced), PrimitiveShape (line or arc), and conversions between Shapely
and the plain coordinate tuples used everywhere else.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from shapely import affinity
from shapely.geometry import LinearRing, MultiPolygon, Polygon
from shapely.ops import unary_union

Point = Tuple[float, float]
Ring = Tuple[Point, ...]


class BuildingSimplificationError(Exception):
    """Base exception for footprint simplification errors."""
    pass


class GeometryError(BuildingSimplificationError):
    """A polygon is self-intersecting or degenerate."""
    pass


class PrimitiveKind(Enum):
    """Atomic elements a simplified contour is made of."""
    LINE = "line"
    ARC = "arc"


@dataclass(frozen=True)
class PrimitiveShape:
    """A straight edge or circular arc of a simplified contour."""
    kind: PrimitiveKind
    start: Point
    end: Point
    center: Optional[Point] = None
    radius: float = 0.0
    sweep: float = 0.0              # signed radians, arcs only

    @classmethod
    def line(cls, start: Point, end: Point) -> "PrimitiveShape":
        return cls(PrimitiveKind.LINE, _as_point(start), _as_point(end))

    @classmethod
    def arc(
        cls,
        start: Point,
        end: Point,
        center: Point,
        radius: float,
        sweep: float,
    ) -> "PrimitiveShape":
        return cls(
            PrimitiveKind.ARC,
            _as_point(start),
            _as_point(end),
            center=_as_point(center),
            radius=float(radius),
            sweep=float(sweep),
        )


@dataclass(frozen=True)
class FootprintPolygon:
    """A footprint polygon: outer contour, holes, and optional primitives.

    Rings are stored open (the closing point is not repeated). Degenerate
    contours are representable so that raw input can be carried around;
    validity is checked by the simplifiers, not here.
    """
    contour: Ring
    holes: Tuple[Ring, ...] = ()
    primitive_shapes: Tuple[PrimitiveShape, ...] = ()

    @classmethod
    def from_coords(
        cls,
        contour: Iterable[Sequence[float]],
        holes: Iterable[Iterable[Sequence[float]]] = (),
        primitive_shapes: Iterable[PrimitiveShape] = (),
    ) -> "FootprintPolygon":
        return cls(
            contour=open_ring(contour),
            holes=tuple(open_ring(h) for h in holes),
            primitive_shapes=tuple(primitive_shapes),
        )

    @classmethod
    def from_shapely(
        cls,
        polygon: Polygon,
        primitive_shapes: Iterable[PrimitiveShape] = (),
    ) -> "FootprintPolygon":
        """Convert a Shapely Polygon (largest part of a MultiPolygon)."""
        if polygon.is_empty:
            return cls(contour=())
        if isinstance(polygon, MultiPolygon):
            polygon = max(polygon.geoms, key=lambda g: g.area)
        return cls.from_coords(
            polygon.exterior.coords,
            [interior.coords for interior in polygon.interiors],
            primitive_shapes,
        )

    def to_shapely(self) -> Polygon:
        """Shapely polygon for this footprint (empty when degenerate)."""
        if len(set(self.contour)) < 3:
            return Polygon()
        holes = [h for h in self.holes if len(set(h)) >= 3]
        return Polygon(self.contour, holes)

    @property
    def vertex_count(self) -> int:
        return len(self.contour) + sum(len(h) for h in self.holes)

    @property
    def primitive_count(self) -> int:
        """Number of primitive shapes (vertex count when none recorded)."""
        if self.primitive_shapes:
            return len(self.primitive_shapes)
        return self.vertex_count

    @property
    def area(self) -> float:
        return calculate_area(self)

    def is_degenerate(self) -> bool:
        return len(set(self.contour)) < 3 or self.area <= 0.0


# ─── Measurements ────────────────────────────────────────────────────────────

def calculate_area(polygon: FootprintPolygon) -> float:
    """Area of the contour minus its holes."""
    geom = polygon.to_shapely()
    if geom.is_empty:
        return 0.0
    if not geom.is_valid:
        geom = geom.buffer(0)
    return float(geom.area)


def footprint_union(polygons: Iterable[FootprintPolygon]):
    """Union of footprint polygons as a single Shapely geometry."""
    geoms = []
    for poly in polygons:
        geom = poly.to_shapely()
        if geom.is_empty:
            continue
        if not geom.is_valid:
            geom = geom.buffer(0)
        geoms.append(geom)
    if not geoms:
        return Polygon()
    return unary_union(geoms)


def calculate_iou_geoms(a, b) -> float:
    """Intersection-over-union of two Shapely geometries, in [0, 1]."""
    if a.is_empty or b.is_empty:
        return 0.0
    union_area = a.union(b).area
    if union_area <= 0.0:
        return 0.0
    return float(min(1.0, a.intersection(b).area / union_area))


def calculate_iou(
    a: FootprintPolygon | Sequence[FootprintPolygon],
    b: FootprintPolygon | Sequence[FootprintPolygon],
) -> float:
    """IOU of two footprints (or unions of footprint sequences)."""
    return calculate_iou_geoms(_as_geometry(a), _as_geometry(b))


def ring_area(ring: Sequence[Point]) -> float:
    """Signed shoelace area of a ring (positive when counter-clockwise)."""
    if len(ring) < 3:
        return 0.0
    pts = ring_to_array(ring)
    x, y = pts[:, 0], pts[:, 1]
    return 0.5 * float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def is_simple_contour(contour: Sequence[Point]) -> bool:
    """True when the ring has >= 3 distinct vertices and no self-intersection."""
    if len(set(contour)) < 3:
        return False
    ring = LinearRing(contour)
    return bool(ring.is_simple) and Polygon(ring).area > 0.0


def validate_simplified(polygon: FootprintPolygon) -> None:
    """Raise GeometryError unless *polygon* satisfies the simplifier postcondition."""
    if len(polygon.contour) < 3:
        raise GeometryError(
            f"Contour has {len(polygon.contour)} vertices, at least 3 required"
        )
    if not is_simple_contour(polygon.contour):
        raise GeometryError("Contour is self-intersecting")


def estimate_orientation(polygon: FootprintPolygon) -> float:
    """Principal orientation in radians from the minimum rotated rectangle.

    Returns the direction of the longer rectangle edge, folded into
    [0, pi/2) since right-angle fitting is symmetric under quarter turns.
    """
    geom = polygon.to_shapely()
    if geom.is_empty:
        return 0.0

    obb = geom.minimum_rotated_rectangle
    if not isinstance(obb, Polygon):
        return 0.0
    coords = list(obb.exterior.coords)

    edge1 = np.array(coords[1]) - np.array(coords[0])
    edge2 = np.array(coords[2]) - np.array(coords[1])
    edge = edge1 if np.linalg.norm(edge1) >= np.linalg.norm(edge2) else edge2
    angle = float(np.arctan2(edge[1], edge[0])) % (np.pi / 2.0)
    if angle > np.pi / 2.0 - 1e-9:
        angle = 0.0
    return angle


# ─── Conversion functions ────────────────────────────────────────────────────

def open_ring(coords: Iterable[Sequence[float]]) -> Ring:
    """Tuple-of-tuples ring with the closing duplicate removed."""
    points = [_as_point(c) for c in coords]
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    return tuple(points)


def ring_to_array(ring: Sequence[Point]) -> np.ndarray:
    """(N, 2) float array for a ring."""
    if not ring:
        return np.zeros((0, 2))
    return np.asarray(ring, dtype=float).reshape(-1, 2)


def polygons_from_geometry(geom) -> List[FootprintPolygon]:
    """Split a Polygon/MultiPolygon/GeometryCollection into footprints."""
    if geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [FootprintPolygon.from_shapely(geom)]
    parts = []
    for part in getattr(geom, "geoms", []):
        parts.extend(polygons_from_geometry(part))
    return parts


def line_primitives(ring: Sequence[Point]) -> List[PrimitiveShape]:
    """One line primitive per edge of a closed ring."""
    n = len(ring)
    return [PrimitiveShape.line(ring[i], ring[(i + 1) % n]) for i in range(n)]


def rotate_polygon(polygon: FootprintPolygon, angle: float) -> FootprintPolygon:
    """Rotate about the origin by *angle* radians (primitives dropped)."""
    if angle == 0.0:
        return polygon
    rotated = affinity.rotate(
        polygon.to_shapely(), angle, origin=(0.0, 0.0), use_radians=True,
    )
    return FootprintPolygon.from_shapely(rotated)


# ─── Internal helpers ────────────────────────────────────────────────────────

def _as_point(value: Sequence[float]) -> Point:
    return (float(value[0]), float(value[1]))


def _as_geometry(value):
    if isinstance(value, FootprintPolygon):
        return footprint_union([value])
    return footprint_union(value)
