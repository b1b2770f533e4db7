"""Tests for rectilinear fitting."""
import math

import pytest

from conftest import make_circle, make_rect
from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    calculate_iou,
    is_simple_contour,
    rotate_polygon,
)
from right_angle_simplification import drop_collinear, rasterize, simplify_right_angle
from scoring import calculate_cost


def _is_rectilinear(ring, angle=0.0, tol=1e-6):
    c, s = math.cos(-angle), math.sin(-angle)
    pts = [(x * c - y * s, x * s + y * c) for x, y in ring]
    n = len(pts)
    for i in range(n):
        (x0, y0), (x1, y1) = pts[i], pts[(i + 1) % n]
        if abs(x0 - x1) > tol and abs(y0 - y1) > tol:
            return False
    return True


class TestSimplifyRightAngle:

    def test_square_reproduced_exactly(self, square):
        result = simplify_right_angle(square, 4)
        assert calculate_iou(result, square) == pytest.approx(1.0)
        assert calculate_cost(result, square).accuracy_cost == pytest.approx(0.0, abs=1e-9)
        assert len(result.contour) == 4

    def test_fixed_offset(self, square):
        result = simplify_right_angle(square, 4, offset=(2, 2))
        assert calculate_iou(result, square) == pytest.approx(1.0)

    def test_circle_becomes_rectilinear(self):
        circle = make_circle(radius=20.0, n=90)
        result = simplify_right_angle(circle, 5)
        assert _is_rectilinear(result.contour)
        assert is_simple_contour(result.contour)
        assert calculate_iou(result, circle) > 0.8

    def test_rotated_rectangle_follows_orientation(self):
        angle = math.radians(25)
        rect = rotate_polygon(make_rect(0, 0, 30, 12), angle)
        result = simplify_right_angle(rect, 3, orientation=angle)
        assert _is_rectilinear(result.contour, angle)
        assert calculate_iou(result, rect) == pytest.approx(1.0, abs=1e-6)

    def test_primitives_are_edges(self, l_shape):
        result = simplify_right_angle(l_shape, 5)
        assert result.primitive_count == len(result.contour)

    def test_deterministic(self, l_shape):
        assert simplify_right_angle(l_shape, 5) == simplify_right_angle(l_shape, 5)

    def test_too_coarse_grid_fails(self):
        tiny = make_rect(0, 0, 1, 1)
        with pytest.raises(GeometryError):
            simplify_right_angle(tiny, 10, offset=(0, 0))

    def test_degenerate_raises(self):
        with pytest.raises(GeometryError):
            simplify_right_angle(FootprintPolygon.from_coords([(0, 0)]), 4)

    def test_bad_resolution_rejected(self, square):
        with pytest.raises(ValueError):
            simplify_right_angle(square, 0)


class TestRasterHelpers:

    def test_rasterize_half_cover_rule(self, square):
        raster = rasterize(square.to_shapely(), 4.0)
        assert raster.bounds == pytest.approx((0.0, 0.0, 12.0, 12.0))

    def test_drop_collinear(self):
        ring = [(0, 0), (5, 0), (10, 0), (10, 10), (0, 10)]
        assert drop_collinear(ring) == ((0, 0), (10, 0), (10, 10), (0, 10))
