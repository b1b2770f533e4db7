"""Tests for curve and curve-right-angle simplification."""
import math

import numpy as np
import pytest

from conftest import make_rect
from curve_simplification import (
    fit_arc,
    fit_circle,
    ring_from_primitives,
    simplify_curve,
    simplify_curve_right_angle,
)
from geometry_primitives import (
    FootprintPolygon,
    GeometryError,
    PrimitiveKind,
    is_simple_contour,
    rotate_polygon,
)
from scoring import calculate_cost


def _rounded_rect(width=60.0, height=30.0, radius=10.0, n_arc=18):
    """Rectangle whose right end is a half circle."""
    cx, cy = width - radius, height / 2.0
    r = height / 2.0
    pts = [(0.0, 0.0), (cx, 0.0)]
    for i in range(1, n_arc):
        a = -math.pi / 2 + math.pi * i / n_arc
        pts.append((cx + r * math.cos(a), cy + r * math.sin(a)))
    pts.extend([(cx, height), (0.0, height)])
    return FootprintPolygon.from_coords(pts)


class TestCircleFit:

    def test_exact_circle(self):
        angles = np.linspace(0, math.pi, 10)
        pts = np.column_stack([3 + 5 * np.cos(angles), -2 + 5 * np.sin(angles)])
        center, radius = fit_circle(pts)
        assert center == pytest.approx([3.0, -2.0])
        assert radius == pytest.approx(5.0)

    def test_collinear_points_do_not_fit(self):
        pts = np.array([[0, 0], [1, 0], [2, 0], [3, 0], [4, 0]], dtype=float)
        assert fit_circle(pts) is None

    def test_non_monotone_run_rejected(self):
        pts = np.array([[1, 0], [0, 1], [1, 0.001], [0, -1], [-1, 0]], dtype=float)
        assert fit_arc(pts, 1.0) is None


class TestSimplifyCurve:

    def test_circle_becomes_single_arc(self, circle):
        result = simplify_curve(circle, 0.5, 1.0)
        cost = calculate_cost(result, circle)
        assert result.primitive_count <= 10
        assert cost.accuracy_cost / cost.reference_area < 0.05
        assert is_simple_contour(result.contour)

    def test_rounded_end_detected(self):
        poly = _rounded_rect()
        result = simplify_curve(poly, 0.5, 0.5)
        kinds = [p.kind for p in result.primitive_shapes]
        assert kinds.count(PrimitiveKind.ARC) == 1
        assert result.primitive_count <= 6

    def test_polygon_without_arcs_matches_dp(self, l_shape):
        result = simplify_curve(l_shape, 0.5, 0.5)
        assert all(p.kind is PrimitiveKind.LINE for p in result.primitive_shapes)
        assert len(result.contour) == 6

    def test_deterministic(self, circle):
        assert simplify_curve(circle, 0.5, 1.0) == simplify_curve(circle, 0.5, 1.0)

    def test_ring_from_primitives_closes(self, circle):
        result = simplify_curve(circle, 0.5, 1.0)
        ring = ring_from_primitives(result.primitive_shapes)
        assert ring == result.contour
        assert ring[0] != ring[-1]

    def test_degenerate_raises(self):
        with pytest.raises(GeometryError):
            simplify_curve(FootprintPolygon.from_coords([(0, 0), (1, 0)]), 0.5, 1.0)

    def test_invalid_threshold_rejected(self, circle):
        with pytest.raises(ValueError):
            simplify_curve(circle, 0.5, 0.0)


class TestSimplifyCurveRightAngle:

    def test_skewed_rectangle_snapped(self):
        skewed = FootprintPolygon.from_coords([(0, 0), (30, 0.8), (30, 20), (0.5, 20)])
        result = simplify_curve_right_angle(skewed, 0.1, 0.5, math.radians(5))
        pts = result.contour
        n = len(pts)
        assert n == 4
        for i in range(n):
            (x0, y0), (x1, y1) = pts[i], pts[(i + 1) % n]
            assert min(abs(x0 - x1), abs(y0 - y1)) == pytest.approx(0.0, abs=1e-9)

    def test_respects_orientation(self):
        angle = math.radians(20)
        rect = rotate_polygon(make_rect(0, 0, 40, 10), angle)
        result = simplify_curve_right_angle(rect, 0.1, 0.5, math.radians(5), orientation=angle)
        cost = calculate_cost(result, rect)
        assert cost.accuracy_cost == pytest.approx(0.0, abs=1e-6)

    def test_arcs_survive_snapping(self):
        poly = _rounded_rect()
        result = simplify_curve_right_angle(poly, 0.5, 0.5, math.radians(5))
        assert any(p.kind is PrimitiveKind.ARC for p in result.primitive_shapes)
        assert is_simple_contour(result.contour)

    def test_full_circle_untouched(self, circle):
        curve = simplify_curve(circle, 0.5, 1.0)
        snapped = simplify_curve_right_angle(circle, 0.5, 1.0, math.radians(10))
        assert snapped == curve

    def test_negative_angle_rejected(self, circle):
        with pytest.raises(ValueError):
            simplify_curve_right_angle(circle, 0.5, 1.0, -0.1)
