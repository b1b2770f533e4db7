"""Tests for strategy parameters and dispatch."""
import math

import pytest

from geometry_primitives import FootprintPolygon
from simplification_strategies import (
    CANONICAL_ORDER,
    DEFAULT_ANGLE_THRESHOLD,
    DEFAULT_EPSILON,
    DEFAULT_RESOLUTION,
    Algorithm,
    LegacyParameters,
    RightAngleParams,
    apply_strategy,
    normalize_algorithms,
    parse_algorithm,
    run_strategy,
)


class TestParseAlgorithm:

    @pytest.mark.parametrize("key, expected", [
        (Algorithm.DP, Algorithm.DP),
        (2, Algorithm.RIGHT_ANGLE),
        ("curve", Algorithm.CURVE),
        ("CurveRightAngle", Algorithm.CURVE_RIGHT_ANGLE),
        ("curve_right_angle", Algorithm.CURVE_RIGHT_ANGLE),
        ("right-angle", Algorithm.RIGHT_ANGLE),
        ("4", Algorithm.CURVE_RIGHT_ANGLE),
    ])
    def test_accepted_keys(self, key, expected):
        assert parse_algorithm(key) is expected

    @pytest.mark.parametrize("key", ["bezier", 0, 7, None])
    def test_unknown_keys_rejected(self, key):
        with pytest.raises(ValueError):
            parse_algorithm(key)

    def test_ids_and_labels(self):
        assert [int(a) for a in CANONICAL_ORDER] == [1, 2, 3, 4]
        assert Algorithm.CURVE_RIGHT_ANGLE.label == "CurveRightAngle"


class TestNormalizeAlgorithms:

    def test_canonical_order(self):
        spec = normalize_algorithms({"curve": (1.0, 0.5), 1: (2.0,), "rightangle": (5,)})
        assert list(spec) == [Algorithm.DP, Algorithm.RIGHT_ANGLE, Algorithm.CURVE]
        assert spec[Algorithm.RIGHT_ANGLE] == (5.0,)

    def test_duplicate_keys_rejected(self):
        with pytest.raises(ValueError, match="more than once"):
            normalize_algorithms({1: (1.0,), "dp": (2.0,)})

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            normalize_algorithms({})

    @pytest.mark.parametrize("algorithms", [
        {Algorithm.DP: ()},
        {Algorithm.DP: (-1.0,)},
        {Algorithm.RIGHT_ANGLE: (0.0,)},
        {Algorithm.RIGHT_ANGLE: (5.0, 0.5, 1.0)},
        {Algorithm.CURVE: (1.0, 0.0)},
        {Algorithm.CURVE_RIGHT_ANGLE: (1.0, 1.0, math.pi / 2)},
        {Algorithm.CURVE_RIGHT_ANGLE: (1.0, 1.0)},
    ])
    def test_invalid_vectors_rejected(self, algorithms):
        with pytest.raises(ValueError):
            normalize_algorithms(algorithms)

    def test_right_angle_offset(self):
        params = RightAngleParams.from_vector((4.0, 1.0, 2.0))
        assert params.offset == (1, 2)
        assert RightAngleParams.from_vector((4.0,)).offset is None


class TestLegacyParameters:

    def test_all_algorithms_by_default(self):
        spec = normalize_algorithms(LegacyParameters())
        assert list(spec) == list(CANONICAL_ORDER)
        assert spec[Algorithm.DP] == (DEFAULT_EPSILON,)
        assert spec[Algorithm.RIGHT_ANGLE] == (DEFAULT_RESOLUTION,)
        assert spec[Algorithm.CURVE_RIGHT_ANGLE][2] == pytest.approx(DEFAULT_ANGLE_THRESHOLD)

    def test_single_algorithm(self):
        spec = LegacyParameters(algorithm="dp", epsilon=0.7).to_spec()
        assert spec == {Algorithm.DP: (0.7,)}


class TestDispatch:

    def test_successful_outcome(self, square):
        outcome = apply_strategy(Algorithm.DP, square, (0.5,))
        assert outcome.ok
        assert outcome.error is None
        assert len(outcome.polygon.contour) == 4

    def test_failure_becomes_outcome(self, square):
        outcome = apply_strategy(Algorithm.DP, square, (100.0,))
        assert not outcome.ok
        assert outcome.algorithm is Algorithm.DP
        assert "collapsed" in outcome.error

    def test_degenerate_input_fails_every_strategy(self):
        segment = FootprintPolygon.from_coords([(0, 0), (5, 0)])
        spec = LegacyParameters().to_spec()
        for alg, params in spec.items():
            assert not apply_strategy(alg, segment, params).ok

    def test_right_angle_fixed_offset(self, square):
        result = run_strategy(Algorithm.RIGHT_ANGLE, square, (4.0, 2.0, 2.0))
        assert len(result.contour) == 4
