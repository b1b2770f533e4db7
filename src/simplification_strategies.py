"""
The four footprint simplification strategies behind one dispatch point.

Strategies form a closed set tagged by Algorithm. Parameter vectors are
normalized and validated up front (normalize_algorithms) so the per-contour
hot path only ever sees well-formed input; apply_strategy turns every
geometric failure into a StrategyOutcome instead of an exception.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from shapely.errors import GEOSException

from curve_simplification import simplify_curve, simplify_curve_right_angle
from dp_simplification import simplify_dp
from geometry_primitives import FootprintPolygon, GeometryError, validate_simplified
from right_angle_simplification import simplify_right_angle

logger = logging.getLogger(__name__)


class Algorithm(IntEnum):
    """Strategy ids; the values are the ids written to statistics files."""
    DP = 1
    RIGHT_ANGLE = 2
    CURVE = 3
    CURVE_RIGHT_ANGLE = 4

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    Algorithm.DP: "DP",
    Algorithm.RIGHT_ANGLE: "RightAngle",
    Algorithm.CURVE: "Curve",
    Algorithm.CURVE_RIGHT_ANGLE: "CurveRightAngle",
}

# Fixed evaluation order; earlier strategies win cost ties.
CANONICAL_ORDER: Tuple[Algorithm, ...] = (
    Algorithm.DP,
    Algorithm.RIGHT_ANGLE,
    Algorithm.CURVE,
    Algorithm.CURVE_RIGHT_ANGLE,
)

DEFAULT_EPSILON = 2.0
DEFAULT_RESOLUTION = 5.0
DEFAULT_CURVE_THRESHOLD = 1.0
DEFAULT_ANGLE_THRESHOLD = math.radians(10.0)

AlgorithmSpec = Dict[Algorithm, Tuple[float, ...]]
AlgorithmKey = Union[Algorithm, int, str]


# ─── Parameter vectors ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class DPParams:
    epsilon: float

    @classmethod
    def from_vector(cls, vector: Sequence[float]) -> "DPParams":
        _expect_length(Algorithm.DP, vector, (1,))
        params = cls(float(vector[0]))
        _require(params.epsilon >= 0, Algorithm.DP, "epsilon must be >= 0")
        return params


@dataclass(frozen=True)
class RightAngleParams:
    resolution: float
    offset: Optional[Tuple[int, int]] = None

    @classmethod
    def from_vector(cls, vector: Sequence[float]) -> "RightAngleParams":
        _expect_length(Algorithm.RIGHT_ANGLE, vector, (1, 3))
        offset = None
        if len(vector) == 3:
            dx, dy = vector[1], vector[2]
            _require(
                float(dx).is_integer() and float(dy).is_integer(),
                Algorithm.RIGHT_ANGLE, "grid offsets must be integers",
            )
            offset = (int(dx), int(dy))
        params = cls(float(vector[0]), offset)
        _require(params.resolution > 0, Algorithm.RIGHT_ANGLE, "resolution must be > 0")
        return params


@dataclass(frozen=True)
class CurveParams:
    epsilon: float
    curve_threshold: float

    @classmethod
    def from_vector(cls, vector: Sequence[float]) -> "CurveParams":
        _expect_length(Algorithm.CURVE, vector, (2,))
        params = cls(float(vector[0]), float(vector[1]))
        _require(params.epsilon >= 0, Algorithm.CURVE, "epsilon must be >= 0")
        _require(params.curve_threshold > 0, Algorithm.CURVE, "curve_threshold must be > 0")
        return params


@dataclass(frozen=True)
class CurveRightAngleParams:
    epsilon: float
    curve_threshold: float
    angle_threshold: float

    @classmethod
    def from_vector(cls, vector: Sequence[float]) -> "CurveRightAngleParams":
        alg = Algorithm.CURVE_RIGHT_ANGLE
        _expect_length(alg, vector, (3,))
        params = cls(float(vector[0]), float(vector[1]), float(vector[2]))
        _require(params.epsilon >= 0, alg, "epsilon must be >= 0")
        _require(params.curve_threshold > 0, alg, "curve_threshold must be > 0")
        _require(
            0 <= params.angle_threshold <= math.pi / 4, alg,
            "angle_threshold must be in [0, pi/4] radians",
        )
        return params


PARAM_TYPES = {
    Algorithm.DP: DPParams,
    Algorithm.RIGHT_ANGLE: RightAngleParams,
    Algorithm.CURVE: CurveParams,
    Algorithm.CURVE_RIGHT_ANGLE: CurveRightAngleParams,
}


@dataclass(frozen=True)
class LegacyParameters:
    """Flat-scalar parameter set (one value per knob, shared by strategies).

    ``algorithm=None`` enables every strategy; otherwise only the given one.
    """
    algorithm: Optional[AlgorithmKey] = None
    epsilon: float = DEFAULT_EPSILON
    resolution: float = DEFAULT_RESOLUTION
    curve_threshold: float = DEFAULT_CURVE_THRESHOLD
    angle_threshold: float = DEFAULT_ANGLE_THRESHOLD

    def to_spec(self) -> AlgorithmSpec:
        vectors = {
            Algorithm.DP: (self.epsilon,),
            Algorithm.RIGHT_ANGLE: (self.resolution,),
            Algorithm.CURVE: (self.epsilon, self.curve_threshold),
            Algorithm.CURVE_RIGHT_ANGLE: (
                self.epsilon, self.curve_threshold, self.angle_threshold,
            ),
        }
        if self.algorithm is not None:
            alg = parse_algorithm(self.algorithm)
            vectors = {alg: vectors[alg]}
        return normalize_algorithms(vectors)


def parse_algorithm(key: AlgorithmKey) -> Algorithm:
    """Algorithm from an enum member, integer id, or (case-insensitive) name."""
    if isinstance(key, Algorithm):
        return key
    if isinstance(key, str):
        token = key.strip().replace("-", "").replace("_", "").lower()
        for alg in Algorithm:
            if token in (alg.name.replace("_", "").lower(), alg.label.lower()):
                return alg
        if token.isdigit():
            return parse_algorithm(int(token))
        raise ValueError(f"Unknown simplification algorithm {key!r}")
    try:
        return Algorithm(int(key))
    except (TypeError, ValueError):
        raise ValueError(f"Unknown simplification algorithm {key!r}") from None


def normalize_algorithms(
    algorithms: Union[Mapping[AlgorithmKey, Sequence[float]], LegacyParameters],
) -> AlgorithmSpec:
    """Validated AlgorithmSpec in canonical order.

    Raises:
        ValueError: on unknown keys, duplicate keys, or invalid vectors.
    """
    if isinstance(algorithms, LegacyParameters):
        return algorithms.to_spec()

    parsed: Dict[Algorithm, Tuple[float, ...]] = {}
    for key, vector in algorithms.items():
        alg = parse_algorithm(key)
        if alg in parsed:
            raise ValueError(f"{alg.label} parameters given more than once")
        values = tuple(float(v) for v in vector)
        PARAM_TYPES[alg].from_vector(values)
        parsed[alg] = values
    if not parsed:
        raise ValueError("At least one simplification algorithm is required")
    return {alg: parsed[alg] for alg in CANONICAL_ORDER if alg in parsed}


# ─── Dispatch ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StrategyOutcome:
    """Result of one strategy on one contour: a polygon or an error message."""
    algorithm: Algorithm
    polygon: Optional[FootprintPolygon] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.polygon is not None


def run_strategy(
    algorithm: Algorithm,
    polygon: FootprintPolygon,
    params: Sequence[float],
    orientation: float = 0.0,
    min_hole_ratio: float = 0.0,
) -> FootprintPolygon:
    """Apply one strategy; raises GeometryError on failure."""
    p = PARAM_TYPES[algorithm].from_vector(params)
    if algorithm is Algorithm.DP:
        return simplify_dp(polygon, p.epsilon, min_hole_ratio)
    if algorithm is Algorithm.RIGHT_ANGLE:
        return simplify_right_angle(
            polygon, p.resolution, orientation, min_hole_ratio, offset=p.offset,
        )
    if algorithm is Algorithm.CURVE:
        return simplify_curve(
            polygon, p.epsilon, p.curve_threshold, orientation, min_hole_ratio,
        )
    return simplify_curve_right_angle(
        polygon, p.epsilon, p.curve_threshold, p.angle_threshold,
        orientation, min_hole_ratio,
    )


def apply_strategy(
    algorithm: Algorithm,
    polygon: FootprintPolygon,
    params: Sequence[float],
    orientation: float = 0.0,
    min_hole_ratio: float = 0.0,
) -> StrategyOutcome:
    """Run a strategy and check the simple-polygon postcondition."""
    try:
        result = run_strategy(algorithm, polygon, params, orientation, min_hole_ratio)
        validate_simplified(result)
    except (GeometryError, GEOSException) as exc:
        logger.debug("%s failed: %s", algorithm.label, exc)
        return StrategyOutcome(algorithm, error=str(exc))
    return StrategyOutcome(algorithm, polygon=result)


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _expect_length(alg: Algorithm, vector: Sequence[float], lengths: Tuple[int, ...]) -> None:
    if len(vector) not in lengths:
        expected = " or ".join(str(n) for n in lengths)
        raise ValueError(
            f"{alg.label} expects {expected} parameters, got {len(vector)}"
        )


def _require(condition: bool, alg: Algorithm, message: str) -> None:
    if not condition:
        raise ValueError(f"{alg.label}: {message}")
