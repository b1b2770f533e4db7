"""
Shared test fixtures for building simplification tests.
"""
import math
import sys
from pathlib import Path

import numpy as np
import pytest

# Add src/ to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from building_layer import VoxelBuilding
from geometry_primitives import FootprintPolygon


def make_square(x0=0.0, y0=0.0, size=10.0):
    return FootprintPolygon.from_coords(
        [(x0, y0), (x0 + size, y0), (x0 + size, y0 + size), (x0, y0 + size)]
    )


def make_rect(x0, y0, x1, y1):
    return FootprintPolygon.from_coords([(x0, y0), (x1, y0), (x1, y1), (x0, y1)])


def make_circle(radius=20.0, n=360, cx=0.0, cy=0.0):
    return FootprintPolygon.from_coords([
        (cx + radius * math.cos(2 * math.pi * i / n),
         cy + radius * math.sin(2 * math.pi * i / n))
        for i in range(n)
    ])


@pytest.fixture
def square():
    """The 10x10 axis-aligned square at the origin."""
    return make_square()


@pytest.fixture
def circle():
    """A 360-point circle of radius 20."""
    return make_circle()


@pytest.fixture
def l_shape():
    """An L-shaped footprint with a slightly noisy long wall."""
    return FootprintPolygon.from_coords([
        (0, 0), (10, 0.2), (20, 0), (30, 0.1), (40, 0),
        (40, 20), (20, 20), (20, 40), (0, 40),
    ])


@pytest.fixture
def tower_building():
    """Ten identical 10x10 slices."""
    return VoxelBuilding.from_slices([[make_square()] for _ in range(10)], building_id=0)


@pytest.fixture
def stepped_building():
    """A 40x40 podium (4 slices) under a 20x20 tower (6 slices)."""
    podium = [[make_square(size=40.0)] for _ in range(4)]
    tower = [[make_square(10.0, 10.0, 20.0)] for _ in range(6)]
    return VoxelBuilding.from_slices(podium + tower, building_id=1)


@pytest.fixture
def twin_tower_building():
    """A 50x20 base (3 slices) splitting into two 10x10 towers (5 slices)."""
    base = [[make_rect(0, 0, 50, 20)] for _ in range(3)]
    towers = [[make_rect(2, 5, 12, 15), make_rect(38, 5, 48, 15)] for _ in range(5)]
    return VoxelBuilding.from_slices(base + towers, building_id=2)


@pytest.fixture
def two_block_volume():
    """[z, y, x] volume holding two disjoint boxes."""
    volume = np.zeros((6, 20, 30), dtype=bool)
    volume[0:4, 2:8, 2:10] = True
    volume[1:6, 10:18, 15:28] = True
    return volume
