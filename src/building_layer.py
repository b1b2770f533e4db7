"""
Voxel building input and the hierarchical layer tree.

A BuildingTree is a single-owner arena: layers live in one flat tuple and
refer to their children by index. Trees are assembled from mutable
LayerDraft nodes and frozen once; nothing mutates them afterwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from geometry_primitives import (
    BuildingSimplificationError,
    FootprintPolygon,
    calculate_area,
    calculate_iou_geoms,
    footprint_union,
)

Slice = Tuple[FootprintPolygon, ...]


class LayeringError(BuildingSimplificationError):
    """A slice stack (or part of it) cannot be decomposed into layers."""
    pass


@dataclass(frozen=True)
class VoxelBuilding:
    """Bottom-to-top stack of per-slice footprint polygons for one building."""
    slices: Tuple[Slice, ...]
    building_id: Optional[int] = None

    @classmethod
    def from_slices(
        cls,
        slices: Sequence[Sequence[FootprintPolygon]],
        building_id: Optional[int] = None,
    ) -> "VoxelBuilding":
        return cls(tuple(tuple(s) for s in slices), building_id)

    @property
    def height(self) -> int:
        return len(self.slices)

    def is_empty(self) -> bool:
        return all(len(s) == 0 for s in self.slices)


@dataclass(frozen=True)
class LayerCost:
    """(accuracy_cost, reference_area, primitive_count) for a layer or contour."""
    accuracy_cost: float = 0.0
    reference_area: float = 0.0
    primitive_count: int = 0

    @property
    def error_ratio(self) -> float:
        if self.reference_area <= 0.0:
            return 1.0
        return self.accuracy_cost / self.reference_area

    def __add__(self, other: "LayerCost") -> "LayerCost":
        return LayerCost(
            self.accuracy_cost + other.accuracy_cost,
            self.reference_area + other.reference_area,
            self.primitive_count + other.primitive_count,
        )

    def as_tuple(self) -> Tuple[float, float, int]:
        return (self.accuracy_cost, self.reference_area, self.primitive_count)


@dataclass(frozen=True)
class BuildingLayer:
    """One node of a BuildingTree.

    Heights are slice indices with an exclusive top, so a layer holding
    slices 0-9 has bottom_height=0 and top_height=10.
    """
    building_id: int
    bottom_height: int
    top_height: int
    footprint: Tuple[FootprintPolygon, ...]
    raw_footprints: Tuple[Slice, ...]
    children: Tuple[int, ...] = ()
    costs: LayerCost = LayerCost()

    def __post_init__(self):
        if self.bottom_height >= self.top_height:
            raise LayeringError(
                f"Layer bottom {self.bottom_height} is not below top {self.top_height}"
            )
        if not self.raw_footprints:
            raise LayeringError("Layer has no raw footprints")

    @property
    def num_slices(self) -> int:
        return self.top_height - self.bottom_height

    @property
    def height(self) -> int:
        return self.num_slices


@dataclass
class LayerDraft:
    """Mutable layer used while a tree is being assembled."""
    bottom_height: int
    top_height: int
    raw_footprints: List[Slice]
    footprint: Optional[Tuple[FootprintPolygon, ...]] = None
    costs: Optional[LayerCost] = None
    children: List["LayerDraft"] = field(default_factory=list)

    @property
    def num_slices(self) -> int:
        return self.top_height - self.bottom_height


@dataclass(frozen=True)
class BuildingTree:
    """Arena of layers; index 0 is the root and parents precede children."""
    building_id: int
    layers: Tuple[BuildingLayer, ...] = ()

    def __post_init__(self):
        for layer in self.layers:
            for child_index in layer.children:
                if child_index >= len(self.layers):
                    raise LayeringError(f"Dangling child index {child_index}")
                child = self.layers[child_index]
                if child.bottom_height < layer.top_height:
                    raise LayeringError(
                        f"Child layer [{child.bottom_height}, {child.top_height}) "
                        f"overlaps parent [{layer.bottom_height}, {layer.top_height})"
                    )

    @classmethod
    def empty(cls, building_id: int) -> "BuildingTree":
        return cls(building_id=building_id)

    @classmethod
    def from_draft(cls, building_id: int, root: LayerDraft) -> "BuildingTree":
        """Freeze a draft hierarchy into an arena (depth-first pre-order)."""
        order: List[LayerDraft] = []
        stack = [root]
        while stack:
            draft = stack.pop()
            order.append(draft)
            stack.extend(reversed(draft.children))
        index_of = {id(draft): i for i, draft in enumerate(order)}

        layers = []
        for draft in order:
            footprint = draft.footprint
            if footprint is None:
                footprint = select_representative_contours(draft.raw_footprints)
            costs = draft.costs
            if costs is None:
                costs = raw_layer_cost(footprint, draft.raw_footprints)
            layers.append(BuildingLayer(
                building_id=building_id,
                bottom_height=draft.bottom_height,
                top_height=draft.top_height,
                footprint=tuple(footprint),
                raw_footprints=tuple(tuple(s) for s in draft.raw_footprints),
                children=tuple(index_of[id(child)] for child in draft.children),
                costs=costs,
            ))
        return cls(building_id=building_id, layers=tuple(layers))

    @property
    def is_empty(self) -> bool:
        return not self.layers

    @property
    def root(self) -> BuildingLayer:
        if not self.layers:
            raise LayeringError(f"Building {self.building_id} has no layers")
        return self.layers[0]

    def children_of(self, index: int) -> List[BuildingLayer]:
        return [self.layers[i] for i in self.layers[index].children]

    def walk(self, index: int = 0) -> Iterator[Tuple[int, BuildingLayer]]:
        """Yield (index, layer) depth-first, parents before children."""
        if not self.layers:
            return
        stack = [index]
        while stack:
            current = stack.pop()
            layer = self.layers[current]
            yield current, layer
            stack.extend(reversed(layer.children))

    def depth(self) -> int:
        deepest = 0
        stack = [(0, 1)] if self.layers else []
        while stack:
            index, level = stack.pop()
            deepest = max(deepest, level)
            stack.extend((c, level + 1) for c in self.layers[index].children)
        return deepest

    def polygons(self) -> List[FootprintPolygon]:
        return [poly for _, layer in self.walk() for poly in layer.footprint]

    def total_cost(self) -> LayerCost:
        total = LayerCost()
        for layer in self.layers:
            total = total + layer.costs
        return total

    def to_dict(self) -> Dict[str, object]:
        """JSON-serializable view of the tree for exporters."""
        return {
            "building_id": self.building_id,
            "layers": [
                {
                    "index": i,
                    "bottom_height": layer.bottom_height,
                    "top_height": layer.top_height,
                    "children": list(layer.children),
                    "costs": {
                        "accuracy_cost": layer.costs.accuracy_cost,
                        "reference_area": layer.costs.reference_area,
                        "primitive_count": layer.costs.primitive_count,
                    },
                    "footprint": [
                        {
                            "contour": [list(p) for p in poly.contour],
                            "holes": [[list(p) for p in hole] for hole in poly.holes],
                            "primitive_count": poly.primitive_count,
                        }
                        for poly in layer.footprint
                    ],
                }
                for i, layer in enumerate(self.layers)
            ],
        }


def select_representative_contours(
    raw_footprints: Sequence[Sequence[FootprintPolygon]],
) -> Tuple[FootprintPolygon, ...]:
    """Pick the slice that best represents the whole layer.

    The representative is the medoid slice: the one whose union has the
    highest summed IOU with every other slice. Ties go to the lowest slice.
    """
    if not raw_footprints:
        return ()
    if len(raw_footprints) == 1:
        return tuple(raw_footprints[0])

    unions = [footprint_union(s) for s in raw_footprints]
    best_index = 0
    best_score = -1.0
    for i, geom in enumerate(unions):
        score = sum(
            calculate_iou_geoms(geom, other)
            for j, other in enumerate(unions) if j != i
        )
        if score > best_score + 1e-12:
            best_score = score
            best_index = i
    return tuple(raw_footprints[best_index])


def raw_layer_cost(
    footprint: Sequence[FootprintPolygon],
    raw_footprints: Sequence[Sequence[FootprintPolygon]],
) -> LayerCost:
    """Cost triple of an unsimplified layer: no error, full raw area."""
    area = sum(calculate_area(p) for s in raw_footprints for p in s)
    primitives = sum(p.primitive_count for p in footprint)
    return LayerCost(0.0, float(area), int(primitives))
