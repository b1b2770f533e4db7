"""Tests for layering and the BuildingTree arena."""
import logging

import pytest

from building_layer import (
    BuildingLayer,
    BuildingTree,
    LayerDraft,
    LayeringError,
    VoxelBuilding,
    select_representative_contours,
)
from conftest import make_rect, make_square
from geometry_primitives import FootprintPolygon
from layering import footprint_similarity, layering


def _spans(tree):
    return [(layer.bottom_height, layer.top_height) for layer in tree.layers]


class TestLayering:

    def test_identical_slices_make_one_layer(self, tower_building):
        tree = layering(tower_building, layering_threshold=0.7, min_num_slices_per_layer=3)
        assert len(tree.layers) == 1
        assert tree.root.bottom_height == 0
        assert tree.root.top_height == 10
        assert len(tree.root.raw_footprints) == 10

    def test_empty_building_gives_empty_tree(self):
        tree = layering(VoxelBuilding.from_slices([[], [], []], building_id=5))
        assert tree.is_empty
        assert tree.building_id == 5
        assert list(tree.walk()) == []

    def test_similarity_drop_starts_child(self, stepped_building):
        tree = layering(stepped_building, layering_threshold=0.7)
        assert len(tree.layers) == 2
        root, child = tree.layers
        assert (root.bottom_height, root.top_height) == (0, 4)
        assert (child.bottom_height, child.top_height) == (4, 10)
        assert root.children == (1,)

    def test_split_yields_one_child_per_component(self, twin_tower_building):
        tree = layering(twin_tower_building, layering_threshold=0.7)
        root = tree.root
        assert (root.bottom_height, root.top_height) == (0, 3)
        children = tree.children_of(0)
        assert len(children) == 2
        for child in children:
            assert (child.bottom_height, child.top_height) == (3, 8)
            assert len(child.footprint) == 1

    def test_leading_empty_slices_are_skipped(self):
        slices = [[], []] + [[make_square()] for _ in range(3)]
        tree = layering(VoxelBuilding.from_slices(slices))
        assert tree.root.bottom_height == 2
        assert tree.root.top_height == 5

    def test_degenerate_polygons_ignored(self):
        point = FootprintPolygon.from_coords([(3, 3)])
        slices = [[make_square(), point] for _ in range(4)]
        tree = layering(VoxelBuilding.from_slices(slices))
        assert len(tree.root.footprint) == 1

    def test_invalid_threshold_rejected(self, tower_building):
        with pytest.raises(ValueError):
            layering(tower_building, layering_threshold=1.5)

    def test_deep_building_does_not_hit_recursion_limit(self):
        slices = [[make_square(size=2000.0 - i)] for i in range(1200)]
        tree = layering(VoxelBuilding.from_slices(slices), layering_threshold=1.0)
        assert len(tree.layers) == 1200
        assert tree.depth() == 1200
        assert [i for i, _ in tree.walk()][:3] == [0, 1, 2]

    def test_polygons_unreachable_from_below_are_logged(self, caplog):
        far = make_square(100.0, 100.0)
        slices = [[make_square()], [make_square(), far], [make_square()]]
        with caplog.at_level(logging.DEBUG, logger="layering"):
            tree = layering(VoxelBuilding.from_slices(slices, building_id=3))
        assert _spans(tree) == [(0, 3)]
        assert all(len(s) == 1 for s in tree.root.raw_footprints)
        assert "Building 3: 1 slice polygons are not connected" in caplog.text


class TestMinSlices:

    def test_short_only_child_is_merged(self, stepped_building):
        tree = layering(stepped_building, min_num_slices_per_layer=7)
        assert len(tree.layers) == 1
        assert tree.root.top_height == 10
        assert len(tree.root.raw_footprints) == 10

    def test_short_sibling_is_dropped(self):
        base = [[make_rect(0, 0, 50, 20)] for _ in range(5)]
        both = [[make_rect(2, 5, 12, 15), make_rect(38, 5, 48, 15)] for _ in range(2)]
        tall = [[make_rect(2, 5, 12, 15)] for _ in range(3)]
        tree = layering(
            VoxelBuilding.from_slices(base + both + tall), min_num_slices_per_layer=3,
        )
        assert len(tree.layers) == 2
        child = tree.layers[1]
        assert (child.bottom_height, child.top_height) == (5, 10)

    def test_all_short_layers_give_empty_tree(self, twin_tower_building):
        assert layering(twin_tower_building, min_num_slices_per_layer=6).is_empty

    def test_short_lone_root_dropped(self):
        building = VoxelBuilding.from_slices([[make_square()] for _ in range(2)])
        assert layering(building, min_num_slices_per_layer=3).is_empty

    def test_short_layer_absorbs_its_only_child(self):
        base = [[make_rect(0, 0, 50, 20)] for _ in range(5)]
        split = [[make_rect(2, 5, 12, 15), make_rect(38, 5, 48, 15)]]
        shrunk = [[make_rect(2, 5, 6, 9), make_rect(38, 5, 48, 15)] for _ in range(5)]
        building = VoxelBuilding.from_slices(base + split + shrunk)
        assert _spans(layering(building)) == [(0, 5), (5, 6), (6, 11), (5, 11)]

        tree = layering(building, min_num_slices_per_layer=3)
        assert _spans(tree) == [(0, 5), (5, 11), (5, 11)]
        assert all(layer.num_slices >= 3 for layer in tree.layers)
        assert len(tree.layers[1].raw_footprints) == 6

    def test_short_layer_that_splits_hands_slices_down(self):
        base = [[make_rect(0, 0, 50, 20)] for _ in range(5)]
        split = [[make_rect(2, 2, 20, 18), make_rect(38, 5, 48, 15)]]
        forked = [
            [make_rect(2, 2, 8, 18), make_rect(12, 2, 20, 18), make_rect(38, 5, 48, 15)]
            for _ in range(5)
        ]
        building = VoxelBuilding.from_slices(base + split + forked)
        assert _spans(layering(building)) == [(0, 5), (5, 6), (6, 11), (6, 11), (5, 11)]

        tree = layering(building, min_num_slices_per_layer=3)
        assert _spans(tree) == [(0, 5), (5, 11), (5, 11), (5, 11)]
        assert all(layer.num_slices >= 3 for layer in tree.layers)
        assert tree.root.children == (1, 2, 3)
        # the wide slice goes to the tower it overlaps most
        assert tree.layers[1].raw_footprints[0] == ()
        assert tree.layers[2].raw_footprints[0][0].area == pytest.approx(18 * 16)
        kept = sum(len(s) for layer in tree.layers for s in layer.raw_footprints)
        assert kept == 5 + 2 + 5 * 3

    def test_short_root_absorbs_its_only_child(self):
        podium = [[make_square(size=40.0)]]
        tower = [[make_square(10.0, 10.0, 20.0)] for _ in range(6)]
        tree = layering(
            VoxelBuilding.from_slices(podium + tower), min_num_slices_per_layer=3,
        )
        assert _spans(tree) == [(0, 7)]


class TestBuildingTree:

    def test_child_below_parent_top_rejected(self):
        raw = ((make_square(),),)
        parent = BuildingLayer(0, 0, 5, (make_square(),), raw * 5, children=(1,))
        child = BuildingLayer(0, 3, 6, (make_square(),), raw * 3)
        with pytest.raises(LayeringError):
            BuildingTree(0, (parent, child))

    def test_layer_requires_bottom_below_top(self):
        with pytest.raises(LayeringError):
            BuildingLayer(0, 4, 4, (make_square(),), ((make_square(),),))

    def test_layer_requires_raw_footprints(self):
        with pytest.raises(LayeringError):
            BuildingLayer(0, 0, 1, (make_square(),), ())

    def test_from_draft_is_preorder(self):
        leaf_a = LayerDraft(3, 5, [(make_square(),)] * 2)
        leaf_b = LayerDraft(3, 6, [(make_square(20.0),)] * 3)
        root = LayerDraft(0, 3, [(make_rect(0, 0, 40, 10),)] * 3, children=[leaf_a, leaf_b])
        tree = BuildingTree.from_draft(7, root)
        assert [layer.bottom_height for _, layer in tree.walk()] == [0, 3, 3]
        assert tree.layers[0].children == (1, 2)
        assert tree.depth() == 2
        assert tree.to_dict()["building_id"] == 7

    def test_raw_costs_have_no_error(self, tower_building):
        tree = layering(tower_building)
        assert tree.root.costs.accuracy_cost == 0.0
        assert tree.root.costs.reference_area == pytest.approx(1000.0)


class TestRepresentative:

    def test_medoid_slice_selected(self):
        slices = [
            (make_square(size=10.0),),
            (make_square(size=11.0),),
            (make_square(size=12.0),),
        ]
        rep = select_representative_contours(slices)
        assert rep[0].area == pytest.approx(121.0)

    def test_similarity_of_unions(self):
        assert footprint_similarity([make_square()], [make_square()]) == pytest.approx(1.0)
