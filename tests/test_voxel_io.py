"""Tests for voxel volume ingestion."""
import numpy as np
import pytest
import trimesh

from conftest import make_square
from voxel_io import (
    extract_footprints,
    load_voxel_buildings,
    load_voxel_volume,
    split_volume,
    voxel_building_from_masks,
    voxelize_mesh,
)


class TestExtractFootprints:

    def test_ring_mask_has_hole(self):
        mask = np.ones((5, 5), dtype=bool)
        mask[2, 2] = False
        polygons = extract_footprints(mask)
        assert len(polygons) == 1
        assert len(polygons[0].holes) == 1
        assert polygons[0].area == pytest.approx(24.0)

    def test_pitch_and_origin(self):
        mask = np.zeros((4, 6), dtype=bool)
        mask[1:3, 2:5] = True
        (poly,) = extract_footprints(mask, pitch=2.0, origin=(10.0, 20.0))
        assert poly.to_shapely().bounds == pytest.approx((14.0, 22.0, 20.0, 26.0))
        assert poly.area == pytest.approx(24.0)

    def test_components_sorted_by_area(self):
        mask = np.zeros((10, 10), dtype=bool)
        mask[0:2, 0:2] = True
        mask[5:9, 5:9] = True
        areas = [p.area for p in extract_footprints(mask)]
        assert areas == pytest.approx([16.0, 4.0])

    def test_empty_mask(self):
        assert extract_footprints(np.zeros((3, 3), dtype=bool)) == []

    def test_rejects_3d_input(self):
        with pytest.raises(ValueError):
            extract_footprints(np.ones((2, 2, 2), dtype=bool))


class TestSplitVolume:

    def test_one_building_per_component(self, two_block_volume):
        buildings = split_volume(two_block_volume)
        assert [b.building_id for b in buildings] == [0, 1]

        first, second = buildings
        assert first.height == 4
        assert first.slices[0][0].to_shapely().bounds == pytest.approx((2, 2, 10, 8))

        # the second block starts one slice up
        assert second.height == 6
        assert second.slices[0] == ()
        assert second.slices[1][0].area == pytest.approx(13 * 8)

    def test_custom_extractor(self, two_block_volume):
        buildings = split_volume(two_block_volume, extractor=lambda mask: [make_square()])
        assert all(len(s) == 1 for s in buildings[0].slices)

    def test_rejects_2d_input(self):
        with pytest.raises(ValueError):
            split_volume(np.ones((3, 3), dtype=bool))

    def test_masks_to_building(self):
        masks = [np.ones((3, 3), dtype=bool)] * 2
        building = voxel_building_from_masks(masks, building_id=4)
        assert building.building_id == 4
        assert building.height == 2
        assert building.slices[1][0].area == pytest.approx(9.0)


class TestLoading:

    def test_npy(self, tmp_path, two_block_volume):
        path = tmp_path / "city.npy"
        np.save(path, two_block_volume.astype(np.uint8))
        volume = load_voxel_volume(path)
        assert volume.dtype == bool
        assert np.array_equal(volume, two_block_volume)

    def test_npz_prefers_voxels_key(self, tmp_path, two_block_volume):
        path = tmp_path / "city.npz"
        np.savez(path, other=np.zeros((1, 1, 1)), voxels=two_block_volume)
        assert np.array_equal(load_voxel_volume(path), two_block_volume)

    def test_rejects_unknown_suffix(self, tmp_path):
        with pytest.raises(ValueError):
            load_voxel_volume(tmp_path / "city.vox")
        with pytest.raises(ValueError):
            load_voxel_buildings(tmp_path / "city.vox")

    def test_rejects_wrong_rank(self, tmp_path):
        path = tmp_path / "flat.npy"
        np.save(path, np.ones((4, 4), dtype=bool))
        with pytest.raises(ValueError):
            load_voxel_volume(path)

    def test_volume_file_to_buildings(self, tmp_path, two_block_volume):
        path = tmp_path / "city.npy"
        np.save(path, two_block_volume)
        assert len(load_voxel_buildings(path)) == 2


class TestVoxelizeMesh:

    def test_axes_are_z_y_x(self):
        box = trimesh.creation.box(extents=(8.0, 4.0, 2.0))
        volume = voxelize_mesh(box, pitch=1.0)
        assert volume.ndim == 3
        assert volume.shape[0] < volume.shape[1] < volume.shape[2]
        assert volume.any()

    def test_mesh_file_to_buildings(self, tmp_path):
        path = tmp_path / "block.stl"
        trimesh.creation.box(extents=(6.0, 6.0, 6.0)).export(str(path))
        buildings = load_voxel_buildings(path, pitch=1.0)
        assert len(buildings) == 1
        assert buildings[0].height >= 6

    def test_rejects_bad_pitch(self):
        with pytest.raises(ValueError):
            voxelize_mesh(trimesh.creation.box(), pitch=0.0)
