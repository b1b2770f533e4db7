"""
Voxel building ingestion.

Volumes are boolean arrays indexed [z, y, x] with z growing upward, so
volume[k] is the k-th horizontal slice. Each slice mask is turned into
footprint polygons by an extractor (extract_footprints by default); voxel
(x, y) covers the square [x, x+1] x [y, y+1] scaled by pitch.
"""
import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

import numpy as np
import shapely
import trimesh
from scipy import ndimage

from building_layer import VoxelBuilding
from geometry_primitives import FootprintPolygon, polygons_from_geometry

logger = logging.getLogger(__name__)

Extractor = Callable[[np.ndarray], List[FootprintPolygon]]

VOLUME_SUFFIXES = (".npy", ".npz")
MESH_SUFFIXES = (".stl", ".obj", ".ply", ".glb", ".gltf", ".off")


def extract_footprints(
    mask: np.ndarray,
    pitch: float = 1.0,
    origin: Tuple[float, float] = (0.0, 0.0),
) -> List[FootprintPolygon]:
    """Polygons (with holes) covering the True cells of a 2D mask.

    Row runs of filled cells become rectangles that are unioned with
    Shapely; the resulting polygons are ordered by descending area.
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.ndim != 2:
        raise ValueError(f"Expected a 2D mask, got shape {mask.shape}")
    if not mask.any():
        return []

    # run starts/ends per row from the padded row differences
    padded = np.pad(mask, ((0, 0), (1, 1))).astype(np.int8)
    diff = np.diff(padded, axis=1)
    rows_s, cols_s = np.nonzero(diff == 1)
    rows_e, cols_e = np.nonzero(diff == -1)
    order_s = np.lexsort((cols_s, rows_s))
    order_e = np.lexsort((cols_e, rows_e))
    rows, starts, ends = rows_s[order_s], cols_s[order_s], cols_e[order_e]

    ox, oy = origin
    boxes = shapely.box(
        ox + starts * pitch,
        oy + rows * pitch,
        ox + ends * pitch,
        oy + (rows + 1) * pitch,
    )
    merged = shapely.union_all(boxes)
    polygons = [p for p in polygons_from_geometry(merged) if not p.is_degenerate()]
    polygons.sort(key=lambda p: -p.area)
    return polygons


def voxel_building_from_masks(
    masks: Iterable[np.ndarray],
    extractor: Optional[Extractor] = None,
    building_id: Optional[int] = None,
) -> VoxelBuilding:
    """VoxelBuilding from bottom-to-top slice masks."""
    extractor = extractor or extract_footprints
    slices = [tuple(extractor(np.asarray(mask, dtype=bool))) for mask in masks]
    return VoxelBuilding.from_slices(slices, building_id)


def split_volume(
    volume: np.ndarray,
    extractor: Optional[Extractor] = None,
    pitch: float = 1.0,
) -> List[VoxelBuilding]:
    """One VoxelBuilding per 3D connected component of *volume*.

    Slice indices stay absolute (a building starting at z=3 has three
    empty slices below it) and footprints keep volume coordinates.
    """
    volume = np.asarray(volume, dtype=bool)
    if volume.ndim != 3:
        raise ValueError(f"Expected a 3D volume, got shape {volume.shape}")

    labels, count = ndimage.label(volume)
    logger.info("Volume %s: %d connected component(s)", volume.shape, count)

    buildings = []
    for index, bbox in enumerate(ndimage.find_objects(labels)):
        if bbox is None:
            continue
        zs, ys, xs = bbox
        component = labels[bbox] == index + 1
        origin = (xs.start * pitch, ys.start * pitch)

        if extractor is None:
            def extract(mask, origin=origin):
                return extract_footprints(mask, pitch, origin)
        else:
            extract = extractor

        slices = [()] * zs.start
        slices.extend(tuple(extract(mask)) for mask in component)
        buildings.append(VoxelBuilding.from_slices(slices, building_id=len(buildings)))
    return buildings


def load_voxel_volume(path: Union[str, Path]) -> np.ndarray:
    """Boolean [z, y, x] volume from a .npy file or a .npz archive.

    An archive's ``voxels`` entry is used when present, otherwise its
    first array.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        volume = np.load(path)
    elif suffix == ".npz":
        with np.load(path) as archive:
            key = "voxels" if "voxels" in archive.files else archive.files[0]
            volume = archive[key]
    else:
        raise ValueError(f"Unsupported volume format: {path.suffix}")
    volume = np.asarray(volume).astype(bool)
    if volume.ndim != 3:
        raise ValueError(f"{path.name}: expected a 3D volume, got shape {volume.shape}")
    return volume


def voxelize_mesh(
    mesh: Union[str, Path, trimesh.Trimesh],
    pitch: float = 1.0,
) -> np.ndarray:
    """Filled voxelization of a z-up mesh as a [z, y, x] boolean volume."""
    if pitch <= 0:
        raise ValueError(f"pitch must be > 0, got {pitch}")
    if not isinstance(mesh, trimesh.Trimesh):
        loaded = trimesh.load(str(mesh))
        # Flatten scene to a single mesh with all transforms applied
        if isinstance(loaded, trimesh.Scene):
            loaded = loaded.to_mesh()
        mesh = loaded

    grid = mesh.voxelized(pitch).fill()
    matrix = np.asarray(grid.matrix, dtype=bool)      # [x, y, z]
    logger.info(
        "Voxelized mesh (%d faces) at pitch %.3f: %s voxels",
        len(mesh.faces), pitch, matrix.shape,
    )
    return np.transpose(matrix, (2, 1, 0))


def load_voxel_buildings(
    path: Union[str, Path],
    pitch: float = 1.0,
    extractor: Optional[Extractor] = None,
) -> List[VoxelBuilding]:
    """Load a volume or mesh file and split it into voxel buildings."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in VOLUME_SUFFIXES:
        volume = load_voxel_volume(path)
    elif suffix in MESH_SUFFIXES:
        volume = voxelize_mesh(path, pitch)
    else:
        raise ValueError(f"Unsupported input format: {path.suffix}")
    return split_volume(volume, extractor=extractor, pitch=pitch)
