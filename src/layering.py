"""
Layering: group a voxel building's slices into vertically homogeneous layers.

Walks slices bottom-to-top, growing the current layer while consecutive
footprints stay similar (IOU of their unions) and keep the same number of
connected components. A split or merge ends the layer and starts one child
per component; a similarity drop ends the layer and starts a single child.
Short layers are merged with a neighbour or dropped. Slice polygons that no
layer reaches from below are left out (and logged at debug level).
"""
import logging
from typing import List, Optional, Sequence, Set, Tuple

from shapely.errors import GEOSException

from building_layer import (
    BuildingTree,
    LayerDraft,
    LayeringError,
    Slice,
    VoxelBuilding,
)
from geometry_primitives import (
    FootprintPolygon,
    calculate_iou_geoms,
    footprint_union,
)

logger = logging.getLogger(__name__)

DEFAULT_LAYERING_THRESHOLD = 0.7


def layering(
    voxel_building: VoxelBuilding,
    layering_threshold: float = DEFAULT_LAYERING_THRESHOLD,
    min_num_slices_per_layer: int = 1,
    building_id: Optional[int] = None,
) -> BuildingTree:
    """Decompose a voxel building into a BuildingTree.

    Args:
        voxel_building: Bottom-to-top slice stack.
        layering_threshold: Minimum IOU between consecutive slices for them
            to stay in the same layer.
        min_num_slices_per_layer: A shorter layer absorbs its only child,
            is absorbed by its parent when it is an only child, hands its
            slices down when it splits, and is dropped when it is a leaf
            among siblings. Only a root that splits may stay short.
        building_id: Overrides voxel_building.building_id.

    Returns:
        The raw layer tree; empty when the building has no usable slice.
    """
    if not 0.0 <= layering_threshold <= 1.0:
        raise ValueError(
            f"layering_threshold must be in [0, 1], got {layering_threshold}"
        )
    if building_id is None:
        building_id = voxel_building.building_id if voxel_building.building_id is not None else 0

    slices = [_usable_polygons(s) for s in voxel_building.slices]
    start = next((h for h, s in enumerate(slices) if s), None)
    if start is None:
        logger.debug("Building %d has no usable slices", building_id)
        return BuildingTree.empty(building_id)

    claimed: Set[Tuple[int, int]] = set()
    seed = list(range(len(slices[start])))
    for i in seed:
        claimed.add((start, i))

    root = _grow_tree(slices, start, seed, layering_threshold, claimed)
    _log_unclaimed(building_id, slices, claimed)
    root = _enforce_min_slices(root, max(1, int(min_num_slices_per_layer)))
    if root is None:
        logger.debug(
            "Building %d dropped: shorter than %d slices",
            building_id, min_num_slices_per_layer,
        )
        return BuildingTree.empty(building_id)

    tree = BuildingTree.from_draft(building_id, root)
    logger.debug(
        "Building %d layered into %d layers (depth %d)",
        building_id, len(tree.layers), tree.depth(),
    )
    return tree


def footprint_similarity(
    a: Sequence[FootprintPolygon],
    b: Sequence[FootprintPolygon],
) -> float:
    """IOU between the unions of two slice footprints."""
    return calculate_iou_geoms(footprint_union(a), footprint_union(b))


# ─── Layer growth ─────────────────────────────────────────────────────────────

def _grow_tree(
    slices: List[List[FootprintPolygon]],
    start: int,
    seed: List[int],
    threshold: float,
    claimed: Set[Tuple[int, int]],
) -> LayerDraft:
    """Grow the root layer and every branch above it, depth-first.

    Uses an explicit work stack so tall buildings with one layer per slice
    do not hit the recursion limit. A branch that fails is skipped; a
    failing root raises.
    """
    root: Optional[LayerDraft] = None
    stack: List[Tuple[Optional[LayerDraft], int, List[int]]] = [(None, start, seed)]
    while stack:
        parent, bottom, layer_seed = stack.pop()
        try:
            draft, next_seeds = _grow_layer(slices, bottom, layer_seed, threshold, claimed)
        except LayeringError as exc:
            if parent is None:
                raise
            logger.warning("Skipping branch at slice %d: %s", bottom, exc)
            continue

        if parent is None:
            root = draft
        else:
            parent.children.append(draft)

        for child_seed in next_seeds:
            for i in child_seed:
                claimed.add((draft.top_height, i))
        for child_seed in reversed(next_seeds):
            stack.append((draft, draft.top_height, child_seed))
    return root


def _grow_layer(
    slices: List[List[FootprintPolygon]],
    start: int,
    seed: List[int],
    threshold: float,
    claimed: Set[Tuple[int, int]],
) -> Tuple[LayerDraft, List[List[int]]]:
    """Grow one layer from *seed* (polygon indices in slice *start*) upward.

    Returns the layer and the seeds of its children in the slice above it.
    """
    current = seed
    raw: List[Slice] = [tuple(slices[start][i] for i in seed)]
    height = start
    next_seeds: List[List[int]] = []

    try:
        while height + 1 < len(slices):
            connected = _connected_polygons(
                slices[height], current, slices[height + 1], height + 1, claimed,
            )
            if not connected:
                break
            if len(connected) != len(current):
                next_seeds = [[i] for i in connected]
                break
            similarity = footprint_similarity(
                [slices[height][i] for i in current],
                [slices[height + 1][i] for i in connected],
            )
            if similarity < threshold:
                next_seeds = [connected]
                break
            height += 1
            current = connected
            raw.append(tuple(slices[height][i] for i in current))
            for i in current:
                claimed.add((height, i))
    except GEOSException as exc:
        raise LayeringError(f"Cannot compare slices above {height}: {exc}") from exc

    draft = LayerDraft(bottom_height=start, top_height=height + 1, raw_footprints=raw)
    return draft, next_seeds


def _connected_polygons(
    below: List[FootprintPolygon],
    below_indices: List[int],
    above: List[FootprintPolygon],
    above_height: int,
    claimed: Set[Tuple[int, int]],
) -> List[int]:
    """Indices of unclaimed polygons in *above* overlapping the current ones."""
    current = footprint_union([below[i] for i in below_indices])
    if current.is_empty:
        return []
    connected = []
    for i, poly in enumerate(above):
        if (above_height, i) in claimed:
            continue
        if _overlap_area(poly, current) > 0.0:
            connected.append(i)
    return connected


def _overlap_area(poly: FootprintPolygon, geom) -> float:
    own = poly.to_shapely()
    if not own.is_valid:
        own = own.buffer(0)
    return float(own.intersection(geom).area)


def _usable_polygons(slice_polygons: Sequence[FootprintPolygon]) -> List[FootprintPolygon]:
    usable = []
    for poly in slice_polygons:
        if poly.is_degenerate():
            logger.debug("Ignoring degenerate slice polygon with %d vertices", len(poly.contour))
            continue
        usable.append(poly)
    return usable


def _log_unclaimed(
    building_id: int,
    slices: List[List[FootprintPolygon]],
    claimed: Set[Tuple[int, int]],
) -> None:
    """Report slice polygons no layer reached from below."""
    unclaimed = [
        (h, i)
        for h, slice_polygons in enumerate(slices)
        for i in range(len(slice_polygons))
        if (h, i) not in claimed
    ]
    if unclaimed:
        logger.debug(
            "Building %d: %d slice polygons are not connected to the root "
            "from below (first at slice %d)",
            building_id, len(unclaimed), unclaimed[0][0],
        )


# ─── Minimum slice count ──────────────────────────────────────────────────────

def _enforce_min_slices(draft: LayerDraft, min_slices: int) -> Optional[LayerDraft]:
    """Merge or drop layers spanning fewer than *min_slices* slices.

    Returns None when the root itself ends up short and childless. A short
    root that splits into several layers is kept, as a tree has one root.
    """
    _merge_short_layers(draft, min_slices)
    if draft.num_slices < min_slices and not draft.children:
        return None
    if draft.num_slices < min_slices:
        logger.debug(
            "Keeping short root [%d, %d): it splits into %d layers",
            draft.bottom_height, draft.top_height, len(draft.children),
        )
    return draft


def _merge_short_layers(root: LayerDraft, min_slices: int) -> None:
    """Children before parents, for every layer:

    - a short child that splits further hands its slices down to its own
      children, which then start where it started;
    - short leaves among siblings are dropped;
    - a lone child is absorbed while it or the layer itself is short.
    """
    order: List[LayerDraft] = []
    stack = [root]
    while stack:
        draft = stack.pop()
        order.append(draft)
        stack.extend(draft.children)

    for draft in reversed(order):
        children: List[LayerDraft] = []
        for child in draft.children:
            if child.num_slices < min_slices and len(child.children) > 1:
                children.extend(_hand_down(child))
            else:
                children.append(child)
        draft.children = children

        if len(draft.children) > 1:
            for child in draft.children:
                if child.num_slices < min_slices and not child.children:
                    logger.debug(
                        "Dropping short branch [%d, %d)",
                        child.bottom_height, child.top_height,
                    )
            draft.children = [
                c for c in draft.children
                if c.num_slices >= min_slices or c.children
            ]

        while len(draft.children) == 1 and (
            draft.children[0].num_slices < min_slices or draft.num_slices < min_slices
        ):
            only = draft.children[0]
            logger.debug(
                "Merging layer [%d, %d) into [%d, %d)",
                only.bottom_height, only.top_height,
                draft.bottom_height, draft.top_height,
            )
            draft.raw_footprints.extend(only.raw_footprints)
            draft.top_height = only.top_height
            draft.children = only.children


def _hand_down(draft: LayerDraft) -> List[LayerDraft]:
    """Prepend a short layer's slices to its children and return them.

    Each polygon goes to the child whose first slice it overlaps most.
    """
    firsts = [footprint_union(child.raw_footprints[0]) for child in draft.children]
    prefixes: List[List[Slice]] = [[] for _ in draft.children]
    try:
        for slice_polygons in draft.raw_footprints:
            parts: List[List[FootprintPolygon]] = [[] for _ in draft.children]
            for poly in slice_polygons:
                overlaps = [_overlap_area(poly, first) for first in firsts]
                parts[max(range(len(overlaps)), key=overlaps.__getitem__)].append(poly)
            for prefix, part in zip(prefixes, parts):
                prefix.append(tuple(part))
    except GEOSException as exc:
        raise LayeringError(
            f"Cannot split layer [{draft.bottom_height}, {draft.top_height}): {exc}"
        ) from exc

    logger.debug(
        "Handing short layer [%d, %d) down to %d children",
        draft.bottom_height, draft.top_height, len(draft.children),
    )
    for child, prefix in zip(draft.children, prefixes):
        child.raw_footprints = prefix + child.raw_footprints
        child.bottom_height = draft.bottom_height
    return draft.children
