"""
Grid mapper.

Assigns unordered marker centres to (row, col) cells:

1. The four corner cells come from the quadrilateral hull of the centres.
2. Each edge is walked from its corner towards the next one, greedily
   taking the nearest unassigned centre inside a bounded search window.
3. Interior cells are predicted row by row with a bilinear (Coons) patch
   over the already placed rows and border columns, then matched to the
   nearest unassigned centre.

The result always has rows*cols entries so index i*cols+j is row i,
column j; cells without a marker hold NaN.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy.spatial import cKDTree

from ..topology import EDGES
from ..types import GridConfig, PatternGeometry

logger = logging.getLogger(__name__)


# ============================================================================
# Layout
# ============================================================================


def determine_patch_distribution(geometry: PatternGeometry) -> tuple[int, int, int]:
    """
    Rows, cols and total count of the findable marker layout.

    Rows/cols count only rows and columns that hold at least one marker.
    """
    mask = geometry.findable_mask()
    return int(mask.any(axis=1).sum()), int(mask.any(axis=0).sum()), int(mask.sum())


def determine_findable_patches(geometry: PatternGeometry) -> tuple[np.ndarray, np.ndarray]:
    """Number of findable markers in each row and in each column."""
    mask = geometry.findable_mask()
    return mask.sum(axis=1), mask.sum(axis=0)


# ============================================================================
# Corner Patches
# ============================================================================


def find_corner_patches(centres: np.ndarray) -> np.ndarray | None:
    """
    Indices of the four centres forming the hull quadrilateral.

    Returned clockwise on screen (y down), starting from the vertex closest
    to the image origin. None if the hull does not reduce to four vertices.
    """
    if len(centres) < 4:
        return None

    pts = centres.astype(np.float32).reshape(-1, 1, 2)
    hull = cv2.convexHull(pts)
    perimeter = cv2.arcLength(hull, True)

    quad = None
    epsilon = 0.01 * perimeter
    for _ in range(12):
        approx = cv2.approxPolyDP(hull, epsilon, True)
        if len(approx) == 4:
            quad = approx.reshape(-1, 2)
            break
        if len(approx) < 4:
            break
        epsilon *= 1.5
    if quad is None:
        return None

    # Shoelace > 0 means clockwise when y points down
    x, y = quad[:, 0], quad[:, 1]
    if np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y) < 0:
        quad = quad[::-1]

    indices = np.array(
        [int(np.argmin(np.linalg.norm(centres - v, axis=1))) for v in quad]
    )
    if len(set(indices.tolist())) != 4:
        return None

    start = int(np.argmin(quad.sum(axis=1)))
    return np.roll(indices, -start)


# ============================================================================
# Edge Walking
# ============================================================================


class _Assigner:
    """Nearest-unassigned lookup over a fixed set of centres."""

    def __init__(self, centres: np.ndarray):
        self.centres = centres
        self.tree = cKDTree(centres)
        self.taken = np.zeros(len(centres), dtype=bool)

    def nearest(self, point: np.ndarray, radius: float) -> int | None:
        candidates = [k for k in self.tree.query_ball_point(point, radius) if not self.taken[k]]
        if not candidates:
            return None
        dist = np.linalg.norm(self.centres[candidates] - point, axis=1)
        return candidates[int(np.argmin(dist))]

    def take(self, index: int) -> None:
        self.taken[index] = True


def _walk_edge(
    cells: list[tuple[int, int]],
    start: int,
    end: int,
    assigner: _Assigner,
    search_ratio: float,
) -> list[int] | None:
    """
    Assign centres to one edge's cells, from corner start to corner end.

    The first step is predicted along the straight line between the two
    corners; later steps extrapolate the previous step so the walk follows
    perspective foreshortening.
    """
    centres = assigner.centres
    # Position of each cell along the edge, in cells
    t = np.array([abs(c[0] - cells[0][0]) + abs(c[1] - cells[0][1]) for c in cells], dtype=float)
    span = t[-1] - t[0]

    path = [start]
    for k in range(1, len(cells)):
        last = centres[path[-1]]
        if k == 1:
            step = (centres[end] - centres[start]) / span
        else:
            step = (last - centres[path[-2]]) / (t[k - 1] - t[k - 2])
        predicted = last + step * (t[k] - t[k - 1])
        radius = search_ratio * float(np.linalg.norm(predicted - last))

        if k == len(cells) - 1:
            if np.linalg.norm(centres[end] - predicted) > radius:
                return None
            path.append(end)
            break

        found = assigner.nearest(predicted, radius)
        if found is None or found == end:
            return None
        path.append(found)
        assigner.take(found)

    return path


def find_edge_patches(
    centres: np.ndarray,
    geometry: PatternGeometry,
    corner_indices: np.ndarray,
    config: GridConfig = GridConfig(),
) -> tuple[np.ndarray, _Assigner] | None:
    """
    Place the border markers.

    Tries each hull vertex as the (0, 0) cell, nearest-to-origin first,
    and keeps the first labelling whose four edge walks all succeed.

    Returns:
        ((rows, cols, 2) placed grid with NaN for unplaced cells, assigner)
    """
    rows, cols = geometry.rows, geometry.cols
    layout = geometry.topology_impl.border_patch_layout(rows, cols)
    corner_cells = [(0, 0), (0, cols - 1), (rows - 1, cols - 1), (rows - 1, 0)]

    distances = [float(centres[i].sum()) for i in corner_indices]
    for shift in np.argsort(distances, kind="stable"):
        labelled = np.roll(corner_indices, -int(shift))
        assigner = _Assigner(centres)
        for idx in labelled:
            assigner.take(int(idx))

        placed = np.full((rows, cols, 2), np.nan)
        for cell, idx in zip(corner_cells, labelled):
            placed[cell] = centres[idx]

        ok = True
        for k, edge in enumerate(EDGES):
            path = _walk_edge(
                layout[edge],
                int(labelled[k]),
                int(labelled[(k + 1) % 4]),
                assigner,
                config.search_ratio,
            )
            if path is None:
                ok = False
                break
            for cell, idx in zip(layout[edge], path):
                placed[cell] = centres[idx]

        if ok:
            return placed, assigner

    return None


# ============================================================================
# Interior
# ============================================================================


def _interp_line(known: dict[int, np.ndarray], length: int) -> np.ndarray:
    """Linear interpolation of 2D positions known at some integer indices."""
    keys = sorted(known)
    pts = np.array([known[k] for k in keys])
    idx = np.arange(length)
    return np.column_stack([np.interp(idx, keys, pts[:, 0]), np.interp(idx, keys, pts[:, 1])])


def _known(line: np.ndarray) -> dict[int, np.ndarray]:
    return {k: line[k] for k in range(len(line)) if not np.isnan(line[k, 0])}


def find_interior_patches(
    placed: np.ndarray,
    geometry: PatternGeometry,
    assigner: _Assigner,
    config: GridConfig = GridConfig(),
) -> np.ndarray | None:
    """
    Fill interior cells row by row.

    Each row is predicted by a Coons patch spanning the previous row, the
    bottom row and the two border columns, so errors in the border
    interpolation do not accumulate down the grid.
    """
    rows, cols = geometry.rows, geometry.cols
    mask = geometry.findable_mask()
    placed = placed.copy()

    left = _interp_line(_known(placed[:, 0]), rows)
    right = _interp_line(_known(placed[:, cols - 1]), rows)
    bottom_known = _known(placed[rows - 1])
    bottom_known.update({0: left[rows - 1], cols - 1: right[rows - 1]})
    bottom = _interp_line(bottom_known, cols)

    for i in range(1, rows - 1):
        top_known = _known(placed[i - 1])
        top_known.update({0: left[i - 1], cols - 1: right[i - 1]})
        top = _interp_line(top_known, cols)

        v = 1.0 / (rows - i)
        for j in range(1, cols - 1):
            if not mask[i, j]:
                continue
            u = j / (cols - 1)
            predicted = (
                (1 - v) * top[j]
                + v * bottom[j]
                + (1 - u) * left[i]
                + u * right[i]
                - (
                    (1 - u) * (1 - v) * top[0]
                    + u * (1 - v) * top[cols - 1]
                    + (1 - u) * v * bottom[0]
                    + u * v * bottom[cols - 1]
                )
            )
            pitch = min(
                float(np.linalg.norm(predicted - top[j])),
                0.5 * float(np.linalg.norm(top[j + 1] - top[j - 1])),
            )
            found = assigner.nearest(predicted, config.search_ratio * pitch)
            if found is None:
                logger.debug("No centre near predicted cell (%d, %d)", i, j)
                return None
            assigner.take(found)
            placed[i, j] = assigner.centres[found]

    return placed


# ============================================================================
# Entry Point
# ============================================================================


def sort_patches(
    centres: np.ndarray,
    geometry: PatternGeometry,
    config: GridConfig = GridConfig(),
) -> np.ndarray | None:
    """
    Reorder marker centres into canonical row-major cell order.

    Args:
        centres: (patch_count, 2) centres in arbitrary order
        geometry: Expected target layout
        config: Search window settings

    Returns:
        (rows*cols, 2) float64 array, NaN where a cell has no marker,
        or None if the grid cannot be disambiguated
    """
    centres = np.asarray(centres, dtype=np.float64).reshape(-1, 2)
    if len(centres) != geometry.patch_count:
        logger.debug("Expected %d centres, got %d", geometry.patch_count, len(centres))
        return None

    corner_indices = find_corner_patches(centres)
    if corner_indices is None:
        logger.debug("Centre hull is not a quadrilateral")
        return None

    edges = find_edge_patches(centres, geometry, corner_indices, config)
    if edges is None:
        logger.debug("No consistent labelling of the border")
        return None
    placed, assigner = edges

    placed = find_interior_patches(placed, geometry, assigner, config)
    if placed is None:
        return None

    if not assigner.taken.all():
        return None

    return placed.reshape(-1, 2)
