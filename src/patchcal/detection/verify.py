"""
Geometric verification of marker centres and corner sets.

Boolean checks only; callers turn a False into a rejected frame.
"""

from __future__ import annotations

import logging

import numpy as np

from ..types import MIN_DISTANCE_FROM_EDGE, PatternGeometry

logger = logging.getLogger(__name__)

# Neighbour offsets scanned once per point (the reverse direction is implied)
_CELL_NEIGHBOURS = ((0, 1), (1, 0), (1, 1), (1, -1))


def default_max_spacing(image_size: tuple[int, int], lattice_rows: int, lattice_cols: int) -> float:
    """Largest plausible neighbour spacing for a grid that fits in the image."""
    return float(max(image_size)) / max(min(lattice_rows, lattice_cols) - 1, 1)


def pattern_in_frame(
    image_size: tuple[int, int],
    points: np.ndarray,
    min_border: int = MIN_DISTANCE_FROM_EDGE,
) -> bool:
    """True if every point lies at least min_border pixels inside the image."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    pts = pts[~np.isnan(pts[:, 0])]
    if len(pts) == 0:
        return False
    width, height = image_size
    return bool(
        pts[:, 0].min() >= min_border
        and pts[:, 1].min() >= min_border
        and pts[:, 0].max() <= width - 1 - min_border
        and pts[:, 1].max() <= height - 1 - min_border
    )


def _spacings_ok(grid: np.ndarray, offsets, min_dist: float, max_dist: float) -> bool:
    """Check neighbour spacing on a (rows, cols, 2) grid, NaN entries skipped."""
    rows, cols = grid.shape[:2]
    for di, dj in offsets:
        i0, i1 = 0, rows - di
        j0, j1 = max(0, -dj), cols - max(0, dj)
        if i1 <= i0 or j1 <= j0:
            continue
        a = grid[i0:i1, j0:j1]
        b = grid[i0 + di : i1 + di, j0 + dj : j1 + dj]
        dist = np.linalg.norm(b - a, axis=2) / np.hypot(di, dj)
        dist = dist[~np.isnan(dist)]
        if dist.size and (dist.min() < min_dist or dist.max() > max_dist):
            logger.debug(
                "Spacing %.2f..%.2f outside [%.2f, %.2f]",
                dist.min(),
                dist.max(),
                min_dist,
                max_dist,
            )
            return False
    return True


def verify_patches(
    image_size: tuple[int, int],
    geometry: PatternGeometry,
    centres: np.ndarray,
    min_dist: float,
    max_dist: float | None = None,
    min_border: int = MIN_DISTANCE_FROM_EDGE,
) -> bool:
    """
    Verify that ordered marker centres form a plausible grid.

    Spacing between neighbouring markers (horizontal, vertical and
    diagonal, normalised by grid distance) must lie in [min_dist, max_dist]
    and all centres must be inside the frame.
    """
    rows, cols = geometry.rows, geometry.cols
    if max_dist is None:
        max_dist = default_max_spacing(image_size, rows, cols)

    grid = np.asarray(centres, dtype=np.float64).reshape(rows, cols, 2)
    if np.isnan(grid[geometry.findable_mask()]).any():
        return False

    if not _spacings_ok(grid, _CELL_NEIGHBOURS, min_dist, max_dist):
        return False
    return pattern_in_frame(image_size, grid.reshape(-1, 2), min_border)


def _signed_areas(quads: np.ndarray) -> np.ndarray:
    """Shoelace areas of (n, 4, 2) quadrilaterals."""
    x, y = quads[:, :, 0], quads[:, :, 1]
    return 0.5 * np.sum(x * np.roll(y, -1, axis=1) - np.roll(x, -1, axis=1) * y, axis=1)


def verify_corners(
    image_size: tuple[int, int],
    geometry: PatternGeometry,
    corners: np.ndarray,
    min_dist: float,
    max_dist: float | None = None,
    min_border: int = MIN_DISTANCE_FROM_EDGE,
) -> bool:
    """
    Verify a lattice corner set (row-by-row).

    Checks neighbour spacing, in-frame position and that no cell is
    folded: every cell quad must have the same, non-zero orientation.
    Mask targets only check the sides of each marker, since the gap
    between markers is not a spacing of the grid.
    """
    lr, lc = geometry.lattice_shape
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    if len(pts) != lr * lc or not np.isfinite(pts).all():
        return False
    if max_dist is None:
        max_dist = default_max_spacing(image_size, lr, lc)

    grid = pts.reshape(lr, lc, 2)
    if geometry.topology_impl.corners_per_cell:
        quads = grid.reshape(geometry.rows, 2, geometry.cols, 2, 2).transpose(0, 2, 1, 3, 4)
        quads = quads[:, :, [0, 0, 1, 1], [0, 1, 1, 0]].reshape(-1, 4, 2)
        sides = np.linalg.norm(quads - np.roll(quads, -1, axis=1), axis=2)
        if sides.min() < min_dist or sides.max() > max_dist:
            logger.debug("Marker side %.2f..%.2f out of range", sides.min(), sides.max())
            return False
    else:
        if not _spacings_ok(grid, ((0, 1), (1, 0)), min_dist, max_dist):
            return False
        quads = np.stack(
            [grid[:-1, :-1], grid[:-1, 1:], grid[1:, 1:], grid[1:, :-1]], axis=2
        ).reshape(-1, 4, 2)

    areas = _signed_areas(quads)
    if not ((areas > 0).all() or (areas < 0).all()):
        logger.debug("Folded or degenerate cells in corner set")
        return False

    return pattern_in_frame(image_size, pts, min_border)


def verify_pattern(
    image_size: tuple[int, int],
    geometry: PatternGeometry,
    corners: np.ndarray,
    min_dist: float,
    max_dist: float | None = None,
) -> bool:
    """
    Verify a corner set in reported (canonical) order.

    Accepts quad-clustered sets for mask targets by regrouping them.
    """
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    if geometry.topology_impl.corners_per_cell and len(pts) == geometry.corner_count:
        # Quad order TL, TR, BR, BL back to the (2*rows) x (2*cols) lattice
        quads = pts.reshape(geometry.rows, geometry.cols, 4, 2)
        lattice = np.empty((geometry.rows, 2, geometry.cols, 2, 2))
        for k, (a, b) in enumerate(((0, 0), (0, 1), (1, 1), (1, 0))):
            lattice[:, a, :, b] = quads[:, :, k]
        pts = lattice.reshape(-1, 2)
    return verify_corners(image_size, geometry, pts, min_dist, max_dist)
