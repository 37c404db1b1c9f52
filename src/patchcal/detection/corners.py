"""
Corner estimation and refinement.

Corners live on the topology's lattice (row-by-row) while they are being
worked on. Only the final reported set is reordered (quad clustering for
mask targets).
"""

from __future__ import annotations

import logging
from typing import Iterator

import cv2
import numpy as np

from ..topology import TopologyCode
from ..types import (
    MIN_DISTANCE_FROM_EDGE,
    GridConfig,
    PatternGeometry,
    RefinementConfig,
    RefinementResult,
)
from .grid import sort_patches

logger = logging.getLogger(__name__)

_NEIGHBOURS = [(di, dj) for di in (-1, 0, 1) for dj in (-1, 0, 1) if (di, dj) != (0, 0)]


# ============================================================================
# Local Homographies
# ============================================================================


def _fit_and_project(src: np.ndarray, dst: np.ndarray, targets: np.ndarray) -> np.ndarray | None:
    """Fit src -> dst exactly/least-squares and map targets through it."""
    if len(src) < 4 or np.linalg.matrix_rank(src - src.mean(axis=0)) < 2:
        return None
    try:
        homography, _ = cv2.findHomography(src, dst, 0)
    except cv2.error:
        return None
    if homography is None:
        return None
    projected = cv2.perspectiveTransform(targets.reshape(-1, 1, 2).astype(np.float64), homography)
    return projected.reshape(-1, 2)


def _cell_windows(
    centre: tuple[int, int], rows: int, cols: int, cell_centred: bool
) -> Iterator[tuple[slice, slice]]:
    """
    Growing windows of cells.

    Cell-centred windows surround cell (i, j); otherwise the window
    surrounds the lattice point at the top-left corner of that cell.
    """
    ci, cj = centre
    extra = 1 if cell_centred else 0
    for reach in range(1, max(rows, cols) + 1):
        yield (
            slice(max(ci - reach, 0), min(ci + reach + extra, rows)),
            slice(max(cj - reach, 0), min(cj + reach + extra, cols)),
        )


def _project_from_cells(
    cells: np.ndarray,
    mask: np.ndarray,
    centre: tuple[int, int],
    targets: np.ndarray,
    cell_centred: bool,
) -> np.ndarray | None:
    """Project ideal targets using the nearest cells that give a usable fit."""
    rows, cols = mask.shape
    for rs, cs in _cell_windows(centre, rows, cols, cell_centred):
        ii, jj = np.nonzero(mask[rs, cs])
        ii, jj = ii + rs.start, jj + cs.start
        if len(ii) < 4:
            continue
        src = np.column_stack([jj + 0.5, ii + 0.5]).astype(np.float64)
        dst = cells[ii, jj]
        projected = _fit_and_project(src, dst, targets)
        if projected is not None:
            return projected
    return None


# ============================================================================
# Initial Estimate
# ============================================================================


def interpolate_corner_locations(
    centres: np.ndarray,
    geometry: PatternGeometry,
) -> np.ndarray | None:
    """
    Initial corner estimate from ordered marker centres.

    A lattice corner surrounded symmetrically by markers (all four cells,
    or one diagonal pair on a chessboard) is their mean. Any other corner
    is projected through a homography fitted to the nearest markers.

    Args:
        centres: (rows*cols, 2) row-major centres, NaN where not findable
        geometry: Target layout

    Returns:
        (corner_count, 2) lattice corners row-by-row, or None
    """
    rows, cols = geometry.rows, geometry.cols
    cells = np.asarray(centres, dtype=np.float64).reshape(rows, cols, 2)
    mask = ~np.isnan(cells[:, :, 0])
    ideal = geometry.ideal_corners()
    lr, lc = ideal.shape[:2]
    corners = np.empty((lr, lc, 2), dtype=np.float64)

    if geometry.topology_impl.corners_per_cell:
        for i in range(rows):
            for j in range(cols):
                targets = ideal[2 * i : 2 * i + 2, 2 * j : 2 * j + 2].reshape(-1, 2)
                projected = _project_from_cells(cells, mask, (i, j), targets, cell_centred=True)
                if projected is None:
                    return None
                corners[2 * i : 2 * i + 2, 2 * j : 2 * j + 2] = projected.reshape(2, 2, 2)
        return corners.reshape(-1, 2)

    for p in range(lr):
        for q in range(lc):
            neighbours = [
                (i, j)
                for i in (p - 1, p)
                for j in (q - 1, q)
                if 0 <= i < rows and 0 <= j < cols and mask[i, j]
            ]
            diagonal = (
                len(neighbours) == 2
                and abs(neighbours[0][0] - neighbours[1][0]) == 1
                and abs(neighbours[0][1] - neighbours[1][1]) == 1
            )
            if len(neighbours) == 4 or diagonal:
                corners[p, q] = np.mean([cells[c] for c in neighbours], axis=0)
                continue

            projected = _project_from_cells(cells, mask, (p, q), ideal[p, q], cell_centred=False)
            if projected is None:
                logger.debug("No usable neighbourhood for corner (%d, %d)", p, q)
                return None
            corners[p, q] = projected[0]

    return corners.reshape(-1, 2)


# ============================================================================
# Iterative Refinement
# ============================================================================


def refine_corner_positions(
    corners: np.ndarray,
    geometry: PatternGeometry,
    correction_factor: float = 0.5,
    max_passes: int = 100,
    tolerance: float = 0.01,
) -> RefinementResult:
    """
    Refine lattice corners through iterative local homography mappings.

    Every interior corner is re-predicted from a homography fitted to its
    eight lattice neighbours and moved towards that prediction by
    correction_factor. Passes update all corners from the previous pass.

    Args:
        corners: (n, 2) lattice corners row-by-row
        geometry: Target layout
        correction_factor: Damping in (0, 1]; 1 jumps straight to the prediction
        max_passes: Pass budget
        tolerance: Converged once no corner moves more than this (px)

    Returns:
        RefinementResult with the last estimate
    """
    if not 0.0 < correction_factor <= 1.0:
        raise ValueError(f"correction_factor must lie in (0, 1], got {correction_factor}")

    ideal = geometry.ideal_corners()
    lr, lc = ideal.shape[:2]
    grid = np.asarray(corners, dtype=np.float64).reshape(lr, lc, 2).copy()

    shift = 0.0
    for passes in range(1, max_passes + 1):
        updated = grid.copy()
        for p in range(1, lr - 1):
            for q in range(1, lc - 1):
                src = np.array([ideal[p + di, q + dj] for di, dj in _NEIGHBOURS])
                dst = np.array([grid[p + di, q + dj] for di, dj in _NEIGHBOURS])
                projected = _fit_and_project(src, dst, ideal[p, q])
                if projected is None:
                    continue
                updated[p, q] = grid[p, q] + correction_factor * (projected[0] - grid[p, q])

        shift = float(np.max(np.linalg.norm(updated - grid, axis=2)))
        grid = updated
        if shift < tolerance:
            return RefinementResult(grid.reshape(-1, 2), passes, True, shift)

    logger.debug("Refinement still moving %.4f px after %d passes", shift, max_passes)
    return RefinementResult(grid.reshape(-1, 2), max_passes, False, shift)


# ============================================================================
# Subpixel Snap
# ============================================================================


def min_lattice_spacing(corners: np.ndarray, geometry: PatternGeometry) -> float:
    lr, lc = geometry.lattice_shape
    grid = np.asarray(corners, dtype=np.float64).reshape(lr, lc, 2)
    horizontal = np.linalg.norm(np.diff(grid, axis=1), axis=2)
    vertical = np.linalg.norm(np.diff(grid, axis=0), axis=2)
    return float(min(horizontal.min(), vertical.min()))


def find_best_corners(
    grey: np.ndarray,
    corners: np.ndarray,
    window: int,
    search_dist: float = 3.0,
    min_edge: int = MIN_DISTANCE_FROM_EDGE,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Snap corner estimates to nearby image corners.

    A snap is kept only if it moves at most search_dist from the estimate
    and stays min_edge pixels inside the image; otherwise the estimate
    stands.

    Returns:
        ((n, 2) corners, (n,) bool mask of accepted snaps)
    """
    corners = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    height, width = grey.shape[:2]
    pts = corners.astype(np.float32).reshape(-1, 1, 2).copy()
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.01)

    try:
        snapped = cv2.cornerSubPix(grey, pts, (window, window), (-1, -1), criteria)
    except cv2.error:
        logger.debug("cornerSubPix failed, keeping estimates")
        return corners.copy(), np.zeros(len(corners), dtype=bool)

    snapped = snapped.reshape(-1, 2).astype(np.float64)
    moved = np.linalg.norm(snapped - corners, axis=1)
    inside = (
        (snapped[:, 0] >= min_edge)
        & (snapped[:, 0] <= width - 1 - min_edge)
        & (snapped[:, 1] >= min_edge)
        & (snapped[:, 1] <= height - 1 - min_edge)
    )
    accepted = (moved <= search_dist) & inside
    result = np.where(accepted[:, None], snapped, corners)
    return result, accepted


# ============================================================================
# Ordering
# ============================================================================


def group_points_in_quads(corners: np.ndarray, geometry: PatternGeometry) -> np.ndarray:
    """
    Convert a (2*rows) x (2*cols) lattice from row-by-row to quad-clustered.

    Quads follow cell order, each listed TL, TR, BR, BL.
    """
    rows, cols = geometry.rows, geometry.cols
    grid = np.asarray(corners).reshape(rows, 2, cols, 2, 2).transpose(0, 2, 1, 3, 4)
    return grid[:, :, [0, 0, 1, 1], [0, 1, 1, 0]].reshape(-1, 2)


def canonical_corner_order(corners: np.ndarray, geometry: PatternGeometry) -> np.ndarray:
    """Lattice corners in the order reported to callers."""
    if geometry.topology_impl.cell_ordering() == "quad":
        return group_points_in_quads(corners, geometry)
    return np.asarray(corners).reshape(-1, 2)


def sort_corners(
    corners: np.ndarray,
    geometry: PatternGeometry,
    config: GridConfig = GridConfig(),
) -> np.ndarray | None:
    """
    Put an unordered lattice corner set into canonical row-major order.

    The lattice is treated as a regular grid of points and ordered with the
    grid mapper. Only lattice topologies have a regular corner grid.
    """
    if geometry.topology_impl.cell_ordering() == "quad":
        raise ValueError("sort_corners does not apply to quad-clustered corner sets")
    lr, lc = geometry.lattice_shape
    lattice = PatternGeometry(rows=lr, cols=lc, topology=TopologyCode.REGULAR)
    return sort_patches(corners, lattice, config)


# ============================================================================
# Orchestration
# ============================================================================


def find_patch_corners(
    centres: np.ndarray,
    geometry: PatternGeometry,
    config: RefinementConfig = RefinementConfig(),
    grey: np.ndarray | None = None,
) -> RefinementResult | None:
    """
    Estimate, refine and optionally snap the corners of an ordered target.

    Args:
        centres: (rows*cols, 2) ordered centres from sort_patches
        geometry: Target layout
        config: Refinement settings
        grey: Detection image; the subpixel snap is skipped without it

    Returns:
        RefinementResult over lattice corners (row-by-row), or None if no
        initial estimate could be formed
    """
    initial = interpolate_corner_locations(centres, geometry)
    if initial is None:
        return None

    result = refine_corner_positions(
        initial,
        geometry,
        correction_factor=config.correction_factor,
        max_passes=config.max_passes,
        tolerance=config.tolerance,
    )
    if not result.converged:
        return result

    if grey is not None and config.subpixel and geometry.topology_impl.snap_corners:
        window = config.subpixel_window
        if window is None:
            window = max(2, min(10, int(0.25 * min_lattice_spacing(result.corners, geometry))))
        snapped, accepted = find_best_corners(grey, result.corners, window, config.search_dist)
        logger.debug("Subpixel snap accepted for %d/%d corners", accepted.sum(), len(accepted))
        result = RefinementResult(snapped, result.passes, True, result.max_shift)

    return result
