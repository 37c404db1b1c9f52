"""
Coverage accumulators and the frame score.

Pure functions over numpy arrays. The add_* functions update their
accumulator in place; ownership and locking belong to CalibrationSession.
"""

from __future__ import annotations

import math

import cv2
import numpy as np

from ..types import RADIAL_LENGTH, ScoringConfig


# ============================================================================
# Construction
# ============================================================================


def create_gaussian_kernel(sigma: float) -> np.ndarray:
    """Square 2D Gaussian truncated at 3 sigma, peak normalised to 1."""
    size = 2 * int(math.ceil(3.0 * sigma)) + 1
    k = cv2.getGaussianKernel(size, sigma)
    kernel = k @ k.T
    return kernel / kernel.max()


def create_distribution_map(image_size: tuple[int, int], map_cell: int) -> np.ndarray:
    width, height = image_size
    return np.zeros((math.ceil(height / map_cell), math.ceil(width / map_cell)), dtype=np.float64)


def create_bin_map(config: ScoringConfig) -> np.ndarray:
    return np.zeros((config.bin_rows, config.bin_cols), dtype=np.int64)


def create_radial_distribution() -> np.ndarray:
    return np.zeros(RADIAL_LENGTH, dtype=np.float64)


# ============================================================================
# Index Helpers
# ============================================================================


def _map_indices(corners: np.ndarray, shape: tuple[int, int], cell: float) -> tuple[np.ndarray, np.ndarray]:
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    cols = np.clip((pts[:, 0] / cell).astype(int), 0, shape[1] - 1)
    rows = np.clip((pts[:, 1] / cell).astype(int), 0, shape[0] - 1)
    return rows, cols


def _bin_indices(corners: np.ndarray, shape: tuple[int, int], image_size: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    width, height = image_size
    cols = np.clip((pts[:, 0] / width * shape[1]).astype(int), 0, shape[1] - 1)
    rows = np.clip((pts[:, 1] / height * shape[0]).astype(int), 0, shape[0] - 1)
    return rows, cols


def _radial_indices(corners: np.ndarray, image_size: tuple[int, int]) -> np.ndarray:
    """Radius from the image centre, normalised by the half-diagonal, as bins."""
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    width, height = image_size
    centre = np.array([width / 2.0, height / 2.0])
    radius = np.linalg.norm(pts - centre, axis=1) / np.hypot(width / 2.0, height / 2.0)
    return np.clip((radius * RADIAL_LENGTH).astype(int), 0, RADIAL_LENGTH - 1)


# ============================================================================
# Accumulation
# ============================================================================


def add_to_distribution_map(
    distribution_map: np.ndarray,
    corners: np.ndarray,
    kernel: np.ndarray,
    map_cell: int,
) -> None:
    """Stamp a Gaussian footprint onto the map at every corner."""
    half = kernel.shape[0] // 2
    map_h, map_w = distribution_map.shape
    rows, cols = _map_indices(corners, distribution_map.shape, map_cell)

    for r, c in zip(rows, cols):
        r0, r1 = max(r - half, 0), min(r + half + 1, map_h)
        c0, c1 = max(c - half, 0), min(c + half + 1, map_w)
        distribution_map[r0:r1, c0:c1] += kernel[
            r0 - (r - half) : r1 - (r - half), c0 - (c - half) : c1 - (c - half)
        ]


def add_to_radial_distribution(
    radial_distribution: np.ndarray,
    corners: np.ndarray,
    image_size: tuple[int, int],
) -> None:
    """Tally corners by normalised distance from the image centre."""
    np.add.at(radial_distribution, _radial_indices(corners, image_size), 1.0)


def add_to_bin_map(bin_map: np.ndarray, corners: np.ndarray, image_size: tuple[int, int]) -> None:
    """Tally corners into a coarse grid of image bins."""
    rows, cols = _bin_indices(corners, bin_map.shape, image_size)
    np.add.at(bin_map, (rows, cols), 1)


def smooth_radial_distribution(radial_distribution: np.ndarray, sigma: float) -> np.ndarray:
    # Kernel no longer than the histogram so "same" keeps its length
    length = len(radial_distribution)
    size = min(2 * int(math.ceil(3.0 * sigma)) + 1, length if length % 2 else length - 1)
    k = cv2.getGaussianKernel(size, sigma).ravel()
    return np.convolve(radial_distribution, k / k.max(), mode="same")


# ============================================================================
# Scoring
# ============================================================================


def obtain_set_score(
    distribution_map: np.ndarray,
    bin_map: np.ndarray,
    radial_distribution: np.ndarray,
    corners: np.ndarray,
    image_size: tuple[int, int],
    config: ScoringConfig = ScoringConfig(),
) -> float:
    """
    Score how much new coverage a candidate corner set would add.

    Three terms, each in [0, 1] and each falling as the candidate lands on
    already sampled ground:

    - spatial: mean of 1 / (1 + density) over the Gaussian-stamped map
    - bins: sum of 1 / (1 + count) over the distinct bins touched,
      divided by the total number of bins
    - radial: mean of 1 / (1 + smoothed count) at each corner's radius

    Args:
        distribution_map: Spatial accumulator
        bin_map: Coarse bin counts
        radial_distribution: Radial tally (RADIAL_LENGTH bins)
        corners: (n, 2) candidate corner set
        image_size: (width, height)
        config: Weights and kernel sizes

    Returns:
        Weighted sum of the three terms; 0.0 for an empty set
    """
    pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
    if len(pts) == 0:
        return 0.0

    rows, cols = _map_indices(pts, distribution_map.shape, config.map_cell)
    spatial = float(np.mean(1.0 / (1.0 + distribution_map[rows, cols])))

    b_rows, b_cols = _bin_indices(pts, bin_map.shape, image_size)
    touched = set(zip(b_rows.tolist(), b_cols.tolist()))
    bins = sum(1.0 / (1.0 + bin_map[r, c]) for r, c in touched) / bin_map.size

    smoothed = smooth_radial_distribution(radial_distribution, config.radial_sigma)
    radial = float(np.mean(1.0 / (1.0 + smoothed[_radial_indices(pts, image_size)])))

    return (
        config.spatial_weight * spatial
        + config.bin_weight * bins
        + config.radial_weight * radial
    )


def prep_for_display(distribution_map: np.ndarray) -> np.ndarray:
    """
    Blur and stretch a distribution map into a uint8 heat map.

    Only prepares the data; drawing it is up to the caller.
    """
    blurred = cv2.GaussianBlur(distribution_map.astype(np.float32), (0, 0), 2.0)
    peak = float(blurred.max())
    if peak <= 0:
        return np.zeros(distribution_map.shape, dtype=np.uint8)
    return np.clip(np.rint(blurred * (255.0 / peak)), 0, 255).astype(np.uint8)
