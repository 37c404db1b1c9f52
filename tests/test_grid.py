"""
Tests for patchcal.detection.grid (the grid mapper).
"""

import cv2
import numpy as np
import pytest

from patchcal.detection.grid import (
    determine_findable_patches,
    determine_patch_distribution,
    find_corner_patches,
    sort_patches,
)


def shuffled(centres, seed=0):
    """Drop NaN placeholders and shuffle, as the filter chain would hand them over."""
    pts = centres[~np.isnan(centres[:, 0])]
    return np.random.default_rng(seed).permutation(pts)


def rotate(points, degrees, about=(320.0, 240.0)):
    matrix = cv2.getRotationMatrix2D(about, degrees, 1.0)
    return points @ matrix[:, :2].T + matrix[:, 2]


class TestPatchDistribution:
    def test_regular(self, regular_geometry):
        assert determine_patch_distribution(regular_geometry) == (5, 7, 35)

    def test_extended(self, extended_geometry):
        assert determine_patch_distribution(extended_geometry) == (5, 7, 18)
        per_row, per_col = determine_findable_patches(extended_geometry)
        np.testing.assert_array_equal(per_row, [4, 3, 4, 3, 4])
        np.testing.assert_array_equal(per_col, [3, 2, 3, 2, 3, 2, 3])


class TestFindCornerPatches:
    def test_square_clockwise_from_origin(self):
        centres = np.array([[100.0, 100.0], [100.0, 0.0], [0.0, 100.0], [0.0, 0.0]])
        indices = find_corner_patches(centres)
        # TL, TR, BR, BL on screen
        np.testing.assert_array_equal(indices, [3, 1, 0, 2])

    def test_grid_corners(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        indices = find_corner_patches(centres)
        np.testing.assert_array_equal(indices, [0, 6, 34, 28])

    def test_too_few_points(self):
        assert find_corner_patches(np.zeros((3, 2))) is None


class TestSortPatches:
    def test_recovers_row_major_order(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        ordered = sort_patches(shuffled(centres), regular_geometry)

        assert ordered is not None
        np.testing.assert_allclose(ordered, centres)

    def test_with_noise(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        noisy = centres + np.random.default_rng(1).uniform(-2.0, 2.0, centres.shape)

        ordered = sort_patches(shuffled(noisy, seed=2), regular_geometry)

        assert ordered is not None
        np.testing.assert_allclose(ordered, noisy)

    def test_under_perspective(self, regular_geometry, make_centres, mild_homography):
        centres = make_centres(regular_geometry, homography=mild_homography)
        ordered = sort_patches(shuffled(centres), regular_geometry)

        assert ordered is not None
        np.testing.assert_allclose(ordered, centres)

    def test_rotated_grid(self, regular_geometry, make_centres):
        centres = rotate(make_centres(regular_geometry), 30.0)
        ordered = sort_patches(shuffled(centres), regular_geometry)

        assert ordered is not None
        # A rectangle is symmetric under a half turn; either labelling is valid
        matches = np.allclose(ordered, centres) or np.allclose(ordered, centres[::-1])
        assert matches

    def test_extended_chessboard(self, extended_geometry, make_centres):
        centres = make_centres(extended_geometry)
        ordered = sort_patches(shuffled(centres), extended_geometry)

        assert ordered is not None
        assert ordered.shape == (35, 2)
        np.testing.assert_allclose(ordered, centres)

    def test_missing_patch(self, regular_geometry, make_centres):
        centres = shuffled(make_centres(regular_geometry))
        assert sort_patches(centres[:-1], regular_geometry) is None

    def test_extra_patch(self, regular_geometry, make_centres):
        centres = shuffled(make_centres(regular_geometry))
        extra = np.vstack([centres, [[20.0, 20.0]]])
        assert sort_patches(extra, regular_geometry) is None

    def test_displaced_interior_patch(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        # Move cell (2, 3) halfway towards its right neighbour
        centres[2 * 7 + 3] += [20.0, 0.0]
        assert sort_patches(shuffled(centres), regular_geometry) is None
