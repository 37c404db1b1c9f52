"""
Tests for patchcal.detection.corners.
"""

import cv2
import numpy as np
import pytest

from patchcal.detection.corners import (
    canonical_corner_order,
    find_best_corners,
    find_patch_corners,
    group_points_in_quads,
    interpolate_corner_locations,
    refine_corner_positions,
    sort_corners,
)
from patchcal.topology import TopologyCode
from patchcal.types import PatternGeometry, RefinementConfig


class TestInterpolateCornerLocations:
    def test_regular_grid(self, regular_geometry, make_centres, make_corners):
        corners = interpolate_corner_locations(make_centres(regular_geometry), regular_geometry)

        assert corners.shape == (48, 2)
        np.testing.assert_allclose(corners, make_corners(regular_geometry), atol=1e-6)

    def test_extended_chessboard(self, extended_geometry, make_centres, make_corners):
        corners = interpolate_corner_locations(make_centres(extended_geometry), extended_geometry)

        assert corners.shape == (48, 2)
        np.testing.assert_allclose(corners, make_corners(extended_geometry), atol=1e-6)

    def test_mask_plate(self, mask_geometry, make_centres, make_corners):
        corners = interpolate_corner_locations(make_centres(mask_geometry), mask_geometry)

        assert corners.shape == (80, 2)
        np.testing.assert_allclose(corners, make_corners(mask_geometry), atol=1e-6)

    def test_perspective_border_corners(self, regular_geometry, make_centres, make_corners, mild_homography):
        centres = make_centres(regular_geometry, homography=mild_homography)
        expected = make_corners(regular_geometry, homography=mild_homography)

        corners = interpolate_corner_locations(centres, regular_geometry)

        # Border corners come from local homographies and are exact
        np.testing.assert_allclose(corners[0], expected[0], atol=1e-6)
        np.testing.assert_allclose(corners[-1], expected[-1], atol=1e-6)
        np.testing.assert_allclose(corners, expected, atol=0.5)


class TestRefineCornerPositions:
    def test_exact_lattice_converges_immediately(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        result = refine_corner_positions(corners, regular_geometry)

        assert result.converged
        assert result.passes == 1
        np.testing.assert_allclose(result.corners, corners, atol=1e-6)

    def test_refining_converged_set_again_is_stable(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners += np.random.default_rng(3).uniform(-0.3, 0.3, corners.shape)
        first = refine_corner_positions(corners, regular_geometry)
        assert first.converged

        second = refine_corner_positions(first.corners, regular_geometry)

        assert second.converged
        assert second.passes == 1
        moved = np.linalg.norm(second.corners - first.corners, axis=1)
        assert moved.max() < RefinementConfig().tolerance

    def test_pulls_displaced_corner_back(self, regular_geometry, make_corners):
        expected = make_corners(regular_geometry)
        corners = expected.copy()
        corners[2 * 8 + 3] += [2.0, -1.5]

        result = refine_corner_positions(
            corners, regular_geometry, max_passes=2000, tolerance=1e-4
        )

        assert result.converged
        np.testing.assert_allclose(result.corners, expected, atol=0.05)

    def test_budget_exhausted(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners[2 * 8 + 3] += [2.0, 0.0]

        result = refine_corner_positions(corners, regular_geometry, max_passes=1)

        assert not result.converged
        assert result.passes == 1
        assert result.max_shift == pytest.approx(1.0, abs=1e-6)

    def test_full_correction_factor(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners[2 * 8 + 3] += [2.0, 0.0]

        result = refine_corner_positions(
            corners, regular_geometry, correction_factor=1.0, max_passes=1
        )

        assert result.max_shift == pytest.approx(2.0, abs=1e-6)

    def test_border_corners_fixed(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners[0] += [1.0, 1.0]

        result = refine_corner_positions(corners, regular_geometry)

        np.testing.assert_allclose(result.corners[0], corners[0])

    def test_invalid_correction_factor(self, regular_geometry, make_corners):
        with pytest.raises(ValueError, match="correction_factor"):
            refine_corner_positions(make_corners(regular_geometry), regular_geometry, correction_factor=0.0)


class TestFindBestCorners:
    @pytest.fixture
    def chessboard(self):
        image = np.full((200, 200), 255, dtype=np.uint8)
        image[60:100, 60:100] = 0
        image[100:140, 100:140] = 0
        return cv2.GaussianBlur(image, (5, 5), 1.0)

    def test_snaps_to_image_corner(self, chessboard):
        estimate = np.array([[100.8, 98.7]])

        snapped, accepted = find_best_corners(chessboard, estimate, window=5)

        assert accepted[0]
        np.testing.assert_allclose(snapped[0], [99.5, 99.5], atol=0.3)

    def test_rejects_distant_snap(self, chessboard):
        estimate = np.array([[101.5, 98.0]])

        snapped, accepted = find_best_corners(chessboard, estimate, window=5, search_dist=0.5)

        assert not accepted[0]
        np.testing.assert_array_equal(snapped[0], estimate[0])


class TestOrdering:
    def test_group_points_in_quads(self):
        geometry = PatternGeometry(rows=2, cols=2, topology=TopologyCode.MASK_INNERS)
        lattice = np.array([[q, p] for p in range(4) for q in range(4)], dtype=float)

        quads = group_points_in_quads(lattice, geometry)

        assert quads.shape == (16, 2)
        np.testing.assert_array_equal(quads[:4], [[0, 0], [1, 0], [1, 1], [0, 1]])
        np.testing.assert_array_equal(quads[4:8], [[2, 0], [3, 0], [3, 1], [2, 1]])
        np.testing.assert_array_equal(quads[8:12], [[0, 2], [1, 2], [1, 3], [0, 3]])

    def test_canonical_order_lattice_unchanged(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        np.testing.assert_array_equal(canonical_corner_order(corners, regular_geometry), corners)

    def test_sort_corners(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        shuffled = np.random.default_rng(3).permutation(corners)

        ordered = sort_corners(shuffled, regular_geometry)

        np.testing.assert_allclose(ordered, corners)

    def test_sort_corners_rejects_quad_sets(self, mask_geometry, make_corners):
        with pytest.raises(ValueError, match="quad"):
            sort_corners(make_corners(mask_geometry), mask_geometry)


class TestFindPatchCorners:
    def test_regular(self, regular_geometry, make_centres, make_corners):
        result = find_patch_corners(make_centres(regular_geometry), regular_geometry)

        assert result.converged
        np.testing.assert_allclose(result.corners, make_corners(regular_geometry), atol=1e-6)

    def test_under_perspective(self, extended_geometry, make_centres, make_corners, mild_homography):
        centres = make_centres(extended_geometry, homography=mild_homography)
        expected = make_corners(extended_geometry, homography=mild_homography)

        result = find_patch_corners(centres, extended_geometry, RefinementConfig(max_passes=500))

        assert result.converged
        np.testing.assert_allclose(result.corners, expected, atol=0.5)

    def test_no_estimate_without_markers(self, regular_geometry):
        centres = np.full((35, 2), np.nan)
        assert find_patch_corners(centres, regular_geometry) is None
