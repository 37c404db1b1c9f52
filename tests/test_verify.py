"""
Tests for patchcal.detection.verify.
"""

import numpy as np

from patchcal.detection.corners import group_points_in_quads
from patchcal.detection.verify import (
    default_max_spacing,
    pattern_in_frame,
    verify_corners,
    verify_patches,
    verify_pattern,
)

IMAGE_SIZE = (640, 480)


class TestPatternInFrame:
    def test_inside(self):
        pts = np.array([[10.0, 10.0], [600.0, 400.0]])
        assert pattern_in_frame(IMAGE_SIZE, pts)

    def test_too_close_to_edge(self):
        pts = np.array([[1.0, 10.0], [600.0, 400.0]])
        assert not pattern_in_frame(IMAGE_SIZE, pts, min_border=2)
        assert pattern_in_frame(IMAGE_SIZE, pts, min_border=0)

    def test_far_edge(self):
        assert not pattern_in_frame(IMAGE_SIZE, np.array([[638.0, 100.0]]))
        assert pattern_in_frame(IMAGE_SIZE, np.array([[637.0, 100.0]]))

    def test_nan_entries_skipped(self):
        pts = np.array([[np.nan, np.nan], [100.0, 100.0]])
        assert pattern_in_frame(IMAGE_SIZE, pts)

    def test_empty(self):
        assert not pattern_in_frame(IMAGE_SIZE, np.full((2, 2), np.nan))


class TestVerifyPatches:
    def test_ideal_grid(self, regular_geometry, make_centres):
        assert verify_patches(IMAGE_SIZE, regular_geometry, make_centres(regular_geometry), 4.0)

    def test_extended_grid_with_gaps(self, extended_geometry, make_centres):
        assert verify_patches(IMAGE_SIZE, extended_geometry, make_centres(extended_geometry), 4.0)

    def test_partially_out_of_frame(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry, origin=(-30.0, 80.0))
        assert not verify_patches(IMAGE_SIZE, regular_geometry, centres, 4.0)

    def test_spacing_below_minimum(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        assert not verify_patches(IMAGE_SIZE, regular_geometry, centres, min_dist=50.0)

    def test_spacing_above_maximum(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        assert not verify_patches(IMAGE_SIZE, regular_geometry, centres, 4.0, max_dist=30.0)

    def test_missing_findable_marker(self, regular_geometry, make_centres):
        centres = make_centres(regular_geometry)
        centres[10] = np.nan
        assert not verify_patches(IMAGE_SIZE, regular_geometry, centres, 4.0)

    def test_default_max_spacing(self):
        assert default_max_spacing(IMAGE_SIZE, 6, 8) == 128.0


class TestVerifyCorners:
    def test_ideal_lattice(self, regular_geometry, make_corners):
        assert verify_corners(IMAGE_SIZE, regular_geometry, make_corners(regular_geometry), 4.0)

    def test_folded_cell(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners[[2 * 8 + 3, 2 * 8 + 4]] = corners[[2 * 8 + 4, 2 * 8 + 3]]
        assert not verify_corners(IMAGE_SIZE, regular_geometry, corners, 4.0)

    def test_wrong_count(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)[:-1]
        assert not verify_corners(IMAGE_SIZE, regular_geometry, corners, 4.0)

    def test_non_finite(self, regular_geometry, make_corners):
        corners = make_corners(regular_geometry)
        corners[5] = np.nan
        assert not verify_corners(IMAGE_SIZE, regular_geometry, corners, 4.0)

    def test_mask_lattice(self, mask_geometry, make_corners):
        assert verify_corners(IMAGE_SIZE, mask_geometry, make_corners(mask_geometry), 4.0)

    def test_mask_marker_too_small(self, mask_geometry, make_corners):
        corners = make_corners(mask_geometry, pitch=6.0)
        assert not verify_corners(IMAGE_SIZE, mask_geometry, corners, 4.0)


class TestVerifyPattern:
    def test_quad_ordered_mask_set(self, mask_geometry, make_corners):
        quads = group_points_in_quads(make_corners(mask_geometry), mask_geometry)
        assert verify_pattern(IMAGE_SIZE, mask_geometry, quads, 4.0)

    def test_lattice_set(self, regular_geometry, make_corners):
        assert verify_pattern(IMAGE_SIZE, regular_geometry, make_corners(regular_geometry), 4.0)
