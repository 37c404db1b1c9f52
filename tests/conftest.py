"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def regular_geometry():
    """7 x 5 target with a marker in every cell (48 corners)."""
    from patchcal.types import PatternGeometry
    return PatternGeometry(rows=5, cols=7)


@pytest.fixture
def extended_geometry():
    """7 x 5 chessboard, dark squares findable (18 markers, 48 corners)."""
    from patchcal.types import PatternGeometry
    from patchcal.topology import TopologyCode
    return PatternGeometry(rows=5, cols=7, topology=TopologyCode.EXTENDED)


@pytest.fixture
def mask_geometry():
    """5 x 4 mask plate, four corners per hole (80 corners)."""
    from patchcal.types import PatternGeometry
    from patchcal.topology import TopologyCode
    return PatternGeometry(rows=4, cols=5, topology=TopologyCode.MASK_INNERS, marker_ratio=0.5)


def _to_pixels(points, pitch, origin, homography):
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2) * pitch + np.asarray(origin)
    if homography is not None:
        pts = cv2.perspectiveTransform(pts.reshape(-1, 1, 2), homography).reshape(-1, 2)
    return pts


@pytest.fixture
def make_centres():
    """
    Factory for ideal marker centres in pixels.

    Returns (rows*cols, 2) row-major centres, NaN where a cell has no marker.
    """
    def make(geometry, pitch=40.0, origin=(100.0, 80.0), homography=None):
        i, j = np.indices((geometry.rows, geometry.cols))
        cells = np.dstack([j + 0.5, i + 0.5]).reshape(-1, 2)
        centres = _to_pixels(cells, pitch, origin, homography)
        centres[~geometry.findable_mask().ravel()] = np.nan
        return centres
    return make


@pytest.fixture
def make_corners():
    """Factory for ideal lattice corners in pixels, row-by-row."""
    def make(geometry, pitch=40.0, origin=(100.0, 80.0), homography=None):
        return _to_pixels(geometry.ideal_corners(), pitch, origin, homography)
    return make


@pytest.fixture
def render_target():
    """
    Factory for a synthetic image of the target.

    Markers are dark on white, or white on black for bright-marker
    topologies. Chessboard squares fill their cell and mask holes are
    marker_ratio * pitch wide unless size is given.

    Returns (BGR image, expected lattice corners row-by-row).
    """
    def render(geometry, pitch=60, size=None, offset=(100, 90), image_size=(640, 480)):
        topology = geometry.topology_impl
        if size is None:
            if topology.corners_per_cell:
                size = int(round(geometry.marker_ratio * pitch))
            elif topology.snap_corners:
                size = pitch
            else:
                size = 36
        background, marker = (0, 255) if topology.invert_image else (255, 0)

        width, height = image_size
        image = np.full((height, width, 3), background, dtype=np.uint8)
        mask = geometry.findable_mask()
        for i in range(geometry.rows):
            for j in range(geometry.cols):
                if not mask[i, j]:
                    continue
                x = offset[0] + j * pitch
                y = offset[1] + i * pitch
                cv2.rectangle(image, (x, y), (x + size - 1, y + size - 1), (marker, marker, marker), -1)

        # Marker centroid sits (size - 1) / 2 px in from its top-left pixel
        origin = (
            offset[0] + (size - 1) / 2.0 - pitch / 2.0,
            offset[1] + (size - 1) / 2.0 - pitch / 2.0,
        )
        return image, _to_pixels(geometry.ideal_corners(), pitch, origin, None)
    return render


@pytest.fixture
def mild_homography():
    """A gentle perspective tilt about the image centre."""
    return np.array([
        [1.02, 0.05, -8.0],
        [-0.03, 0.98, 6.0],
        [0.00006, -0.00004, 1.0],
    ], dtype=np.float64)
