"""
Blob extraction.

The extractor itself is an external collaborator: anything with a
detect(image, config) method returning boundary polygons will do. The
default adapter wraps OpenCV's MSER.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Protocol

import cv2
import numpy as np

from ..types import DetectorConfig, PatternGeometry

logger = logging.getLogger(__name__)


class BlobExtractor(Protocol):
    def detect(self, image: np.ndarray, config: DetectorConfig) -> list[np.ndarray]:
        """Return (k, 2) int32 boundary polygons found in a greyscale image."""
        ...


class MserBlobExtractor:
    """MSER regions reduced to their convex hulls."""

    def detect(self, image: np.ndarray, config: DetectorConfig) -> list[np.ndarray]:
        min_area = config.min_area if config.min_area is not None else 60
        max_area = config.max_area if config.max_area is not None else 14400

        # Positional: keyword names differ between OpenCV releases
        mser = cv2.MSER_create(
            int(round(config.delta)),
            int(min_area),
            int(max_area),
            float(config.max_variation),
            float(config.min_diversity),
            int(config.max_evolution),
            float(config.area_threshold),
            float(config.min_margin),
            int(config.edge_blur_size),
        )
        regions, _ = mser.detectRegions(image)

        hulls = []
        for region in regions:
            hull = cv2.convexHull(region.reshape(-1, 1, 2).astype(np.int32))
            hulls.append(hull.reshape(-1, 2))
        return hulls


def to_grey(image: np.ndarray) -> np.ndarray:
    """Convert BGR, BGRA or non-uint8 greyscale input to uint8 greyscale."""
    if image.ndim == 3:
        if image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        elif image.shape[2] == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            image = image[:, :, 0]

    if image.dtype == np.uint8:
        return image

    image = image.astype(np.float64)
    lo, hi = float(image.min()), float(image.max())
    if hi <= lo:
        return np.zeros(image.shape, dtype=np.uint8)
    return np.clip((image - lo) * (255.0 / (hi - lo)), 0, 255).astype(np.uint8)


def detection_image(image: np.ndarray, geometry: PatternGeometry) -> np.ndarray:
    """Greyscale image in which the target's markers are dark."""
    grey = to_grey(image)
    if geometry.topology_impl.invert_image:
        grey = cv2.bitwise_not(grey)
    return grey


def derive_area_bounds(
    image_size: tuple[int, int],
    geometry: PatternGeometry,
    config: DetectorConfig,
) -> DetectorConfig:
    """
    Fill in MSER area limits that were left unset.

    No marker can be larger than the image area shared among all markers.
    """
    width, height = image_size
    total = width * height
    min_area = config.min_area if config.min_area is not None else max(16, int(total * 1e-4))
    max_area = (
        config.max_area
        if config.max_area is not None
        else max(min_area + 1, int(total / geometry.patch_count))
    )
    return replace(config, min_area=min_area, max_area=max_area)


def find_all_patches(
    grey: np.ndarray,
    geometry: PatternGeometry,
    config: DetectorConfig,
    extractor: BlobExtractor | None = None,
) -> list[np.ndarray]:
    """
    Find all candidate marker polygons in an image.

    Args:
        grey: Detection image from detection_image()
        geometry: Expected target layout
        config: Detector parameters
        extractor: Blob extractor (MSER if None)

    Returns:
        List of (k, 2) int32 polygons
    """
    if extractor is None:
        extractor = MserBlobExtractor()

    height, width = grey.shape[:2]
    config = derive_area_bounds((width, height), geometry, config)
    polygons = extractor.detect(grey, config)

    logger.debug("Extractor returned %d raw patches", len(polygons))
    return [np.asarray(p, dtype=np.int32).reshape(-1, 2) for p in polygons if len(p) > 0]


def check_acutance(image: np.ndarray, threshold: float) -> bool:
    """
    Check whether an image is sharp enough to be worth processing.

    Uses the variance of the Laplacian as a focus measure.
    """
    grey = to_grey(image)
    focus = float(cv2.Laplacian(grey, cv2.CV_64F).var())
    if focus < threshold:
        logger.debug("Acutance %.1f below threshold %.1f", focus, threshold)
        return False
    return True
