"""
Per-frame pattern detection pipeline.

Detected -> Filtered -> Ordered -> CornerEstimated -> Refined -> Accepted,
with any failing stage short-circuiting to Rejected. Frames share no
mutable state, so process_frames can fan them out freely.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

import numpy as np

from ..types import (
    FailureKind,
    FrameState,
    PatternDetection,
    PatternGeometry,
    PipelineConfig,
)
from .corners import canonical_corner_order, find_patch_corners
from .extractor import BlobExtractor, check_acutance, detection_image, find_all_patches
from .filters import refine_patches
from .grid import sort_patches
from .verify import verify_corners, verify_patches

logger = logging.getLogger(__name__)


def _reject(
    stage: FrameState,
    failure: FailureKind,
    centres: np.ndarray | None = None,
    passes: int = 0,
) -> PatternDetection:
    logger.debug("Frame rejected after %s: %s", stage.value, failure.value)
    return PatternDetection(
        state=FrameState.REJECTED,
        stage=stage,
        centres=centres,
        failure=failure,
        refinement_passes=passes,
    )


def find_pattern_centres(
    image: np.ndarray,
    geometry: PatternGeometry,
    config: PipelineConfig | None = None,
    extractor: BlobExtractor | None = None,
) -> np.ndarray | None:
    """
    Find and order just the marker centres in an image.

    Returns:
        (rows*cols, 2) centres, NaN where not findable, or None
    """
    config = config or PipelineConfig()
    grey = detection_image(image, geometry)
    polygons = find_all_patches(grey, geometry, config.detector, extractor)
    patches = refine_patches(polygons, grey, geometry, config.filters)
    if patches is None:
        return None
    centres = np.array([p.centroid2f for p in patches], dtype=np.float64)
    return sort_patches(centres, geometry, config.grid)


def locate_corners(
    centres: np.ndarray,
    geometry: PatternGeometry,
    image_size: tuple[int, int],
    config: PipelineConfig | None = None,
    grey: np.ndarray | None = None,
    ordered: bool = False,
) -> PatternDetection:
    """
    Run the pipeline from marker centres onwards.

    Args:
        centres: Marker centres, unordered (patch_count, 2) or already
            ordered (rows*cols, 2) with NaN for unfindable cells
        geometry: Target layout
        image_size: (width, height)
        config: Pipeline settings
        grey: Detection image, needed only for the subpixel snap
        ordered: Skip the grid mapper

    Returns:
        PatternDetection
    """
    config = config or PipelineConfig()
    verifier = config.verifier

    if ordered:
        ordered_centres = np.asarray(centres, dtype=np.float64).reshape(-1, 2)
    else:
        centres = np.asarray(centres, dtype=np.float64).reshape(-1, 2)
        if len(centres) < geometry.patch_count:
            return _reject(FrameState.DETECTED, FailureKind.INSUFFICIENT_PATCHES)
        ordered_centres = sort_patches(centres, geometry, config.grid)
        if ordered_centres is None:
            return _reject(FrameState.FILTERED, FailureKind.AMBIGUOUS_GRID)

    if not verify_patches(
        image_size,
        geometry,
        ordered_centres,
        verifier.min_spacing,
        verifier.max_spacing,
        verifier.min_border,
    ):
        return _reject(FrameState.ORDERED, FailureKind.DEGENERATE_GEOMETRY, ordered_centres)

    result = find_patch_corners(ordered_centres, geometry, config.refinement, grey)
    if result is None:
        return _reject(FrameState.ORDERED, FailureKind.DEGENERATE_GEOMETRY, ordered_centres)
    if not result.converged:
        return _reject(
            FrameState.CORNER_ESTIMATED,
            FailureKind.REFINEMENT_DIVERGENCE,
            ordered_centres,
            result.passes,
        )

    if not verify_corners(
        image_size,
        geometry,
        result.corners,
        verifier.min_spacing,
        verifier.max_spacing,
        verifier.min_border,
    ):
        return _reject(
            FrameState.REFINED,
            FailureKind.DEGENERATE_GEOMETRY,
            ordered_centres,
            result.passes,
        )

    corners = canonical_corner_order(result.corners, geometry).astype(np.float32)
    return PatternDetection(
        state=FrameState.ACCEPTED,
        stage=FrameState.REFINED,
        corners=corners,
        centres=ordered_centres,
        refinement_passes=result.passes,
    )


def find_pattern_corners(
    image: np.ndarray,
    geometry: PatternGeometry,
    config: PipelineConfig | None = None,
    extractor: BlobExtractor | None = None,
) -> PatternDetection:
    """
    Core pattern-finding function.

    Args:
        image: Greyscale or BGR image
        geometry: Target layout
        config: Pipeline settings
        extractor: Blob extractor (MSER if None)

    Returns:
        PatternDetection; corners only when accepted
    """
    config = config or PipelineConfig()
    height, width = image.shape[:2]

    if config.acutance_threshold is not None and not check_acutance(
        image, config.acutance_threshold
    ):
        return _reject(FrameState.DETECTED, FailureKind.LOW_ACUTANCE)

    grey = detection_image(image, geometry)
    polygons = find_all_patches(grey, geometry, config.detector, extractor)

    patches = refine_patches(polygons, grey, geometry, config.filters)
    if patches is None:
        return _reject(FrameState.DETECTED, FailureKind.INSUFFICIENT_PATCHES)

    centres = np.array([p.centroid2f for p in patches], dtype=np.float64)
    return locate_corners(centres, geometry, (width, height), config, grey=grey)


def process_frames(
    images: Sequence[np.ndarray],
    geometry: PatternGeometry,
    config: PipelineConfig | None = None,
    extractor: BlobExtractor | None = None,
    max_workers: int | None = None,
) -> list[PatternDetection]:
    """
    Run find_pattern_corners over many frames in parallel.

    Results come back in input order. The extractor must be safe to share
    between threads (the MSER adapter is).
    """
    config = config or PipelineConfig()

    def run(image: np.ndarray) -> PatternDetection:
        return find_pattern_corners(image, geometry, config, extractor)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        results = list(executor.map(run, images))

    accepted = sum(r.accepted for r in results)
    logger.info("Accepted %d of %d frames", accepted, len(results))
    return results
