"""
Patch filter chain.

Each filter is a pure list[Patch] -> list[Patch] stage returning a new
list. refine_patches composes them and either yields exactly the expected
marker count or None.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from functools import partial
from typing import Callable, Sequence

import cv2
import numpy as np
from scipy.spatial import cKDTree

from ..types import FilterConfig, Patch, PatternGeometry

logger = logging.getLogger(__name__)

PatchFilter = Callable[[list[Patch]], list[Patch]]


# ============================================================================
# Shape Measures
# ============================================================================


def elongation(patch: Patch) -> float:
    """Ratio of the principal axes of the patch's second moments."""
    mu20, mu11, mu02 = patch.moments["mu20"], patch.moments["mu11"], patch.moments["mu02"]
    common = np.sqrt(((mu20 - mu02) / 2.0) ** 2 + mu11**2)
    mean = (mu20 + mu02) / 2.0
    major, minor = mean + common, mean - common
    if minor <= 1e-12:
        return np.inf
    return float(np.sqrt(major / minor))


def fill_ratio(patch: Patch) -> float:
    """Hull area over the area of its minimum bounding rectangle."""
    (_, _), (w, h), _ = cv2.minAreaRect(patch.hull.reshape(-1, 1, 2))
    if w * h <= 0:
        return 0.0
    return float(patch.area / (w * h))


def marker_score(patch: Patch) -> float:
    """Lower is more marker-like: square, compact, filled."""
    return abs(elongation(patch) - 1.0) + abs(1.0 - fill_ratio(patch))


def surround_contrast(patch: Patch, grey: np.ndarray, margin: int | None = None) -> float:
    """
    Mean intensity of a thin ring just outside the hull minus the patch mean.

    Positive for patches darker than their surroundings. The ring is
    margin pixels wide (a tenth of the patch side, at least 2, if None).
    """
    if margin is None:
        margin = max(2, int(round(0.1 * np.sqrt(max(patch.area, 1.0)))))

    x, y, w, h = cv2.boundingRect(patch.hull)
    x0, y0 = max(x - margin, 0), max(y - margin, 0)
    x1, y1 = min(x + w + margin, grey.shape[1]), min(y + h + margin, grey.shape[0])
    if x1 <= x0 or y1 <= y0:
        return 0.0

    inner = np.zeros((y1 - y0, x1 - x0), dtype=np.uint8)
    cv2.fillConvexPoly(inner, patch.hull - np.array([x0, y0], dtype=np.int32), 1)
    kernel = np.ones((2 * margin + 1, 2 * margin + 1), dtype=np.uint8)
    ring = cv2.dilate(inner, kernel).astype(bool) & ~inner.astype(bool)

    values = grey[y0:y1, x0:x1][ring]
    if values.size == 0:
        return 0.0
    return float(values.mean()) - patch.mean_intensity


# ============================================================================
# Filters
# ============================================================================


def shape_filter(patches: list[Patch], config: FilterConfig = FilterConfig()) -> list[Patch]:
    """Drop patches that cannot be a marker: too few vertices, too thin, too sparse."""
    kept = []
    for patch in patches:
        if len(patch.hull) < 4 or patch.area <= 0:
            continue
        if elongation(patch) > config.max_elongation:
            continue
        if fill_ratio(patch) < config.min_fill:
            continue
        kept.append(patch)
    return kept


def polarity_filter(
    patches: list[Patch],
    grey: np.ndarray,
    config: FilterConfig = FilterConfig(),
) -> list[Patch]:
    """
    Keep only patches darker than their surroundings.

    MSER reports bright regions as well as dark ones, e.g. the light
    squares of a chessboard enclosed by dark markers.
    """
    return [p for p in patches if surround_contrast(p, grey) >= config.min_contrast]


def variance_filter(patches: list[Patch], config: FilterConfig = FilterConfig()) -> list[Patch]:
    """Drop patches whose internal intensity spread looks like texture."""
    if not patches:
        return []
    stds = np.sqrt([p.var_intensity for p in patches])
    limit = config.variance_floor + config.variance_factor * float(np.median(stds))
    return [p for p, s in zip(patches, stds) if s <= limit]


def enclosure_filter(patches: list[Patch]) -> list[Patch]:
    """
    Resolve nested patches.

    A patch holding the centroids of several others is a region around a
    group of markers and is dropped. A patch holding exactly one other
    describes the same marker at a different threshold; the more
    marker-like of the pair is kept.
    """
    order = sorted(range(len(patches)), key=lambda k: -patches[k].area)
    scores = {k: marker_score(patches[k]) for k in order}
    removed = set()

    for a_pos, a in enumerate(order):
        if a in removed:
            continue
        outer = patches[a].hull.reshape(-1, 1, 2).astype(np.float32)
        enclosed = [
            b
            for b in order[a_pos + 1 :]
            if b not in removed
            and cv2.pointPolygonTest(outer, patches[b].centroid2f, False) >= 0
        ]
        if len(enclosed) > 1:
            removed.add(a)
        elif enclosed:
            # Ties go to the larger patch, which comes first
            b = enclosed[0]
            removed.add(a if scores[b] < scores[a] else b)

    return [patches[k] for k in range(len(patches)) if k not in removed]


def cluster_filter(patches: list[Patch], config: FilterConfig = FilterConfig()) -> list[Patch]:
    """Drop isolated patches and patches far off the typical marker size."""
    if len(patches) < 3:
        return list(patches)

    centres = np.array([p.centroid2f for p in patches])
    areas = np.array([p.area for p in patches])

    nn_dist, _ = cKDTree(centres).query(centres, k=2)
    nn_dist = nn_dist[:, 1]
    max_nn = config.cluster_factor * float(np.median(nn_dist))

    median_area = float(np.median(areas))
    lo, hi = median_area / config.area_ratio, median_area * config.area_ratio

    keep = (nn_dist <= max_nn) & (areas >= lo) & (areas <= hi)
    return [p for p, k in zip(patches, keep) if k]


def reduce_cluster(
    patches: list[Patch],
    total_patches: int,
    config: FilterConfig = FilterConfig(),
) -> list[Patch]:
    """
    Remove the most deviant patch until total_patches remain.

    Deviation combines distance from the cluster centroid (relative to the
    median distance) with log-area deviation from the median area.
    """
    patches = list(patches)
    while len(patches) > total_patches:
        centres = np.array([p.centroid2f for p in patches])
        areas = np.array([p.area for p in patches])

        dist = np.linalg.norm(centres - centres.mean(axis=0), axis=1)
        spread = max(float(np.median(dist)), 1e-9)
        area_dev = np.abs(np.log(areas / float(np.median(areas))))

        score = np.maximum(dist / spread - 1.0, 0.0) + config.area_weight * area_dev
        worst = int(np.argmax(score))
        logger.debug("reduce_cluster dropping patch at %s", patches[worst].centroid)
        patches = patches[:worst] + patches[worst + 1 :]
    return patches


def correct_patch_centres(patches: list[Patch], grey: np.ndarray) -> list[Patch]:
    """
    Re-estimate centroids as darkness-weighted means inside each hull.

    Sharper than the polygon centroid when hull vertices are noisy.
    """
    corrected = []
    for patch in patches:
        x, y, w, h = cv2.boundingRect(patch.hull)
        roi = grey[y : y + h, x : x + w].astype(np.float64)
        mask = np.zeros(roi.shape, dtype=np.uint8)
        cv2.fillConvexPoly(mask, patch.hull - np.array([x, y], dtype=np.int32), 1)

        weights = (255.0 - roi) * mask
        total = weights.sum()
        if total <= 0:
            corrected.append(patch)
            continue

        ys, xs = np.mgrid[0 : roi.shape[0], 0 : roi.shape[1]]
        cx = x + float((weights * xs).sum() / total)
        cy = y + float((weights * ys).sum() / total)
        corrected.append(
            replace(patch, centroid=(int(round(cx)), int(round(cy))), centroid2f=(cx, cy))
        )
    return corrected


# ============================================================================
# Chain
# ============================================================================


def build_filter_chain(config: FilterConfig, grey: np.ndarray) -> tuple[PatchFilter, ...]:
    return (
        partial(shape_filter, config=config),
        partial(polarity_filter, grey=grey, config=config),
        partial(variance_filter, config=config),
        enclosure_filter,
        partial(cluster_filter, config=config),
    )


def refine_patches(
    polygons: Sequence[np.ndarray],
    grey: np.ndarray,
    geometry: PatternGeometry,
    config: FilterConfig = FilterConfig(),
) -> list[Patch] | None:
    """
    Reduce raw polygons to exactly the expected number of marker patches.

    Args:
        polygons: Raw boundary polygons from the extractor
        grey: Detection image (markers dark)
        geometry: Expected target layout
        config: Filter thresholds

    Returns:
        geometry.patch_count patches, or None if too few survive
    """
    target = geometry.patch_count
    patches = [Patch.from_hull(p, grey) for p in polygons]

    for stage in build_filter_chain(config, grey):
        patches = stage(patches)
        if len(patches) < target:
            logger.debug(
                "%s left %d patches, need %d",
                getattr(stage, "func", stage).__name__,
                len(patches),
                target,
            )
            return None

    patches = reduce_cluster(patches, target, config)

    if config.correct_centres:
        patches = correct_patch_centres(patches, grey)

    return patches
