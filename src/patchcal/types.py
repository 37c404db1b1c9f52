"""
Core data structures for patchcal.

All types are frozen dataclasses. Logic lives in separate pure functions;
these are data containers plus light validation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import cv2
import numpy as np

from .topology import GridTopology, TopologyCode, get_topology


# ============================================================================
# Constants
# ============================================================================

DEFAULT_CORRECTION_FACTOR = 0.5
MIN_DISTANCE_FROM_EDGE = 2
MAX_SEARCH_DIST = 3
RADIAL_LENGTH = 1000


# ============================================================================
# Target Description
# ============================================================================


@dataclass(frozen=True)  # No slots - need properties
class PatternGeometry:
    """
    Expected grid shape of the calibration target.

    rows and cols count cells, not corners. marker_ratio is the marker side
    as a fraction of the cell pitch and only matters for the mask topology.
    """

    rows: int
    cols: int
    topology: TopologyCode = TopologyCode.REGULAR
    marker_ratio: float = 0.5

    def __post_init__(self) -> None:
        # Normalise plain ints from config files and the CLI
        object.__setattr__(self, "topology", TopologyCode(get_topology(self.topology).code))
        self.topology_impl.validate(self.rows, self.cols)
        if not 0.0 < self.marker_ratio < 1.0:
            raise ValueError(f"marker_ratio must lie in (0, 1), got {self.marker_ratio}")

    @property
    def topology_impl(self) -> GridTopology:
        return get_topology(self.topology)

    @property
    def patch_count(self) -> int:
        """Number of markers the filter chain must end up with."""
        return self.topology_impl.patch_count(self.rows, self.cols)

    @property
    def corner_count(self) -> int:
        return self.topology_impl.expected_corner_count(self.rows, self.cols)

    @property
    def lattice_shape(self) -> tuple[int, int]:
        return self.topology_impl.corner_lattice_shape(self.rows, self.cols)

    def findable_mask(self) -> np.ndarray:
        return self.topology_impl.findable_mask(self.rows, self.cols)

    def ideal_corners(self) -> np.ndarray:
        return self.topology_impl.ideal_corner_grid(self.rows, self.cols, self.marker_ratio)


# ============================================================================
# Pipeline Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    """
    Parameters handed to the blob extractor (MSER).

    min_area / max_area of None are derived from the image size and the
    expected marker count.
    """

    delta: float = 7.5
    max_variation: float = 0.25
    min_diversity: float = 0.20
    max_evolution: int = 200
    area_threshold: float = 1.01
    min_margin: float = 0.003
    edge_blur_size: int = 5
    min_area: int | None = None
    max_area: int | None = None


@dataclass(frozen=True, slots=True)
class FilterConfig:
    """Thresholds of the patch filter chain."""

    max_elongation: float = 3.0  # ratio of principal axes
    min_fill: float = 0.6  # hull area / min-area-rect area
    variance_floor: float = 10.0  # intensity std, grey levels
    variance_factor: float = 3.0  # multiples of the median std
    cluster_factor: float = 2.5  # multiples of the median NN distance
    area_ratio: float = 4.0
    min_contrast: float = 10.0  # surround minus marker mean, grey levels
    area_weight: float = 2.0  # weight of area deviation in reduce_cluster
    correct_centres: bool = False


@dataclass(frozen=True, slots=True)
class GridConfig:
    """Grid mapper search window, as a fraction of the expected step."""

    search_ratio: float = 0.4


@dataclass(frozen=True, slots=True)
class RefinementConfig:
    """Iterative homography refinement and subpixel snap."""

    correction_factor: float = DEFAULT_CORRECTION_FACTOR
    max_passes: int = 100
    tolerance: float = 0.01  # max per-pass shift in px to count as converged
    subpixel: bool = True
    search_dist: float = MAX_SEARCH_DIST
    subpixel_window: int | None = None  # half-size; None = from corner spacing

    def __post_init__(self) -> None:
        if not 0.0 < self.correction_factor <= 1.0:
            raise ValueError(
                f"correction_factor must lie in (0, 1], got {self.correction_factor}"
            )
        if self.max_passes < 1:
            raise ValueError(f"max_passes must be positive, got {self.max_passes}")


@dataclass(frozen=True, slots=True)
class VerifierConfig:
    """Spacing and border limits; max_spacing None is derived per image."""

    min_spacing: float = 4.0
    max_spacing: float | None = None
    min_border: int = MIN_DISTANCE_FROM_EDGE


@dataclass(frozen=True, slots=True)
class ScoringConfig:
    """Distribution accumulators and score weights."""

    map_cell: int = 8  # px per distribution map cell
    kernel_sigma: float = 3.0  # in map cells
    bin_rows: int = 10
    bin_cols: int = 10
    radial_sigma: float = 20.0  # in radial bins
    spatial_weight: float = 1.0
    bin_weight: float = 1.0
    radial_weight: float = 1.0


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    """Everything one detection run needs, passed explicitly."""

    detector: DetectorConfig = field(default_factory=DetectorConfig)
    filters: FilterConfig = field(default_factory=FilterConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    verifier: VerifierConfig = field(default_factory=VerifierConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    acutance_threshold: float | None = None


# ============================================================================
# Patches
# ============================================================================


@dataclass(frozen=True, slots=True)
class Patch:
    """
    A blob believed to be one target marker.

    Moments, centroid and intensity statistics are computed once from the
    boundary polygon and the greyscale image at construction.
    """

    hull: np.ndarray  # (k, 2) int32 boundary polygon
    centroid: tuple[int, int]
    centroid2f: tuple[float, float]
    moments: dict[str, float]  # m00 plus area-normalised central 2nd order
    area: float
    mean_intensity: float
    var_intensity: float

    @classmethod
    def from_hull(cls, hull: np.ndarray, image: np.ndarray) -> Patch:
        """
        Build a patch from a boundary polygon.

        Args:
            hull: (k, 2) polygon points in pixel coordinates
            image: Greyscale image the polygon was extracted from

        Returns:
            Patch with moments and intensity statistics filled in
        """
        hull = np.asarray(hull, dtype=np.int32).reshape(-1, 2)
        m = cv2.moments(hull)
        area = float(m["m00"])

        if area > 0:
            cx, cy = m["m10"] / area, m["m01"] / area
            moments = {
                "m00": area,
                "mu20": m["mu20"] / area,
                "mu11": m["mu11"] / area,
                "mu02": m["mu02"] / area,
            }
        else:
            cx, cy = hull.mean(axis=0)
            moments = {"m00": 0.0, "mu20": 0.0, "mu11": 0.0, "mu02": 0.0}

        mean, var = _hull_intensity(hull, image)

        return cls(
            hull=hull,
            centroid=(int(round(cx)), int(round(cy))),
            centroid2f=(float(cx), float(cy)),
            moments=moments,
            area=area,
            mean_intensity=mean,
            var_intensity=var,
        )


def _hull_intensity(hull: np.ndarray, image: np.ndarray) -> tuple[float, float]:
    """Mean and variance of the pixels covered by the polygon."""
    x, y, w, h = cv2.boundingRect(hull)
    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + w, image.shape[1]), min(y + h, image.shape[0])
    if x1 <= x0 or y1 <= y0:
        return 0.0, 0.0

    mask = np.zeros((y1 - y0, x1 - x0), dtype=np.uint8)
    cv2.fillConvexPoly(mask, hull - np.array([x0, y0], dtype=np.int32), 1)
    values = image[y0:y1, x0:x1][mask.astype(bool)]
    if values.size == 0:
        return 0.0, 0.0
    values = values.astype(np.float64)
    return float(values.mean()), float(values.var())


# ============================================================================
# Per-frame Results
# ============================================================================


class FailureKind(Enum):
    """Why a frame was rejected. Never fatal to a session."""

    LOW_ACUTANCE = "low_acutance"
    INSUFFICIENT_PATCHES = "insufficient_patches"
    AMBIGUOUS_GRID = "ambiguous_grid"
    DEGENERATE_GEOMETRY = "degenerate_geometry"
    REFINEMENT_DIVERGENCE = "refinement_divergence"


class FrameState(Enum):
    DETECTED = "detected"
    FILTERED = "filtered"
    ORDERED = "ordered"
    CORNER_ESTIMATED = "corner_estimated"
    REFINED = "refined"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class RefinementResult:
    """Outcome of iterative corner refinement."""

    corners: np.ndarray  # (n, 2) float64, lattice row-by-row
    passes: int
    converged: bool
    max_shift: float  # largest movement in the final pass


@dataclass(frozen=True, slots=True)
class PatternDetection:
    """
    Result of running the pipeline on one frame.

    corners is only set when the frame was accepted; stage is the last
    stage the frame completed.
    """

    state: FrameState
    stage: FrameState
    corners: np.ndarray | None = None  # (corner_count, 2) float32, canonical order
    centres: np.ndarray | None = None  # (rows*cols, 2), NaN where not findable
    failure: FailureKind | None = None
    refinement_passes: int = 0

    @property
    def accepted(self) -> bool:
        return self.state is FrameState.ACCEPTED
