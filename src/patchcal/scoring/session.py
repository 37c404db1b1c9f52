"""
Calibration session: owner of the coverage accumulators.

Accepted frames are folded in one at a time under a lock. Candidate
scoring runs against an immutable snapshot, so any number of threads can
score while updates are serialised.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import numpy as np

from ..types import ScoringConfig
from .distribution import (
    add_to_bin_map,
    add_to_distribution_map,
    add_to_radial_distribution,
    create_bin_map,
    create_distribution_map,
    create_gaussian_kernel,
    create_radial_distribution,
    obtain_set_score,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DistributionSnapshot:
    """Read-only copy of a session's accumulators."""

    image_size: tuple[int, int]
    config: ScoringConfig
    distribution_map: np.ndarray
    bin_map: np.ndarray
    radial_distribution: np.ndarray
    frame_count: int

    def score(self, corners: np.ndarray) -> float:
        return obtain_set_score(
            self.distribution_map,
            self.bin_map,
            self.radial_distribution,
            corners,
            self.image_size,
            self.config,
        )


class CalibrationSession:
    """
    Coverage state for one calibration run.

    Args:
        image_size: (width, height) of the frames being scored
        config: Accumulator resolution and score weights
    """

    def __init__(self, image_size: tuple[int, int], config: ScoringConfig | None = None):
        self.image_size = (int(image_size[0]), int(image_size[1]))
        self.config = config or ScoringConfig()
        self._kernel = create_gaussian_kernel(self.config.kernel_sigma)
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Forget every frame added so far."""
        with self._lock:
            self._distribution_map = create_distribution_map(self.image_size, self.config.map_cell)
            self._bin_map = create_bin_map(self.config)
            self._radial_distribution = create_radial_distribution()
            self._frame_count = 0

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def add_frame(self, corners: np.ndarray) -> None:
        """Fold an accepted frame's corner set into the accumulators."""
        pts = np.asarray(corners, dtype=np.float64).reshape(-1, 2)
        with self._lock:
            add_to_distribution_map(self._distribution_map, pts, self._kernel, self.config.map_cell)
            add_to_radial_distribution(self._radial_distribution, pts, self.image_size)
            add_to_bin_map(self._bin_map, pts, self.image_size)
            self._frame_count += 1
            logger.debug("Session now holds %d frames", self._frame_count)

    def snapshot(self) -> DistributionSnapshot:
        """Consistent, read-only copy of the current state."""
        with self._lock:
            arrays = [
                self._distribution_map.copy(),
                self._bin_map.copy(),
                self._radial_distribution.copy(),
            ]
            count = self._frame_count
        for arr in arrays:
            arr.setflags(write=False)
        return DistributionSnapshot(self.image_size, self.config, *arrays, frame_count=count)

    def score(self, corners: np.ndarray) -> float:
        """Score a candidate frame against the current state."""
        return self.snapshot().score(corners)

    def distribution_map(self) -> np.ndarray:
        return self.snapshot().distribution_map
