"""
Frame selection policies.

Every policy is built on the same primitive, the coverage score of a
session. Randomised policies take an explicit numpy Generator so runs are
reproducible.
"""

from __future__ import annotations

import logging
import math
from enum import IntEnum
from itertools import combinations
from typing import Sequence

import numpy as np

from ..types import ScoringConfig
from .session import CalibrationSession

logger = logging.getLogger(__name__)

MAX_EXHAUSTIVE_COMBINATIONS = 20000


class OptimizationMode(IntEnum):
    """Integer optimisation codes accepted on the public boundary."""

    ALL_PATTERNS = 0
    RANDOM_SET = 1
    FIRST_N = 2
    ENHANCED_MCM = 3
    BEST_OF_RANDOM = 4
    EXHAUSTIVE_SEARCH = 5
    RANDOM_SEED = 6
    SCORE_BASED = 7


def set_coverage_score(
    corner_sets: Sequence[np.ndarray],
    image_size: tuple[int, int],
    config: ScoringConfig | None = None,
) -> float:
    """
    Total incremental score of adding the sets in order to a fresh session.

    Higher means the frames cover the image more evenly.
    """
    session = CalibrationSession(image_size, config)
    total = 0.0
    for corners in corner_sets:
        total += session.score(corners)
        session.add_frame(corners)
    return total


def _greedy(
    corner_sets: Sequence[np.ndarray],
    session: CalibrationSession,
    chosen: list[int],
    count: int,
) -> list[int]:
    """Repeatedly add the candidate that scores best against the session."""
    remaining = [k for k in range(len(corner_sets)) if k not in chosen]
    while len(chosen) < count and remaining:
        snapshot = session.snapshot()
        scores = [snapshot.score(corner_sets[k]) for k in remaining]
        best = remaining[int(np.argmax(scores))]
        chosen.append(best)
        remaining.remove(best)
        session.add_frame(corner_sets[best])
    return chosen


def select_frames(
    corner_sets: Sequence[np.ndarray],
    image_size: tuple[int, int],
    count: int,
    mode: int | OptimizationMode = OptimizationMode.SCORE_BASED,
    rng: np.random.Generator | None = None,
    config: ScoringConfig | None = None,
    trials: int = 20,
) -> list[int]:
    """
    Choose which accepted frames to hand to the calibration routine.

    Args:
        corner_sets: Corner sets of accepted frames
        image_size: (width, height)
        count: Number of frames wanted (ignored by ALL_PATTERNS)
        mode: Selection policy
        rng: Random generator for the randomised policies
        config: Scoring settings
        trials: Number of random sets tried by BEST_OF_RANDOM

    Returns:
        Indices into corner_sets, in selection order

    Raises:
        ValueError: On an unsupported mode or an impossible count
    """
    mode = OptimizationMode(mode)
    n = len(corner_sets)

    if mode is OptimizationMode.ALL_PATTERNS:
        return list(range(n))
    if mode is OptimizationMode.ENHANCED_MCM:
        raise ValueError("ENHANCED_MCM needs the external calibration optimiser")
    if count < 1 or count > n:
        raise ValueError(f"Cannot select {count} frames from {n}")

    rng = rng if rng is not None else np.random.default_rng(0)

    if mode is OptimizationMode.FIRST_N:
        return list(range(count))

    if mode is OptimizationMode.RANDOM_SET:
        return sorted(rng.choice(n, size=count, replace=False).tolist())

    if mode is OptimizationMode.BEST_OF_RANDOM:
        best, best_score = None, -np.inf
        for _ in range(trials):
            candidate = sorted(rng.choice(n, size=count, replace=False).tolist())
            score = set_coverage_score([corner_sets[k] for k in candidate], image_size, config)
            if score > best_score:
                best, best_score = candidate, score
        return best

    if mode is OptimizationMode.EXHAUSTIVE_SEARCH:
        total = math.comb(n, count)
        if total > MAX_EXHAUSTIVE_COMBINATIONS:
            raise ValueError(
                f"Exhaustive search over {total} combinations exceeds "
                f"{MAX_EXHAUSTIVE_COMBINATIONS}; use another mode"
            )
        best, best_score = None, -np.inf
        for candidate in combinations(range(n), count):
            score = set_coverage_score([corner_sets[k] for k in candidate], image_size, config)
            if score > best_score:
                best, best_score = list(candidate), score
        return best

    session = CalibrationSession(image_size, config)

    if mode is OptimizationMode.RANDOM_SEED:
        seed = int(rng.integers(n))
        session.add_frame(corner_sets[seed])
        return _greedy(corner_sets, session, [seed], count)

    return _greedy(corner_sets, session, [], count)


def random_culling(
    input_list: Sequence[str],
    max_search: int,
    rng: np.random.Generator,
    patterns: Sequence | None = None,
) -> tuple[list[str], list | None]:
    """
    Randomly cut a list of inputs (and matching patterns) down to max_search.

    Order of the survivors is preserved.
    """
    if patterns is not None and len(patterns) != len(input_list):
        raise ValueError("patterns must match input_list in length")

    if len(input_list) <= max_search:
        keep = list(range(len(input_list)))
    else:
        keep = sorted(rng.choice(len(input_list), size=max_search, replace=False).tolist())
        logger.debug("Culled %d inputs to %d", len(input_list), max_search)

    names = [input_list[k] for k in keep]
    kept_patterns = [patterns[k] for k in keep] if patterns is not None else None
    return names, kept_patterns
