"""
Tests for patchcal.scoring.selection.
"""

import numpy as np
import pytest

from patchcal.scoring import (
    OptimizationMode,
    random_culling,
    select_frames,
    set_coverage_score,
)

IMAGE_SIZE = (640, 480)


def corner_grid(x0, y0, step=20.0):
    ys, xs = np.mgrid[0:4, 0:5]
    return np.column_stack([x0 + step * xs.ravel(), y0 + step * ys.ravel()])


@pytest.fixture
def frames():
    """Frames 0 and 1 are identical; frame 2 covers the opposite corner."""
    top_left = corner_grid(60.0, 50.0)
    return [top_left, top_left.copy(), np.array(IMAGE_SIZE, dtype=float) - top_left]


@pytest.fixture
def many_frames():
    rng = np.random.default_rng(11)
    return [corner_grid(*rng.uniform([20, 20], [520, 380])) for _ in range(12)]


class TestSetCoverageScore:
    def test_diverse_set_beats_duplicates(self, frames):
        duplicates = set_coverage_score([frames[0], frames[1]], IMAGE_SIZE)
        diverse = set_coverage_score([frames[0], frames[2]], IMAGE_SIZE)
        assert diverse > duplicates

    def test_empty(self):
        assert set_coverage_score([], IMAGE_SIZE) == 0.0


class TestSelectFrames:
    def test_all_patterns(self, frames):
        assert select_frames(frames, IMAGE_SIZE, 1, OptimizationMode.ALL_PATTERNS) == [0, 1, 2]

    def test_first_n(self, many_frames):
        assert select_frames(many_frames, IMAGE_SIZE, 4, OptimizationMode.FIRST_N) == [0, 1, 2, 3]

    def test_integer_mode_codes(self, many_frames):
        assert select_frames(many_frames, IMAGE_SIZE, 3, 2) == [0, 1, 2]

    def test_random_set_reproducible(self, many_frames):
        a = select_frames(many_frames, IMAGE_SIZE, 5, OptimizationMode.RANDOM_SET, np.random.default_rng(4))
        b = select_frames(many_frames, IMAGE_SIZE, 5, OptimizationMode.RANDOM_SET, np.random.default_rng(4))
        assert a == b
        assert len(set(a)) == 5
        assert a == sorted(a)

    def test_score_based_avoids_duplicates(self, frames):
        chosen = select_frames(frames, IMAGE_SIZE, 2, OptimizationMode.SCORE_BASED)
        assert sorted(chosen) == [0, 2]

    def test_exhaustive_search(self, frames):
        assert select_frames(frames, IMAGE_SIZE, 2, OptimizationMode.EXHAUSTIVE_SEARCH) == [0, 2]

    def test_exhaustive_search_too_large(self, many_frames):
        frames = many_frames * 3
        with pytest.raises(ValueError, match="Exhaustive search"):
            select_frames(frames, IMAGE_SIZE, 15, OptimizationMode.EXHAUSTIVE_SEARCH)

    def test_best_of_random(self, many_frames):
        chosen = select_frames(
            many_frames, IMAGE_SIZE, 4, OptimizationMode.BEST_OF_RANDOM, np.random.default_rng(2), trials=5
        )
        again = select_frames(
            many_frames, IMAGE_SIZE, 4, OptimizationMode.BEST_OF_RANDOM, np.random.default_rng(2), trials=5
        )
        assert chosen == again
        assert len(set(chosen)) == 4

    def test_random_seed_starts_from_random_frame(self, many_frames):
        chosen = select_frames(
            many_frames, IMAGE_SIZE, 4, OptimizationMode.RANDOM_SEED, np.random.default_rng(9)
        )
        expected_first = int(np.random.default_rng(9).integers(len(many_frames)))
        assert chosen[0] == expected_first
        assert len(set(chosen)) == 4

    def test_enhanced_mcm_unsupported(self, frames):
        with pytest.raises(ValueError, match="ENHANCED_MCM"):
            select_frames(frames, IMAGE_SIZE, 2, OptimizationMode.ENHANCED_MCM)

    def test_unknown_mode(self, frames):
        with pytest.raises(ValueError):
            select_frames(frames, IMAGE_SIZE, 2, 99)

    def test_impossible_count(self, frames):
        with pytest.raises(ValueError, match="Cannot select"):
            select_frames(frames, IMAGE_SIZE, 4, OptimizationMode.SCORE_BASED)
        with pytest.raises(ValueError, match="Cannot select"):
            select_frames(frames, IMAGE_SIZE, 0, OptimizationMode.FIRST_N)


class TestRandomCulling:
    def test_short_list_untouched(self):
        names, patterns = random_culling(["a", "b"], 5, np.random.default_rng(0))
        assert names == ["a", "b"]
        assert patterns is None

    def test_culls_and_keeps_order(self):
        names = [f"img_{k:03d}.png" for k in range(50)]
        patterns = list(range(50))

        kept, kept_patterns = random_culling(names, 10, np.random.default_rng(1), patterns)

        assert len(kept) == 10
        assert kept == sorted(kept)
        assert kept_patterns == [int(n[4:7]) for n in kept]

    def test_reproducible(self):
        names = [str(k) for k in range(30)]
        a, _ = random_culling(names, 7, np.random.default_rng(5))
        b, _ = random_culling(names, 7, np.random.default_rng(5))
        assert a == b

    def test_mismatched_patterns(self):
        with pytest.raises(ValueError, match="patterns"):
            random_culling(["a", "b"], 1, np.random.default_rng(0), patterns=[1])
