"""
Frame scoring and selection for patchcal.

Accumulators are owned by a CalibrationSession; the functions in
distribution are pure and operate on the arrays it hands them.
"""

from .distribution import (
    create_gaussian_kernel,
    add_to_distribution_map,
    add_to_radial_distribution,
    add_to_bin_map,
    obtain_set_score,
    prep_for_display,
)

from .session import (
    CalibrationSession,
    DistributionSnapshot,
)

from .selection import (
    OptimizationMode,
    select_frames,
    set_coverage_score,
    random_culling,
)

__all__ = [
    # Distribution
    "create_gaussian_kernel",
    "add_to_distribution_map",
    "add_to_radial_distribution",
    "add_to_bin_map",
    "obtain_set_score",
    "prep_for_display",
    # Session
    "CalibrationSession",
    "DistributionSnapshot",
    # Selection
    "OptimizationMode",
    "select_frames",
    "set_coverage_score",
    "random_culling",
]
