"""
Pattern detection for patchcal.

Everything here is a pure function of one frame - no shared state, so
callers may process frames concurrently.
"""

from .extractor import (
    BlobExtractor,
    MserBlobExtractor,
    check_acutance,
    detection_image,
    find_all_patches,
    to_grey,
)

from .filters import (
    shape_filter,
    polarity_filter,
    variance_filter,
    enclosure_filter,
    cluster_filter,
    reduce_cluster,
    correct_patch_centres,
    refine_patches,
)

from .grid import (
    determine_patch_distribution,
    determine_findable_patches,
    find_corner_patches,
    find_edge_patches,
    find_interior_patches,
    sort_patches,
)

from .corners import (
    interpolate_corner_locations,
    refine_corner_positions,
    find_best_corners,
    group_points_in_quads,
    sort_corners,
    find_patch_corners,
)

from .verify import (
    pattern_in_frame,
    verify_patches,
    verify_corners,
    verify_pattern,
)

from .pipeline import (
    find_pattern_centres,
    find_pattern_corners,
    locate_corners,
    process_frames,
)

__all__ = [
    # Extraction
    "BlobExtractor",
    "MserBlobExtractor",
    "check_acutance",
    "detection_image",
    "find_all_patches",
    "to_grey",
    # Filters
    "shape_filter",
    "polarity_filter",
    "variance_filter",
    "enclosure_filter",
    "cluster_filter",
    "reduce_cluster",
    "correct_patch_centres",
    "refine_patches",
    # Grid
    "determine_patch_distribution",
    "determine_findable_patches",
    "find_corner_patches",
    "find_edge_patches",
    "find_interior_patches",
    "sort_patches",
    # Corners
    "interpolate_corner_locations",
    "refine_corner_positions",
    "find_best_corners",
    "group_points_in_quads",
    "sort_corners",
    "find_patch_corners",
    # Verification
    "pattern_in_frame",
    "verify_patches",
    "verify_corners",
    "verify_pattern",
    # Pipeline
    "find_pattern_centres",
    "find_pattern_corners",
    "locate_corners",
    "process_frames",
]
