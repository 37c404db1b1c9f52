# patchcal - Calibration pattern detection and frame selection

__version__ = "0.1.0"

# Topologies
from patchcal.topology import (
    TopologyCode,
    GridTopology,
    get_topology,
)

# Core types
from patchcal.types import (
    PatternGeometry,
    DetectorConfig,
    FilterConfig,
    GridConfig,
    RefinementConfig,
    VerifierConfig,
    ScoringConfig,
    PipelineConfig,
    Patch,
    FailureKind,
    FrameState,
    RefinementResult,
    PatternDetection,
)

# Configuration
from patchcal.config import (
    load_pipeline_config,
    save_pipeline_config,
    load_pattern_geometry,
    create_default_pipeline_config,
)

# Detection
from patchcal.detection import (
    MserBlobExtractor,
    find_pattern_centres,
    find_pattern_corners,
    locate_corners,
    process_frames,
)

# Scoring
from patchcal.scoring import (
    CalibrationSession,
    OptimizationMode,
    select_frames,
)

__all__ = [
    # Topologies
    "TopologyCode",
    "GridTopology",
    "get_topology",
    # Core types
    "PatternGeometry",
    "DetectorConfig",
    "FilterConfig",
    "GridConfig",
    "RefinementConfig",
    "VerifierConfig",
    "ScoringConfig",
    "PipelineConfig",
    "Patch",
    "FailureKind",
    "FrameState",
    "RefinementResult",
    "PatternDetection",
    # Configuration
    "load_pipeline_config",
    "save_pipeline_config",
    "load_pattern_geometry",
    "create_default_pipeline_config",
    # Detection
    "MserBlobExtractor",
    "find_pattern_centres",
    "find_pattern_corners",
    "locate_corners",
    "process_frames",
    # Scoring
    "CalibrationSession",
    "OptimizationMode",
    "select_frames",
]
