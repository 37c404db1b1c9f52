"""
Configuration loading/saving.

Pure functions operating on the config dataclasses. Settings live in a TOML
file with one table per pipeline stage plus an optional [pattern] table
describing the target.
"""

from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path

import rtoml

from .types import (
    DetectorConfig,
    FilterConfig,
    GridConfig,
    PatternGeometry,
    PipelineConfig,
    RefinementConfig,
    ScoringConfig,
    VerifierConfig,
)

logger = logging.getLogger(__name__)

_SECTIONS = {
    "detector": DetectorConfig,
    "filters": FilterConfig,
    "grid": GridConfig,
    "refinement": RefinementConfig,
    "verifier": VerifierConfig,
    "scoring": ScoringConfig,
}


# ============================================================================
# Helpers
# ============================================================================


def _parse_section(name: str, cls: type, section_data: dict):
    known = {f.name for f in fields(cls)}
    for key in section_data:
        if key not in known:
            logger.warning("Ignoring unknown key '%s' in [%s]", key, name)
    return cls(**{k: v for k, v in section_data.items() if k in known})


def _section_to_dict(section) -> dict:
    # TOML has no null; None means "derive at run time" and is left out
    return {
        f.name: getattr(section, f.name)
        for f in fields(section)
        if getattr(section, f.name) is not None
    }


# ============================================================================
# TOML Pipeline Configuration
# ============================================================================


def load_pipeline_config(path: Path) -> PipelineConfig:
    """
    Load pipeline configuration from a TOML file.

    Missing tables and keys fall back to the dataclass defaults; unknown
    ones are logged and ignored.

    Args:
        path: Path to the .toml file

    Returns:
        PipelineConfig dataclass
    """
    data = rtoml.load(Path(path))

    sections = {}
    for key, value in data.items():
        if key in _SECTIONS and isinstance(value, dict):
            sections[key] = _parse_section(key, _SECTIONS[key], value)
        elif key not in ("acutance_threshold", "pattern"):
            logger.warning("Ignoring unknown key '%s' in %s", key, path)

    return PipelineConfig(
        acutance_threshold=data.get("acutance_threshold"),
        **sections,
    )


def load_pattern_geometry(path: Path) -> PatternGeometry | None:
    """
    Read the [pattern] table of a config file, if it has one.

    Returns:
        PatternGeometry, or None when the file does not describe a target
    """
    data = rtoml.load(Path(path))
    pattern = data.get("pattern")
    if not pattern:
        return None
    return _parse_section("pattern", PatternGeometry, pattern)


def save_pipeline_config(
    config: PipelineConfig,
    path: Path,
    geometry: PatternGeometry | None = None,
) -> None:
    """
    Save pipeline configuration to a TOML file.

    Args:
        config: PipelineConfig dataclass
        path: Path to save the .toml file
        geometry: Optional target description written as [pattern]
    """
    path = Path(path)
    data = {}
    if config.acutance_threshold is not None:
        data["acutance_threshold"] = config.acutance_threshold

    for name in _SECTIONS:
        data[name] = _section_to_dict(getattr(config, name))

    if geometry is not None:
        data["pattern"] = {
            "rows": geometry.rows,
            "cols": geometry.cols,
            "topology": int(geometry.topology),
            "marker_ratio": geometry.marker_ratio,
        }

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def create_default_pipeline_config() -> PipelineConfig:
    """
    Create a default pipeline configuration.

    Returns:
        PipelineConfig with sensible defaults
    """
    return PipelineConfig(
        detector=DetectorConfig(),
        filters=FilterConfig(),
        grid=GridConfig(),
        refinement=RefinementConfig(),
        verifier=VerifierConfig(),
        scoring=ScoringConfig(),
    )
