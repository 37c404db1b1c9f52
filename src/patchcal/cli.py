#!/usr/bin/env python3
"""
patchcal CLI - calibration pattern detection and frame selection.

Usage:
    patchcal detect IMAGE... --rows R --cols C   - Detect patterns, print per-frame status
    patchcal select IMAGE... --count N           - Detect, then pick the best-covering frames
    patchcal --help                              - Show this help
"""

import logging
import sys
from pathlib import Path

import cv2
import numpy as np


def _pattern_parser():
    import argparse

    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("images", nargs="+", type=Path, help="Image files")
    parser.add_argument("-r", "--rows", type=int, default=None,
                        help="Cell rows of the target")
    parser.add_argument("-c", "--cols", type=int, default=None,
                        help="Cell columns of the target")
    parser.add_argument("-t", "--topology", type=int, default=None,
                        help="Topology code: 0 regular, 5 extended, 8 mask, 10 inverted")
    parser.add_argument("--config", type=Path, default=None,
                        help="TOML pipeline configuration")
    parser.add_argument("-j", "--workers", type=int, default=None,
                        help="Worker threads (default: executor default)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    return parser


def _load_inputs(args):
    """Resolve geometry and config from flags and the optional config file."""
    from patchcal.config import (
        create_default_pipeline_config,
        load_pattern_geometry,
        load_pipeline_config,
    )
    from patchcal.types import PatternGeometry

    config = create_default_pipeline_config()
    geometry = None
    if args.config is not None:
        config = load_pipeline_config(args.config)
        geometry = load_pattern_geometry(args.config)

    rows = args.rows if args.rows is not None else (geometry.rows if geometry else None)
    cols = args.cols if args.cols is not None else (geometry.cols if geometry else None)
    if rows is None or cols is None:
        raise ValueError("--rows and --cols are required unless the config has a [pattern] table")

    topology = args.topology
    if topology is None:
        topology = geometry.topology if geometry else 0
    marker_ratio = geometry.marker_ratio if geometry else 0.5

    return PatternGeometry(rows, cols, topology, marker_ratio), config


def _read_images(paths):
    images = []
    for path in paths:
        image = cv2.imread(str(path))
        if image is None:
            raise ValueError(f"Could not read image: {path}")
        images.append(image)
    return images


def _detect(paths, args):
    from patchcal.detection import process_frames

    geometry, config = _load_inputs(args)
    images = _read_images(paths)
    results = process_frames(images, geometry, config, max_workers=args.workers)
    return images, results, config


def detect_main(argv):
    """Entry point for `patchcal detect`."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="patchcal detect",
        description="Detect the calibration pattern in each image",
        parents=[_pattern_parser()],
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        _, results, _ = _detect(args.images, args)
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    for path, result in zip(args.images, results):
        if result.accepted:
            print(f"{path}: accepted, {len(result.corners)} corners, "
                  f"{result.refinement_passes} passes")
        else:
            print(f"{path}: rejected after {result.stage.value} ({result.failure.value})")

    return 0 if any(r.accepted for r in results) else 2


def select_main(argv):
    """Entry point for `patchcal select`."""
    import argparse

    from patchcal.scoring import OptimizationMode, select_frames

    parser = argparse.ArgumentParser(
        prog="patchcal select",
        description="Detect the pattern, then choose frames that cover the image best",
        parents=[_pattern_parser()],
    )
    parser.add_argument("-n", "--count", type=int, required=True,
                        help="Number of frames to select")
    parser.add_argument("-m", "--mode", type=int, default=int(OptimizationMode.SCORE_BASED),
                        help="Optimisation mode code (default: 7, score based)")
    parser.add_argument("-s", "--seed", type=int, default=0,
                        help="Random seed (default: 0)")
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    try:
        images, results, config = _detect(args.images, args)
        accepted = [k for k, r in enumerate(results) if r.accepted]
        if not accepted:
            print("ERROR: no frame contained the pattern")
            return 2

        height, width = images[accepted[0]].shape[:2]
        chosen = select_frames(
            [results[k].corners for k in accepted],
            (width, height),
            min(args.count, len(accepted)),
            args.mode,
            rng=np.random.default_rng(args.seed),
            config=config.scoring,
        )
    except ValueError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"Selected {len(chosen)} of {len(accepted)} accepted frames:")
    for k in chosen:
        print(f"  {args.images[accepted[k]]}")
    return 0


def _setup_logging(verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(__doc__)
        print("Commands:")
        print("  detect    Detect the pattern in each image")
        print("  select    Detect, then select frames for calibration")
        print()
        return 0

    command = sys.argv[1]
    argv = sys.argv[2:]

    if command == "detect":
        return detect_main(argv)

    elif command == "select":
        return select_main(argv)

    else:
        print(f"Unknown command: {command}")
        print("Run 'patchcal --help' for usage")
        return 1


if __name__ == "__main__":
    sys.exit(main())
