#!/usr/bin/env python3
"""
Parcel Measurement CLI Tool

Measures the parcel in a capture bundle (directory or .zip exported by the
phone app) and prints length / width / height with confidence.

Features:
- ROI from the command line or from the bundle's meta.json
- Calibration from the YAML config, overridden by keys in meta.json
- Optional debug artifacts (mask_depth.png + measurement.json)
- Optional IoU against a ground-truth mask image
- ROS2-style console / file logging

Exit codes:
    0 - measurement succeeded
    1 - measurement failed (tagged failure, e.g. segmentation_failed)
    2 - input error (bad bundle, config or arguments)

Usage:
    parcel-measure BUNDLE [--roi L T R B] [--config PATH] [--out DIR]
                   [--gt-mask PNG] [--json] [--log-dir DIR] [--verbose]
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from parcel_vision.configs.config import ConfigError, log_dir as env_log_dir
from parcel_vision.vision_nodes.measurement_pipeline import MeasurementEngine, MeasurementOutcome
from parcel_vision.vision_nodes.measurement_types import RegionOfInterest
from parcel_vision.vision_tools.ros2_logger import create_logger
from parcel_vision.vision_tools.session_bundle import (
    BundleError,
    load_bundle,
    load_gt_mask,
    mask_iou,
    mask_to_depth_image,
    save_measurement_artifacts,
)

EXIT_OK = 0
EXIT_MEASUREMENT_FAILED = 1
EXIT_INPUT_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="parcel-measure",
        description="Measure a parcel from an RGB + ToF capture bundle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  parcel-measure capture_20250101_120000.zip
  parcel-measure capture_dir --roi 320 180 640 420 --out debug/
  parcel-measure capture.zip --gt-mask gt.png --json

Configuration:
  Tunables are read from parcel_vision/configs/measurement_config.yaml
  or the file named by PARCEL_VISION_CONFIG.
        """
    )
    parser.add_argument("bundle", type=Path, help="Capture bundle directory or .zip")
    parser.add_argument(
        "--roi",
        type=float,
        nargs=4,
        metavar=("LEFT", "TOP", "RIGHT", "BOTTOM"),
        help="ROI in RGB pixels (overrides the bundle's roi)"
    )
    parser.add_argument("--config", type=Path, help="Measurement config YAML")
    parser.add_argument("--out", type=Path, help="Directory for mask_depth.png and measurement.json")
    parser.add_argument("--gt-mask", type=Path, help="Ground-truth mask image for IoU")
    parser.add_argument("--json", action="store_true", help="Print the outcome as JSON on stdout")
    parser.add_argument("--log-dir", type=Path, help="Directory for the log file (or PARCEL_VISION_LOG_DIR)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug output on the console")
    return parser.parse_args(argv)


def _print_summary(outcome: MeasurementOutcome, iou: Optional[float]) -> None:
    print("=" * 60)
    if outcome.success:
        dims = outcome.dims
        print(f"Length: {dims.length_mm:8.1f} mm  (+/- {dims.sigma_length_mm:.1f})")
        print(f"Width:  {dims.width_mm:8.1f} mm  (+/- {dims.sigma_width_mm:.1f})")
        if dims.height_mm is None:
            print("Height:      n/a  (not enough height evidence)")
        else:
            print(f"Height: {dims.height_mm:8.1f} mm  (+/- {dims.sigma_height_mm:.1f})")
        print(f"Confidence: {dims.confidence:.2f}")
        if outcome.orientation is not None:
            o = outcome.orientation
            print(f"Pose: {o.pose.value}{' (standing)' if o.standup else ''}, angle {o.angle_deg:.1f} deg")
    else:
        print(f"Measurement failed: {outcome.failure.value}")
        print(f"  {outcome.message}")
    for note in outcome.notes:
        print(f"Note: {note}")
    if iou is not None:
        print(f"Mask IoU vs ground truth: {iou:.3f}")
    print("=" * 60)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    console_level = None if args.json else ("DEBUG" if args.verbose else "INFO")
    log = create_logger(
        node_name="parcel_measure",
        log_dir=args.log_dir or env_log_dir(),
        log_prefix="parcel_measure",
        console_level=console_level,
    )

    try:
        try:
            engine = MeasurementEngine(config_path=args.config, logger=log)
        except ConfigError as e:
            log.error(f"Configuration error: {e}")
            return EXIT_INPUT_ERROR

        try:
            bundle = load_bundle(args.bundle, engine.calibration)
            roi = RegionOfInterest(*args.roi) if args.roi else None
            request = bundle.to_request(roi)
            gt_mask = load_gt_mask(args.gt_mask) if args.gt_mask else None
        except BundleError as e:
            log.error(f"Input error: {e}")
            return EXIT_INPUT_ERROR

        outcome = engine.measure(request)
        grid_shape = (bundle.depth.height, bundle.depth.width)

        iou = None
        if gt_mask is not None and outcome.mask is not None:
            iou = mask_iou(mask_to_depth_image(outcome.mask, grid_shape), gt_mask)
            log.info(f"Mask IoU: {iou:.3f}")

        if args.out:
            save_measurement_artifacts(
                outcome,
                args.out,
                grid_shape,
                extra_data={"bundle": str(args.bundle), "mask_iou": iou},
            )

        if args.json:
            data = outcome.to_dict()
            data["mask_iou"] = iou
            print(json.dumps(data, indent=2))
        else:
            _print_summary(outcome, iou)

        return EXIT_OK if outcome.success else EXIT_MEASUREMENT_FAILED

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130

    finally:
        log.close()


if __name__ == "__main__":
    sys.exit(main())
