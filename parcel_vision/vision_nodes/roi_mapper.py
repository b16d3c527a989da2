"""
Map an RGB-space region of interest onto the depth grid.

The depth sensor has its own, lower resolution grid that is only roughly
aligned with the RGB frame. Mapping happens in two passes:

1. Remove the static visual alignment offset, scale RGB pixels to depth
   cells per axis and clamp (first-pass rectangle).
2. If a physical lens-centre offset between the RGB camera and the ToF
   sensor is known, sample the median depth inside the first-pass rectangle
   and shift the rectangle by ``offset_mm / z_med * f_tof`` depth cells
   (parallax at that depth), then re-map.

The second pass needs the first because the parallax shift depends on an
approximate object depth that is unknown before the first sample.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Tuple

from parcel_vision.vision_nodes.camera_model import CameraIntrinsics
from parcel_vision.vision_nodes.depth_calibration import (
    DEFAULT_WORKING_RANGE_MM,
    median_sample_mm,
)
from parcel_vision.vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    DepthRect,
    FailureKind,
    MeasurementError,
    RegionOfInterest,
)

logger = logging.getLogger(__name__)


def _round_half_up(v: float) -> int:
    return int(math.floor(v + 0.5))


def _clamp(v: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, v))


def _scaled_rect(
    adj: Tuple[float, float, float, float],
    sx: float,
    sy: float,
    shift_x: float,
    shift_y: float,
    depth_w: int,
    depth_h: int,
) -> DepthRect:
    left, top, right, bottom = adj
    x0 = _clamp(_round_half_up(left * sx + shift_x), 0, depth_w - 1)
    y0 = _clamp(_round_half_up(top * sy + shift_y), 0, depth_h - 1)
    x1 = _clamp(_round_half_up(right * sx + shift_x), 0, depth_w - 1)
    y1 = _clamp(_round_half_up(bottom * sy + shift_y), 0, depth_h - 1)
    return DepthRect(xs=min(x0, x1), ys=min(y0, y1), xe=max(x0, x1), ye=max(y0, y1))


def median_depth_in_rect(
    depth: DepthFrame,
    rect: DepthRect,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> Optional[float]:
    """Median valid depth (mm) inside ``rect``, None when it holds no valid sample."""
    rows, cols = rect.slices()
    return median_sample_mm(depth.data[rows, cols], depth.scale_min, depth.scale_max, default_range)


def map_roi(
    roi: RegionOfInterest,
    rgb_size: Tuple[int, int],
    depth: DepthFrame,
    calibration: CalibrationParams,
    tof_intr: Optional[CameraIntrinsics] = None,
    min_span_px: int = 2,
    fallback_depth_mm: float = 600.0,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> DepthRect:
    """
    Map an RGB ROI to an inclusive depth-grid rectangle.

    Args:
        roi: ROI in RGB pixels
        rgb_size: (width, height) of the RGB frame
        depth: Depth frame (read only)
        calibration: Alignment offset (px) and optional optical offset (mm)
        tof_intr: Depth sensor intrinsics in depth-grid pixels, needed for the
            optical-offset pass
        min_span_px: Minimum (xe - xs) and (ye - ys) after clamping
        fallback_depth_mm: Depth assumed for the parallax pass when the first
            pass finds no valid sample
        default_range: Working range for uncalibrated frames

    Returns:
        DepthRect on the depth grid

    Raises:
        MeasurementError(ROI_TOO_SMALL): the mapped rectangle collapses
    """
    rgb_w, rgb_h = rgb_size
    depth_w, depth_h = depth.size
    sx = depth_w / float(rgb_w)
    sy = depth_h / float(rgb_h)

    # Compensate the static visual alignment, keep inside the RGB frame
    adj = (
        min(max(roi.left - calibration.align_dx_px, 0.0), float(rgb_w)),
        min(max(roi.top - calibration.align_dy_px, 0.0), float(rgb_h)),
        min(max(roi.right - calibration.align_dx_px, 0.0), float(rgb_w)),
        min(max(roi.bottom - calibration.align_dy_px, 0.0), float(rgb_h)),
    )

    rect = _scaled_rect(adj, sx, sy, 0.0, 0.0, depth_w, depth_h)

    if calibration.has_optical_offset and tof_intr is not None:
        z_med = median_depth_in_rect(depth, rect, default_range)
        if z_med is None or z_med <= 0.0:
            logger.debug(f"No valid depth in first-pass ROI, assuming {fallback_depth_mm:.0f} mm for parallax")
            z_med = fallback_depth_mm
        shift_x = (float(calibration.optical_dx_mm or 0.0) / z_med) * tof_intr.fx
        shift_y = (float(calibration.optical_dy_mm or 0.0) / z_med) * tof_intr.fy
        rect = _scaled_rect(adj, sx, sy, shift_x, shift_y, depth_w, depth_h)
        logger.debug(
            f"Optical offset pass: z_med={z_med:.1f} mm shift=({shift_x:.2f}, {shift_y:.2f}) px"
        )

    if (rect.xe - rect.xs) < min_span_px or (rect.ye - rect.ys) < min_span_px:
        raise MeasurementError(
            FailureKind.ROI_TOO_SMALL,
            f"ROI maps to {rect.xe - rect.xs + 1}x{rect.ye - rect.ys + 1} depth cells "
            f"(min span {min_span_px})",
        )

    logger.debug(f"ROI {roi.as_tuple()} -> depth rect {rect.to_list()}")
    return rect
