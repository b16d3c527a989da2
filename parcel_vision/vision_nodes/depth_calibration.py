"""
Depth code to millimetre conversion for 8-bit ToF depth grids.

The sensor ships depth as one byte per pixel with a linear [scale_min,
scale_max] mapping. Codes 0 and 255 are reserved as invalid (no return /
saturated) and must be filtered out before conversion.

When the frame metadata carries the trivial range (0, 255) the sensor did not
report a calibration; the documented working range of the ToF module is used
instead of treating raw codes as millimetres.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np

# Maixsense A010 class ToF working range, used when metadata is normalized 0..255
DEFAULT_WORKING_RANGE_MM: Tuple[float, float] = (200.0, 2500.0)

INVALID_LOW = 0
INVALID_HIGH = 255


def resolve_depth_range(
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> Tuple[float, float]:
    """
    Return the millimetre range actually used for conversion.

    Args:
        scale_min: Calibration minimum from frame metadata
        scale_max: Calibration maximum from frame metadata
        default_range: Range substituted for the uncalibrated (0, 255) case

    Returns:
        (min_mm, max_mm)
    """
    if int(round(scale_min)) == 0 and int(round(scale_max)) == 255:
        return float(default_range[0]), float(default_range[1])
    return float(scale_min), float(scale_max)


def mm_for_sample(
    u: int,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> float:
    """Convert one valid depth code to millimetres."""
    lo, hi = resolve_depth_range(scale_min, scale_max, default_range)
    span = max(1.0, hi - lo)
    return lo + (float(u) / 255.0) * span


def samples_to_mm(
    codes: np.ndarray,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> np.ndarray:
    """Vectorised :func:`mm_for_sample`; invalid codes are converted too, mask them first."""
    lo, hi = resolve_depth_range(scale_min, scale_max, default_range)
    span = max(1.0, hi - lo)
    return lo + (np.asarray(codes, dtype=np.float64) / 255.0) * span


def valid_sample_mask(codes: np.ndarray) -> np.ndarray:
    """True where the code carries a usable depth (1..254)."""
    arr = np.asarray(codes)
    return (arr > INVALID_LOW) & (arr < INVALID_HIGH)


def saturation_fraction(codes: Union[np.ndarray, list], margin: int = 2) -> float:
    """
    Share of samples sitting at either end of the code range.

    Codes within ``margin`` of 0 or 255 (the invalid codes included) mean the
    scene is outside the sensor's comfortable range: too close, too far or
    glare. Only used as a diagnostic.
    """
    arr = np.asarray(codes)
    if arr.size == 0:
        return 0.0
    near_limit = (arr <= INVALID_LOW + margin) | (arr >= INVALID_HIGH - margin)
    return float(np.count_nonzero(near_limit)) / float(arr.size)


def median_sample_mm(
    codes: np.ndarray,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> Optional[float]:
    """
    Median depth (mm) of the valid codes, None when there are none.

    The median is taken on the sorted codes (upper median for even counts) and
    converted afterwards, so every stage sees the same reference depth.
    """
    arr = np.asarray(codes).ravel()
    valid = arr[valid_sample_mask(arr)]
    if valid.size == 0:
        return None
    u_med = np.sort(valid)[valid.size // 2]
    return mm_for_sample(int(u_med), scale_min, scale_max, default_range)
