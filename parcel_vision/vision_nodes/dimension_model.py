"""
Metric dimensions, uncertainties and confidence from an oriented box.

Scale is first-order pinhole at the parcel's median depth:

    mm_per_px_x = z / fx        mm_per_px_y = z / fy
    length = w_px * mm_per_px_x width = h_px * mm_per_px_y

Height is only reported when the robust gap above the plane clears a minimum
evidence threshold; below it the gap is indistinguishable from plane noise.

Confidence policy (defaults, configurable under ``dimensions.confidence``):

    0.45 * valid_frac + 0.35 * min(1, gap / 25 mm) + 0.20 * min(1, area / 8000 px)

clamped to [0, 1]. Every term is non-decreasing in its input, so the score is
monotonic in each of them. Degraded conditions (plane fallback, saturated
depth) multiply the score by a factor <= 1.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

import numpy as np

from parcel_vision.vision_nodes.depth_calibration import DEFAULT_WORKING_RANGE_MM, median_sample_mm
from parcel_vision.vision_nodes.orientation import OrientedBox
from parcel_vision.vision_nodes.segmentation import MaskResult


@dataclass(frozen=True)
class ConfidencePolicy:
    """Weights and normalizers of the confidence blend."""

    valid_weight: float = 0.45
    gap_weight: float = 0.35
    area_weight: float = 0.20
    gap_norm_mm: float = 25.0
    area_norm_px: float = 8000.0
    plane_fallback_factor: float = 0.85
    saturation_factor: float = 0.8

    def __post_init__(self) -> None:
        for name in ("valid_weight", "gap_weight", "area_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.gap_norm_mm <= 0 or self.area_norm_px <= 0:
            raise ValueError("confidence normalizers must be positive")
        for name in ("plane_fallback_factor", "saturation_factor"):
            if not (0.0 <= getattr(self, name) <= 1.0):
                raise ValueError(f"{name} must be in [0, 1]")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ConfidencePolicy":
        data = data or {}
        defaults = cls()
        return cls(**{f.name: float(data.get(f.name, getattr(defaults, f.name))) for f in fields(cls)})

    def score(self, valid_frac: float, gap_mm: float, mask_area_px: float) -> float:
        gap_term = min(1.0, max(0.0, gap_mm) / self.gap_norm_mm)
        area_term = min(1.0, max(0.0, mask_area_px) / self.area_norm_px)
        raw = (
            self.valid_weight * valid_frac
            + self.gap_weight * gap_term
            + self.area_weight * area_term
        )
        return min(1.0, max(0.0, raw))

    def degrade(self, confidence: float, plane_fallback: bool = False, saturated: bool = False) -> float:
        if plane_fallback:
            confidence *= self.plane_fallback_factor
        if saturated:
            confidence *= self.saturation_factor
        return min(1.0, max(0.0, confidence))


@dataclass(frozen=True)
class DimResult:
    """Final measurement in millimetres with one-sigma uncertainties."""

    length_mm: float
    width_mm: float
    height_mm: Optional[float]
    sigma_length_mm: float
    sigma_width_mm: float
    sigma_height_mm: Optional[float]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "length_mm": float(self.length_mm),
            "width_mm": float(self.width_mm),
            "height_mm": None if self.height_mm is None else float(self.height_mm),
            "sigma_length_mm": float(self.sigma_length_mm),
            "sigma_width_mm": float(self.sigma_width_mm),
            "sigma_height_mm": None if self.sigma_height_mm is None else float(self.sigma_height_mm),
            "confidence": float(self.confidence),
        }


def _sigma(value_mm: float, mm_per_px: float, sigma_px: float, rel_sigma: float) -> float:
    return math.sqrt((sigma_px * mm_per_px) ** 2 + (rel_sigma * value_mm) ** 2)


def to_physical(
    box: OrientedBox,
    z_median_mm: float,
    fx: float,
    fy: float,
    valid_frac: float,
    gap_mm: float,
    mask_area_px: float,
    policy: Optional[ConfidencePolicy] = None,
    min_height_gap_mm: float = 10.0,
    sigma_px: float = 0.7,
    rel_sigma: float = 0.01,
    height_sigma_floor_mm: float = 3.0,
    height_rel_sigma: float = 0.10,
) -> DimResult:
    """
    Convert an oriented box to a DimResult.

    Args:
        box: Box with extents in planar pixels
        z_median_mm: Median depth of the parcel
        fx, fy: Focal lengths of the grid ``box`` is expressed in
        valid_frac: Share of ROI cells with valid depth
        gap_mm: Robust height above the plane
        mask_area_px: Foreground cell count
        policy: Confidence weights; defaults when None
        min_height_gap_mm: Below this gap height is reported as None

    Returns:
        DimResult
    """
    if z_median_mm <= 0 or fx <= 0 or fy <= 0:
        raise ValueError(f"invalid scale inputs z={z_median_mm} fx={fx} fy={fy}")
    policy = policy or ConfidencePolicy()

    mm_per_px_x = z_median_mm / fx
    mm_per_px_y = z_median_mm / fy
    length = box.w_px * mm_per_px_x
    width = box.h_px * mm_per_px_y

    height: Optional[float] = None
    sigma_height: Optional[float] = None
    if gap_mm >= min_height_gap_mm:
        height = float(gap_mm)
        sigma_height = max(height_sigma_floor_mm, height_rel_sigma * height)

    return DimResult(
        length_mm=float(length),
        width_mm=float(width),
        height_mm=height,
        sigma_length_mm=_sigma(length, mm_per_px_x, sigma_px, rel_sigma),
        sigma_width_mm=_sigma(width, mm_per_px_y, sigma_px, rel_sigma),
        sigma_height_mm=sigma_height,
        confidence=policy.score(min(1.0, max(0.0, valid_frac)), gap_mm, mask_area_px),
    )


def median_depth_mm(
    mask: MaskResult,
    codes: np.ndarray,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> Optional[float]:
    """Median valid depth (mm) over the foreground cells of ``mask``."""
    ys, xs = mask.foreground_cells()
    return median_sample_mm(np.asarray(codes)[ys, xs], scale_min, scale_max, default_range)
