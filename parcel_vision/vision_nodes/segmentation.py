"""
Foreground segmentation of the parcel above the fitted support plane.

Steps:
1. 3x3 median over the ROI of a private copy of the depth codes (invalid
   samples ignored, a cell is only replaced with >= 3 valid neighbours)
2. Candidate mask: cells of the ROI padded by ``roi_pad`` whose signed
   distance above the plane is >= ``height_thresh_mm``
3. 4-connected components (OpenCV); the component overlapping the unpadded ROI
   the most wins, not the largest one, so a neighbouring object partly inside
   the padding is not picked over the parcel
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from parcel_vision.vision_nodes.camera_model import CameraIntrinsics, back_project
from parcel_vision.vision_nodes.depth_calibration import (
    DEFAULT_WORKING_RANGE_MM,
    samples_to_mm,
    valid_sample_mask,
)
from parcel_vision.vision_nodes.measurement_types import DepthRect
from parcel_vision.vision_nodes.plane_estimator import Plane, signed_distance

logger = logging.getLogger(__name__)

# Sorts after every valid code so valid samples come first
_INVALID_SENTINEL = 1000


@dataclass(frozen=True)
class MaskResult:
    """Foreground mask on a sub-rectangle of the depth grid.

    Attributes:
        xs, ys, xe, ye: Inclusive bounds of the (padded) sub-rectangle
        width, height: Size of the sub-rectangle
        mask: (height, width) bool array, True = parcel
        valid_frac: Fraction of raw ROI cells with usable depth
        plane: Plane the heights were measured against
        height_thresh_mm: Foreground threshold used
        roi_rect: Unpadded ROI on the depth grid
    """

    xs: int
    ys: int
    xe: int
    ye: int
    width: int
    height: int
    mask: np.ndarray
    valid_frac: float
    plane: Plane
    height_thresh_mm: float
    roi_rect: DepthRect

    def __post_init__(self) -> None:
        arr = np.asarray(self.mask, dtype=bool)
        if arr.shape != (self.height, self.width):
            raise ValueError(f"mask shape {arr.shape} != ({self.height}, {self.width})")
        arr = arr.view()
        arr.flags.writeable = False
        object.__setattr__(self, "mask", arr)

    @property
    def area_px(self) -> int:
        return int(np.count_nonzero(self.mask))

    @property
    def is_empty(self) -> bool:
        return self.area_px == 0

    @property
    def sub_rect(self) -> DepthRect:
        return DepthRect(xs=self.xs, ys=self.ys, xe=self.xe, ye=self.ye)

    def foreground_cells(self) -> Tuple[np.ndarray, np.ndarray]:
        """(ys, xs) of foreground cells in depth-grid coordinates."""
        ys, xs = np.nonzero(self.mask)
        return ys + self.ys, xs + self.xs

    def to_dict(self) -> dict:
        return {
            "rect": [int(self.xs), int(self.ys), int(self.xe), int(self.ye)],
            "roi_rect": self.roi_rect.to_list(),
            "area_px": self.area_px,
            "valid_frac": float(self.valid_frac),
            "height_thresh_mm": float(self.height_thresh_mm),
        }


def median3x3_in_rect(codes: np.ndarray, rect: DepthRect, min_valid: int = 3) -> np.ndarray:
    """
    3x3 median restricted to ``rect``, returned as a new array.

    Neighbourhoods are read from the unfiltered input, clipped at the grid
    border, and only valid codes (1..254) take part. Cells with fewer than
    ``min_valid`` valid neighbours (the cell itself included) keep their value.
    The median of an even count is the upper one.

    Args:
        codes: (H, W) uint8 depth codes; not modified
        rect: Inclusive rectangle to filter
        min_valid: Minimum valid samples for a replacement

    Returns:
        Filtered copy of ``codes``
    """
    src = np.asarray(codes, dtype=np.uint8)
    out = src.copy()
    rows, cols = rect.slices()

    # Zero padding == out-of-grid neighbours count as invalid
    padded = np.pad(src, 1, mode="constant", constant_values=0).astype(np.int16)
    h, w = rect.height, rect.width
    stack = np.stack(
        [
            padded[rect.ys + dy:rect.ys + dy + h, rect.xs + dx:rect.xs + dx + w]
            for dy in range(3)
            for dx in range(3)
        ],
        axis=0,
    )
    valid = valid_sample_mask(stack)
    n_valid = valid.sum(axis=0)
    ranked = np.sort(np.where(valid, stack, _INVALID_SENTINEL), axis=0)
    pick = np.minimum(n_valid // 2, 8)
    med = np.take_along_axis(ranked, pick[np.newaxis, ...], axis=0)[0]

    window = out[rows, cols]
    replace = n_valid >= min_valid
    window[replace] = med[replace].astype(np.uint8)
    return out


def roi_valid_fraction(codes: np.ndarray, rect: DepthRect) -> float:
    """validCount / totalCount over the raw ROI cells, 0 for an empty rect."""
    rows, cols = rect.slices()
    window = np.asarray(codes)[rows, cols]
    if window.size == 0:
        return 0.0
    return float(np.count_nonzero(valid_sample_mask(window))) / float(window.size)


def heights_above_plane(
    codes: np.ndarray,
    rect: DepthRect,
    plane: Plane,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> np.ndarray:
    """Signed height (mm) of every cell of ``rect`` above the plane, NaN where invalid."""
    rows, cols = rect.slices()
    window = np.asarray(codes)[rows, cols]
    yy, xx = np.mgrid[rect.ys:rect.ye + 1, rect.xs:rect.xe + 1]
    z_mm = samples_to_mm(window, scale_min, scale_max, default_range)
    heights = signed_distance(back_project(xx, yy, z_mm, depth_intr), plane)
    return np.where(valid_sample_mask(window), heights, np.nan)


def candidate_mask(
    codes: np.ndarray,
    sub_rect: DepthRect,
    plane: Plane,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    height_thresh_mm: float = 20.0,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> np.ndarray:
    """Valid cells of ``sub_rect`` at least ``height_thresh_mm`` above the plane."""
    heights = heights_above_plane(codes, sub_rect, plane, depth_intr, scale_min, scale_max, default_range)
    return np.nan_to_num(heights, nan=-np.inf) >= height_thresh_mm


def best_component(cand: np.ndarray, roi_in_sub: DepthRect) -> np.ndarray:
    """
    Keep the 4-connected component with the largest overlap with the ROI.

    Args:
        cand: (H, W) bool candidate mask
        roi_in_sub: ROI expressed in ``cand`` coordinates

    Returns:
        (H, W) bool mask of the winning component, all False when no component
        touches the ROI. Ties go to the first component in raster order.
    """
    cand_u8 = np.asarray(cand, dtype=np.uint8)
    if not cand_u8.any():
        return np.zeros(cand_u8.shape, dtype=bool)

    n_labels, labels, stats, _ = cv2.connectedComponentsWithStats(cand_u8, connectivity=4)
    rows, cols = roi_in_sub.slices()
    overlap = np.bincount(labels[rows, cols].ravel(), minlength=n_labels)
    overlap[0] = 0  # background

    best = int(np.argmax(overlap))
    if overlap[best] <= 0:
        logger.debug(f"{n_labels - 1} components, none overlaps the ROI")
        return np.zeros(cand_u8.shape, dtype=bool)

    logger.debug(
        f"{n_labels - 1} components, picked label {best} "
        f"(overlap={int(overlap[best])}, area={int(stats[best, cv2.CC_STAT_AREA])})"
    )
    return labels == best


def segment(
    codes: np.ndarray,
    rect: DepthRect,
    plane: Plane,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    valid_frac: Optional[float] = None,
    height_thresh_mm: float = 20.0,
    roi_pad: int = 4,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> MaskResult:
    """
    Segment the object standing on ``plane`` inside ``rect``.

    Args:
        codes: Working (already denoised) depth codes, (H, W) uint8
        rect: ROI on the depth grid
        plane: Support plane oriented toward the camera
        depth_intr: Depth-grid intrinsics used for back-projection
        scale_min, scale_max: Calibration range of the frame
        valid_frac: Valid fraction of the raw ROI; computed from ``codes`` if None
        height_thresh_mm: Minimum height above the plane for foreground
        roi_pad: Padding around the ROI so the true boundary can be captured

    Returns:
        MaskResult; its mask is empty when nothing qualifies
    """
    grid_h, grid_w = codes.shape
    sub = rect.padded(roi_pad, grid_w, grid_h)
    if valid_frac is None:
        valid_frac = roi_valid_fraction(codes, rect)

    cand = candidate_mask(
        codes, sub, plane, depth_intr, scale_min, scale_max, height_thresh_mm, default_range
    )
    roi_in_sub = DepthRect(
        xs=rect.xs - sub.xs,
        ys=rect.ys - sub.ys,
        xe=rect.xe - sub.xs,
        ye=rect.ye - sub.ys,
    )
    mask = best_component(cand, roi_in_sub)

    logger.debug(
        f"Segmentation: sub={sub.to_list()} candidates={int(np.count_nonzero(cand))} "
        f"foreground={int(np.count_nonzero(mask))}"
    )
    return MaskResult(
        xs=sub.xs,
        ys=sub.ys,
        xe=sub.xe,
        ye=sub.ye,
        width=sub.width,
        height=sub.height,
        mask=mask,
        valid_frac=float(valid_frac),
        plane=plane,
        height_thresh_mm=float(height_thresh_mm),
        roi_rect=rect,
    )
