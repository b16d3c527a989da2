"""
Oriented bounding box and pose label of a segmented parcel.

Foreground cells are lifted to 3D, dropped onto the support plane and
expressed in an in-plane orthonormal basis. A closed-form 2x2 PCA gives the
principal axes; the box extents are the ranges of the points along them.
Height does not come from PCA but from a high percentile of the per-cell
heights above the plane.

Extents are kept in millimetres on the plane and also expressed as "planar
pixels" at the mask's reference depth (``w_px = w_mm * fx / z_ref``), which is
what the dimension model converts back to millimetres.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from parcel_vision.vision_nodes.camera_model import CameraIntrinsics, back_project, project
from parcel_vision.vision_nodes.depth_calibration import (
    DEFAULT_WORKING_RANGE_MM,
    median_sample_mm,
    samples_to_mm,
)
from parcel_vision.vision_nodes.measurement_types import FailureKind, MeasurementError
from parcel_vision.vision_nodes.segmentation import MaskResult

logger = logging.getLogger(__name__)

AXIS_ALIGNED_EPS = 1e-9


class PoseLabel(str, Enum):
    FRONT = "front"
    SIDE = "side"


@dataclass(frozen=True)
class OrientedBox:
    """Oriented box of the parcel footprint.

    Attributes:
        center_px: Box centre projected back onto the depth grid (x, y)
        w_px: Extent along the axis closer to image x, planar pixels
        h_px: Extent along the other axis, planar pixels
        angle_deg: Angle of the w axis from image x, wrapped to (-90, 90]
        w_mm, h_mm: Same extents in millimetres on the plane
        z_ref_mm: Reference depth used for the mm <-> px conversion
    """

    center_px: Tuple[float, float]
    w_px: float
    h_px: float
    angle_deg: float
    w_mm: float
    h_mm: float
    z_ref_mm: float

    def to_dict(self) -> dict:
        return {
            "center_px": [float(self.center_px[0]), float(self.center_px[1])],
            "w_px": float(self.w_px),
            "h_px": float(self.h_px),
            "angle_deg": float(self.angle_deg),
            "w_mm": float(self.w_mm),
            "h_mm": float(self.h_mm),
            "z_ref_mm": float(self.z_ref_mm),
        }


@dataclass(frozen=True)
class OrientationResult:
    box: OrientedBox
    gap_mm: float
    pose: PoseLabel
    standup: bool
    angle_deg: float

    def to_dict(self) -> dict:
        return {
            "box": self.box.to_dict(),
            "gap_mm": float(self.gap_mm),
            "pose": self.pose.value,
            "standup": bool(self.standup),
            "angle_deg": float(self.angle_deg),
        }


def plane_basis(normal: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Orthonormal (e1, e2) spanning the plane with unit ``normal``."""
    n = np.asarray(normal, dtype=np.float64)
    helper = np.array([1.0, 0.0, 0.0]) if abs(n[0]) < 0.8 else np.array([0.0, 1.0, 0.0])
    e1 = np.cross(helper, n)
    e1 /= np.linalg.norm(e1)
    e2 = np.cross(n, e1)
    return e1, e2


def principal_axes_2d(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Closed-form PCA of 2D points.

    Args:
        points: (N, 2) array

    Returns:
        (mean (2,), eigenvalues (2,) descending, axes (2, 2) with the major
        axis in row 0 and the minor axis in row 1)
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    mean = pts.mean(axis=0)
    c = pts - mean
    sxx = float(np.mean(c[:, 0] * c[:, 0]))
    syy = float(np.mean(c[:, 1] * c[:, 1]))
    sxy = float(np.mean(c[:, 0] * c[:, 1]))

    half_trace = 0.5 * (sxx + syy)
    root = math.sqrt(max(0.0, 0.25 * (sxx - syy) ** 2 + sxy * sxy))
    l1, l2 = half_trace + root, half_trace - root

    if abs(sxy) < AXIS_ALIGNED_EPS * max(1.0, sxx + syy):
        # Already diagonal: eigenvectors are the coordinate axes
        major = np.array([1.0, 0.0]) if sxx >= syy else np.array([0.0, 1.0])
    else:
        major = np.array([l1 - syy, sxy])
        major /= np.linalg.norm(major)
    minor = np.array([-major[1], major[0]])
    return mean, np.array([l1, l2]), np.stack([major, minor])


def _wrap_half_turn(angle_deg: float) -> float:
    # Axes are undirected; keep the angle in (-90, 90]
    a = math.fmod(angle_deg, 180.0)
    if a <= -90.0:
        a += 180.0
    elif a > 90.0:
        a -= 180.0
    return a


def estimate_box(
    mask: MaskResult,
    codes: np.ndarray,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
    z_ref_mm: Optional[float] = None,
) -> Tuple[OrientedBox, np.ndarray]:
    """
    Oriented box of the mask on its plane.

    Args:
        mask: Non-empty segmentation result
        codes: Working depth codes the mask was computed from
        depth_intr: Depth-grid intrinsics
        scale_min, scale_max: Calibration range of the frame
        z_ref_mm: Reference depth; median in-mask depth when None

    Returns:
        (OrientedBox, per-cell signed heights above the plane)

    Raises:
        MeasurementError(SEGMENTATION_FAILED): the mask is empty
    """
    ys, xs = mask.foreground_cells()
    if ys.size == 0:
        raise MeasurementError(FailureKind.SEGMENTATION_FAILED, "empty mask")

    cell_codes = np.asarray(codes)[ys, xs]
    z_mm = samples_to_mm(cell_codes, scale_min, scale_max, default_range)
    pts = back_project(xs, ys, z_mm, depth_intr)

    plane = mask.plane
    n = plane.normal_array
    heights = pts @ n + plane.d
    flat = pts - heights[:, np.newaxis] * n[np.newaxis, :]

    e1, e2 = plane_basis(n)
    uv = np.stack([flat @ e1, flat @ e2], axis=-1)
    mean, _, axes = principal_axes_2d(uv)

    # Image x direction dropped onto the plane decides which axis is "w"
    x_dir = np.array([1.0, 0.0, 0.0]) - n[0] * n
    x_uv = np.array([x_dir @ e1, x_dir @ e2])
    x_norm = float(np.linalg.norm(x_uv))
    x_uv = x_uv / x_norm if x_norm > 0.0 else np.array([1.0, 0.0])

    if abs(float(axes[0] @ x_uv)) >= abs(float(axes[1] @ x_uv)):
        w_axis, h_axis = axes[0], axes[1]
    else:
        w_axis, h_axis = axes[1], axes[0]

    c = uv - mean
    a = c @ w_axis
    b = c @ h_axis
    w_mm = float(a.max() - a.min())
    h_mm = float(b.max() - b.min())

    cross_z = x_uv[0] * w_axis[1] - x_uv[1] * w_axis[0]
    angle = _wrap_half_turn(math.degrees(math.atan2(cross_z, float(x_uv @ w_axis))))

    center_uv = mean + 0.5 * (a.max() + a.min()) * w_axis + 0.5 * (b.max() + b.min()) * h_axis
    # Back into 3D: in-plane coordinates plus the plane's closest point to the origin
    center_3d = center_uv[0] * e1 + center_uv[1] * e2 - plane.d * n
    cx, cy = project(center_3d, depth_intr)

    if z_ref_mm is None:
        z_ref_mm = median_sample_mm(cell_codes, scale_min, scale_max, default_range)

    box = OrientedBox(
        center_px=(float(cx), float(cy)),
        w_px=w_mm * depth_intr.fx / z_ref_mm,
        h_px=h_mm * depth_intr.fy / z_ref_mm,
        angle_deg=angle,
        w_mm=w_mm,
        h_mm=h_mm,
        z_ref_mm=float(z_ref_mm),
    )
    logger.debug(
        f"Box: w={w_mm:.1f} mm ({box.w_px:.2f} px) h={h_mm:.1f} mm ({box.h_px:.2f} px) "
        f"angle={angle:.1f} deg z_ref={z_ref_mm:.1f} mm"
    )
    return box, heights


def robust_height(heights: np.ndarray, percentile: float = 0.90) -> float:
    """Percentile (linear interpolation) of the non-negative heights, 0 when none."""
    h = np.asarray(heights, dtype=np.float64).ravel()
    h = h[np.isfinite(h) & (h >= 0.0)]
    if h.size == 0:
        return 0.0
    return float(np.percentile(h, 100.0 * percentile))


def classify_pose(
    gap_mm: float,
    w_mm: float,
    h_mm: float,
    side_ratio: float = 0.5,
    standing_ratio: float = 1.0,
) -> Tuple[PoseLabel, bool]:
    """
    Label how the parcel rests from its height gap versus its footprint.

    SIDE when the gap reaches ``side_ratio`` of the shorter footprint edge,
    FRONT otherwise. ``standup`` when the gap reaches ``standing_ratio`` of the
    longer edge. Both are monotonic in the gap.
    """
    major = max(w_mm, h_mm)
    minor = min(w_mm, h_mm)
    pose = PoseLabel.SIDE if gap_mm >= side_ratio * minor else PoseLabel.FRONT
    standup = gap_mm >= standing_ratio * major
    return pose, standup


def estimate_orientation(
    mask: MaskResult,
    codes: np.ndarray,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    height_percentile: float = 0.90,
    side_ratio: float = 0.5,
    standing_ratio: float = 1.0,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
    z_ref_mm: Optional[float] = None,
) -> OrientationResult:
    """Box, robust height gap and pose label for a segmented parcel."""
    box, heights = estimate_box(mask, codes, depth_intr, scale_min, scale_max, default_range, z_ref_mm)
    gap = robust_height(heights, height_percentile)
    pose, standup = classify_pose(gap, box.w_mm, box.h_mm, side_ratio, standing_ratio)
    logger.debug(f"Orientation: gap={gap:.1f} mm pose={pose.value} standup={standup}")
    return OrientationResult(box=box, gap_mm=gap, pose=pose, standup=standup, angle_deg=box.angle_deg)
