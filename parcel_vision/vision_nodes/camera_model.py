"""
Pinhole camera model shared by every measurement stage.

Intrinsics come either from an explicit calibration (fx, fy, cx, cy) or from
the horizontal/vertical field of view of the RGB camera. Depth pixels are
back-projected through the RGB model: a depth cell centre is mapped into RGB
pixel space (grid scale plus the static alignment offset) and lifted with the
RGB focal lengths. ``depth_grid_intrinsics`` folds that mapping into a single
pinhole expressed in depth-grid pixels so it is computed once per call.

Back-projection:
    X = (x - cx) / fx * Z
    Y = (y - cy) / fy * Z
    Z = calibrated depth (mm)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from parcel_vision.vision_nodes.measurement_types import CalibrationParams

ArrayLike = Union[float, np.ndarray]


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics in pixel units of the grid they describe."""

    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    def __post_init__(self) -> None:
        if not (self.fx > 0 and self.fy > 0):
            raise ValueError(f"focal lengths must be positive, got fx={self.fx} fy={self.fy}")

    def to_matrix(self) -> np.ndarray:
        """3x3 camera matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def to_dict(self) -> dict:
        return {
            "fx": float(self.fx),
            "fy": float(self.fy),
            "cx": float(self.cx),
            "cy": float(self.cy),
            "width": int(self.width),
            "height": int(self.height),
        }


def focal_from_fov(size_px: float, fov_deg: float) -> float:
    """f = size / (2 tan(fov/2))."""
    if not (0.0 < fov_deg < 180.0):
        raise ValueError(f"field of view must be in (0, 180) degrees, got {fov_deg}")
    return size_px / (2.0 * math.tan(math.radians(fov_deg) / 2.0))


def intrinsics_from_fov(width: int, height: int, hfov_deg: float, vfov_deg: float) -> CameraIntrinsics:
    """Intrinsics of an ideal pinhole with the principal point at the image centre."""
    return CameraIntrinsics(
        fx=focal_from_fov(width, hfov_deg),
        fy=focal_from_fov(height, vfov_deg),
        cx=width / 2.0,
        cy=height / 2.0,
        width=int(width),
        height=int(height),
    )


def resolve_intrinsics(rgb_size: Tuple[int, int], calibration: CalibrationParams) -> CameraIntrinsics:
    """Explicit calibrated intrinsics when all four are present, FOV model otherwise."""
    rgb_w, rgb_h = rgb_size
    if calibration.has_explicit_intrinsics:
        return CameraIntrinsics(
            fx=float(calibration.fx),
            fy=float(calibration.fy),
            cx=float(calibration.cx),
            cy=float(calibration.cy),
            width=int(rgb_w),
            height=int(rgb_h),
        )
    return intrinsics_from_fov(rgb_w, rgb_h, calibration.hfov_deg, calibration.vfov_deg)


def depth_grid_intrinsics(
    rgb_intr: CameraIntrinsics,
    depth_size: Tuple[int, int],
    align_dx_px: float = 0.0,
    align_dy_px: float = 0.0,
) -> CameraIntrinsics:
    """
    Re-express the RGB pinhole in depth-grid pixels.

    Depth cell (ix, iy) sits at RGB pixel ((ix + 0.5) * kx + align_dx,
    (iy + 0.5) * ky + align_dy) with k = rgb_size / depth_size. Substituting
    into the RGB back-projection gives fx_d = fx / kx and
    cx_d = (cx - align_dx) / kx - 0.5 (same for y).
    """
    depth_w, depth_h = depth_size
    if depth_w <= 0 or depth_h <= 0:
        raise ValueError(f"invalid depth size {depth_size}")
    kx = rgb_intr.width / float(depth_w)
    ky = rgb_intr.height / float(depth_h)
    return CameraIntrinsics(
        fx=rgb_intr.fx / kx,
        fy=rgb_intr.fy / ky,
        cx=(rgb_intr.cx - align_dx_px) / kx - 0.5,
        cy=(rgb_intr.cy - align_dy_px) / ky - 0.5,
        width=int(depth_w),
        height=int(depth_h),
    )


def back_project(x: ArrayLike, y: ArrayLike, z_mm: ArrayLike, intr: CameraIntrinsics) -> np.ndarray:
    """
    Lift pixels with depth to camera-space points.

    Args:
        x, y: Pixel coordinates (scalars or arrays of equal shape)
        z_mm: Depth along the optical axis in millimetres
        intr: Intrinsics of the grid the pixels belong to

    Returns:
        (..., 3) array of [X, Y, Z] in millimetres
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    z = np.asarray(z_mm, dtype=np.float64)
    X = (x - intr.cx) / intr.fx * z
    Y = (y - intr.cy) / intr.fy * z
    return np.stack(np.broadcast_arrays(X, Y, z), axis=-1)


def project(points: np.ndarray, intr: CameraIntrinsics) -> np.ndarray:
    """Inverse of :func:`back_project`: (..., 3) camera points to (..., 2) pixels."""
    pts = np.asarray(points, dtype=np.float64)
    z = pts[..., 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        u = pts[..., 0] / z * intr.fx + intr.cx
        v = pts[..., 1] / z * intr.fy + intr.cy
    return np.stack([u, v], axis=-1)


def fov_from_known_target(px_len: float, known_mm: float, z_mm: float, image_px: int) -> float:
    """
    Field of view (deg) implied by a target of known size seen at a known depth.

    A target of ``known_mm`` spanning ``px_len`` pixels at distance ``z_mm`` gives
    tan(fov/2) = image_px * (known_mm / px_len) / (2 z). Returns NaN when the
    inputs cannot define a field of view.
    """
    if px_len <= 1.0 or known_mm <= 0.0 or z_mm <= 0.0 or image_px <= 0:
        return float("nan")
    t = (image_px * (known_mm / px_len)) / (2.0 * z_mm)
    return math.degrees(2.0 * math.atan(t))
