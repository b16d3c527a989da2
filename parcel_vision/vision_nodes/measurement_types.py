"""
Shared value objects and failure taxonomy for the parcel measurement pipeline.

Everything that flows between pipeline stages is defined here as a dataclass:
the caller-owned inputs (depth frame, ROI, calibration), the depth-grid
rectangle produced by the ROI mapper, and the typed failure raised by stages
and turned into a tagged outcome by the pipeline.

Conventions:
- Depth frames are 8-bit grids indexed ``data[y, x]``; codes 0 and 255 are
  invalid and never enter a statistic.
- Rectangles are inclusive on both ends (``xs..xe``, ``ys..ye``).
- All physical quantities are millimetres.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np


class FailureKind(str, Enum):
    """Reasons a measurement call can end without a result."""

    NO_DEPTH_GRID = "no_depth_grid"
    ROI_TOO_SMALL = "roi_too_small"
    INSUFFICIENT_ROI_SAMPLES = "insufficient_roi_samples"
    PLANE_FIT_UNAVAILABLE = "plane_fit_unavailable"
    SEGMENTATION_FAILED = "segmentation_failed"
    CANCELLED = "cancelled"


class MeasurementError(Exception):
    """Expected, input-driven failure of a pipeline stage."""

    def __init__(self, kind: FailureKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value


@dataclass(frozen=True)
class DepthFrame:
    """8-bit depth grid plus its linear calibration range (mm).

    Attributes:
        data: (height, width) uint8 array, row-major
        scale_min: Depth (mm) of code 0 of the linear mapping
        scale_max: Depth (mm) of code 255 of the linear mapping
    """

    data: np.ndarray
    scale_min: float = 0.0
    scale_max: float = 255.0

    def __post_init__(self) -> None:
        if self.data is None:
            raise ValueError("depth data must not be None")
        arr = np.asarray(self.data)
        if arr.ndim != 2:
            raise ValueError(f"depth data must be 2D (height, width), got shape {arr.shape}")
        if arr.dtype != np.uint8:
            raise ValueError(f"depth data must be uint8, got {arr.dtype}")
        # Read-only view so nothing downstream can write into the caller's buffer
        view = arr.view()
        view.flags.writeable = False
        object.__setattr__(self, "data", view)

    @classmethod
    def from_bytes(
        cls,
        buffer: Optional[bytes],
        width: int,
        height: int,
        scale_min: float = 0.0,
        scale_max: float = 255.0,
    ) -> "DepthFrame":
        """Build a frame from a raw row-major byte buffer (e.g. ``depth_u8.raw``)."""
        if buffer is None:
            raise ValueError("depth buffer must not be None")
        if width < 0 or height < 0:
            raise ValueError(f"invalid depth dimensions {width}x{height}")
        expected = width * height
        if len(buffer) != expected:
            raise ValueError(
                f"depth buffer has {len(buffer)} bytes, expected {expected} for {width}x{height}"
            )
        if expected == 0:
            arr = np.zeros((height, width), dtype=np.uint8)
        else:
            arr = np.frombuffer(bytes(buffer), dtype=np.uint8).reshape(height, width)
        return cls(data=arr, scale_min=float(scale_min), scale_max=float(scale_max))

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height) of the grid."""
        return self.width, self.height


@dataclass(frozen=True)
class RegionOfInterest:
    """Axis-aligned rectangle in RGB pixel coordinates."""

    left: float
    top: float
    right: float
    bottom: float

    @classmethod
    def from_xywh(cls, x: float, y: float, w: float, h: float) -> "RegionOfInterest":
        return cls(float(x), float(y), float(x + w), float(y + h))

    @classmethod
    def from_cxcywh(cls, cx: float, cy: float, w: float, h: float) -> "RegionOfInterest":
        """Detector boxes arrive as (center_x, center_y, width, height)."""
        return cls(cx - w / 2.0, cy - h / 2.0, cx + w / 2.0, cy + h / 2.0)

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.left, self.top, self.right, self.bottom)


@dataclass(frozen=True)
class CalibrationParams:
    """Externally persisted calibration for one RGB + ToF pair.

    Attributes:
        hfov_deg: Horizontal field of view of the RGB camera
        vfov_deg: Vertical field of view of the RGB camera
        fx, fy, cx, cy: Explicit RGB intrinsics; override the FOV model when all set
        align_dx_px, align_dy_px: Static visual offset of the depth overlay (RGB px)
        optical_dx_mm, optical_dy_mm: Physical RGB-to-ToF lens centre offset
        tof_hfov_deg, tof_vfov_deg: Field of view of the depth sensor
    """

    hfov_deg: float = 60.0
    vfov_deg: float = 45.0
    fx: Optional[float] = None
    fy: Optional[float] = None
    cx: Optional[float] = None
    cy: Optional[float] = None
    align_dx_px: float = 0.0
    align_dy_px: float = 0.0
    optical_dx_mm: Optional[float] = None
    optical_dy_mm: Optional[float] = None
    tof_hfov_deg: float = 70.0
    tof_vfov_deg: float = 60.0

    @property
    def has_explicit_intrinsics(self) -> bool:
        return None not in (self.fx, self.fy, self.cx, self.cy)

    @property
    def has_optical_offset(self) -> bool:
        return bool(self.optical_dx_mm) or bool(self.optical_dy_mm)


@dataclass(frozen=True)
class DepthRect:
    """Inclusive rectangle on the depth grid."""

    xs: int
    ys: int
    xe: int
    ye: int

    @property
    def width(self) -> int:
        return self.xe - self.xs + 1

    @property
    def height(self) -> int:
        return self.ye - self.ys + 1

    @property
    def area(self) -> int:
        return self.width * self.height

    def padded(self, pad: int, grid_width: int, grid_height: int) -> "DepthRect":
        """Grow by ``pad`` on every side, clamped to the grid."""
        return DepthRect(
            xs=max(0, self.xs - pad),
            ys=max(0, self.ys - pad),
            xe=min(grid_width - 1, self.xe + pad),
            ye=min(grid_height - 1, self.ye + pad),
        )

    def slices(self) -> Tuple[slice, slice]:
        """(row, column) slices for indexing a ``[y, x]`` array."""
        return slice(self.ys, self.ye + 1), slice(self.xs, self.xe + 1)

    def to_list(self) -> list:
        return [int(self.xs), int(self.ys), int(self.xe), int(self.ye)]


@dataclass(frozen=True)
class MeasurementRequest:
    """Everything one measurement call needs, passed by value.

    Attributes:
        depth: Depth frame (never mutated)
        roi: Region of interest in RGB pixels
        rgb_size: (width, height) of the RGB frame the ROI refers to
        calibration: Camera calibration for this pair
        request_id: Free-form identifier echoed into logs and results
    """

    depth: DepthFrame
    roi: RegionOfInterest
    rgb_size: Tuple[int, int]
    calibration: CalibrationParams = field(default_factory=CalibrationParams)
    request_id: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.depth, DepthFrame):
            raise ValueError("request.depth must be a DepthFrame")
        if not isinstance(self.roi, RegionOfInterest):
            raise ValueError("request.roi must be a RegionOfInterest")
        rgb_w, rgb_h = self.rgb_size
        if rgb_w <= 0 or rgb_h <= 0:
            raise ValueError(f"invalid RGB size {self.rgb_size}")

    def describe(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "roi": [float(v) for v in self.roi.as_tuple()],
            "rgb_size": [int(v) for v in self.rgb_size],
            "depth_size": [self.depth.width, self.depth.height],
            "scale": [float(self.depth.scale_min), float(self.depth.scale_max)],
        }
