"""
Background plane estimation (table / floor) from a ring of depth cells
surrounding the ROI.

The ring is the border of the ROI padded by a few cells, with the ROI itself
excluded, so it samples the support surface right next to the parcel. A
RANSAC loop fits ``n . P + d = 0`` to the ring points:

- sample 3 distinct points, normal = cross product of two edge vectors
- reject degenerate (collinear) samples
- score = number of ring points within ``inlier_thresh_mm`` of the candidate
- keep the candidate with the highest score (first one wins ties)

A short or featureless ring degrades to a flat plane at the ring's median
depth instead of failing. Planes are always oriented so the camera origin lies
on the positive side: positive signed distance means "above the support,
toward the camera".

The generator is created per call from a fixed seed, so identical inputs give
bit-identical planes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from parcel_vision.vision_nodes.camera_model import CameraIntrinsics, back_project
from parcel_vision.vision_nodes.depth_calibration import (
    DEFAULT_WORKING_RANGE_MM,
    samples_to_mm,
    valid_sample_mask,
)
from parcel_vision.vision_nodes.measurement_types import (
    DepthRect,
    FailureKind,
    MeasurementError,
)

logger = logging.getLogger(__name__)

DEGENERATE_NORMAL_EPS = 1e-6


@dataclass(frozen=True)
class Plane:
    """Oriented plane ``n . P + d = 0`` with its RANSAC support statistics.

    Attributes:
        normal: Unit normal (nx, ny, nz), pointing toward the camera side
        d: Offset; equals the signed distance of the camera origin (>= 0)
        inlier_count: Ring points within the inlier threshold
        trial_count: Non-degenerate RANSAC hypotheses evaluated (0 for fallback)
        inlier_ratio: inlier_count / point_count
        point_count: Ring points the plane was scored against
    """

    normal: Tuple[float, float, float]
    d: float
    inlier_count: int
    trial_count: int
    inlier_ratio: float
    point_count: int

    @property
    def normal_array(self) -> np.ndarray:
        return np.asarray(self.normal, dtype=np.float64)

    def signed_distance(self, points: np.ndarray) -> np.ndarray:
        return signed_distance(points, self)

    def to_dict(self) -> dict:
        return {
            "normal": [float(v) for v in self.normal],
            "d": float(self.d),
            "inlier_count": int(self.inlier_count),
            "trial_count": int(self.trial_count),
            "inlier_ratio": float(self.inlier_ratio),
            "point_count": int(self.point_count),
        }


class PlaneFitStatus(str, Enum):
    OK = "ok"
    FALLBACK_FLAT = "fallback_flat"
    NO_RING = "no_ring"


@dataclass(frozen=True)
class PlaneFit:
    """Outcome of a plane fit; ``plane`` is None only for ``NO_RING``."""

    status: PlaneFitStatus
    plane: Optional[Plane] = None
    reason: str = ""

    @property
    def usable(self) -> bool:
        return self.plane is not None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "plane": self.plane.to_dict() if self.plane is not None else None,
            "reason": self.reason,
        }


def signed_distance(points: np.ndarray, plane: Plane) -> np.ndarray:
    """n . P + d for (..., 3) points."""
    pts = np.asarray(points, dtype=np.float64)
    return pts @ plane.normal_array + plane.d


def ring_indices(rect: DepthRect, pad: int, grid_width: int, grid_height: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Cells of the padded rectangle that lie outside ``rect``.

    Returns:
        (ys, xs) integer arrays in depth-grid coordinates, row-major order
    """
    outer = rect.padded(pad, grid_width, grid_height)
    yy, xx = np.mgrid[outer.ys:outer.ye + 1, outer.xs:outer.xe + 1]
    outside = (xx < rect.xs) | (xx > rect.xe) | (yy < rect.ys) | (yy > rect.ye)
    return yy[outside], xx[outside]


def collect_ring_points(
    codes: np.ndarray,
    rect: DepthRect,
    pad: int,
    depth_intr: CameraIntrinsics,
    scale_min: float,
    scale_max: float,
    default_range: Tuple[float, float] = DEFAULT_WORKING_RANGE_MM,
) -> np.ndarray:
    """Back-project the valid ring cells around ``rect`` to (N, 3) camera points."""
    grid_h, grid_w = codes.shape
    ys, xs = ring_indices(rect, pad, grid_w, grid_h)
    ring_codes = codes[ys, xs]
    valid = valid_sample_mask(ring_codes)
    z_mm = samples_to_mm(ring_codes[valid], scale_min, scale_max, default_range)
    return back_project(xs[valid], ys[valid], z_mm, depth_intr).reshape(-1, 3)


def _oriented(normal: np.ndarray, d: float) -> Tuple[np.ndarray, float]:
    # Camera origin must be on the positive side
    if d < 0.0:
        return -normal, -d
    return normal, d


def _count_inliers(points: np.ndarray, normal: np.ndarray, d: float, thresh_mm: float) -> int:
    return int(np.count_nonzero(np.abs(points @ normal + d) <= thresh_mm))


def flat_plane(points: np.ndarray, inlier_thresh_mm: float) -> Plane:
    """Plane z = median(z of points), facing the camera."""
    z_sorted = np.sort(points[:, 2])
    z_med = float(z_sorted[z_sorted.size // 2])
    normal, d = _oriented(np.array([0.0, 0.0, 1.0]), -z_med)
    inliers = _count_inliers(points, normal, d, inlier_thresh_mm)
    return Plane(
        normal=(float(normal[0]), float(normal[1]), float(normal[2])),
        d=float(d),
        inlier_count=inliers,
        trial_count=0,
        inlier_ratio=inliers / float(points.shape[0]),
        point_count=int(points.shape[0]),
    )


def fit_plane(
    points: np.ndarray,
    iters: int = 150,
    inlier_thresh_mm: float = 6.0,
    min_points: int = 50,
    seed: int = 1234,
    cancel_event: Optional[threading.Event] = None,
    checkpoint_every: int = 16,
) -> PlaneFit:
    """
    Robustly fit the support plane to ring points.

    Args:
        points: (N, 3) ring points in millimetres
        iters: RANSAC hypotheses to draw
        inlier_thresh_mm: Absolute distance for a point to count as inlier
        min_points: Below this many points RANSAC is skipped for the flat fallback
        seed: Seed of the per-call generator
        cancel_event: Optional flag polled every ``checkpoint_every`` iterations
        checkpoint_every: Cancellation polling interval

    Returns:
        PlaneFit with status OK, FALLBACK_FLAT or NO_RING

    Raises:
        MeasurementError(CANCELLED): cancel_event was set during the loop
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    n_pts = pts.shape[0]

    if n_pts == 0:
        return PlaneFit(PlaneFitStatus.NO_RING, None, "ring has no valid depth")

    if n_pts < max(3, min_points):
        logger.debug(f"Ring has {n_pts} points (< {min_points}), using flat plane")
        return PlaneFit(
            PlaneFitStatus.FALLBACK_FLAT,
            flat_plane(pts, inlier_thresh_mm),
            f"ring too small for RANSAC ({n_pts} < {min_points})",
        )

    rng = np.random.default_rng(seed)
    best_normal: Optional[np.ndarray] = None
    best_d = 0.0
    best_inliers = -1
    trials = 0

    for it in range(iters):
        if cancel_event is not None and it % checkpoint_every == 0 and cancel_event.is_set():
            raise MeasurementError(FailureKind.CANCELLED, "cancelled during plane fit")

        i1, i2, i3 = rng.choice(n_pts, size=3, replace=False)
        p1, p2, p3 = pts[i1], pts[i2], pts[i3]
        normal = np.cross(p2 - p1, p3 - p1)
        norm = float(np.linalg.norm(normal))
        if norm < DEGENERATE_NORMAL_EPS:
            continue
        normal = normal / norm
        d = -float(normal @ p1)
        trials += 1

        inliers = _count_inliers(pts, normal, d, inlier_thresh_mm)
        if inliers > best_inliers:
            best_inliers = inliers
            best_normal = normal
            best_d = d

    if best_normal is None:
        logger.debug(f"RANSAC found no non-degenerate sample in {iters} iterations, using flat plane")
        return PlaneFit(
            PlaneFitStatus.FALLBACK_FLAT,
            flat_plane(pts, inlier_thresh_mm),
            "no non-degenerate RANSAC sample",
        )

    normal, d = _oriented(best_normal, best_d)
    plane = Plane(
        normal=(float(normal[0]), float(normal[1]), float(normal[2])),
        d=float(d),
        inlier_count=best_inliers,
        trial_count=trials,
        inlier_ratio=best_inliers / float(n_pts),
        point_count=n_pts,
    )
    logger.debug(
        f"Plane n={np.round(normal, 4).tolist()} d={d:.1f} "
        f"inliers={best_inliers}/{n_pts} trials={trials}"
    )
    return PlaneFit(PlaneFitStatus.OK, plane)
