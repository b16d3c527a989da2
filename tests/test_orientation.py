import math

import cv2
import numpy as np
import pytest

from conftest import make_codes
from parcel_vision.vision_nodes.camera_model import (
    CameraIntrinsics,
    depth_grid_intrinsics,
    intrinsics_from_fov,
)
from parcel_vision.vision_nodes.measurement_types import DepthRect, FailureKind, MeasurementError
from parcel_vision.vision_nodes.orientation import (
    PoseLabel,
    classify_pose,
    estimate_box,
    estimate_orientation,
    plane_basis,
    principal_axes_2d,
    robust_height,
)
from parcel_vision.vision_nodes.plane_estimator import Plane
from parcel_vision.vision_nodes.segmentation import median3x3_in_rect, segment

DEPTH_INTR = depth_grid_intrinsics(intrinsics_from_fov(100, 100, 60.0, 45.0), (100, 100))


def table_plane(z_mm):
    return Plane(
        normal=(0.0, 0.0, -1.0), d=z_mm, inlier_count=0, trial_count=0, inlier_ratio=0.0, point_count=0
    )


def segmented(codes, rect, table_mm, intr=DEPTH_INTR):
    working = median3x3_in_rect(codes, rect)
    return segment(working, rect, table_plane(table_mm), intr, 0, 255), working


@pytest.mark.parametrize(
    "normal",
    [(0.0, 0.0, -1.0), (1.0, 0.0, 0.0), (0.6, 0.0, -0.8), (0.3, -0.4, -0.866)],
)
def test_plane_basis_is_orthonormal(normal):
    n = np.asarray(normal) / np.linalg.norm(normal)
    e1, e2 = plane_basis(n)
    for v in (e1, e2):
        assert np.linalg.norm(v) == pytest.approx(1.0)
        assert abs(float(v @ n)) < 1e-12
    assert abs(float(e1 @ e2)) < 1e-12


def test_principal_axes_of_elongated_cloud():
    rng = np.random.default_rng(1)
    t = rng.uniform(-50, 50, 500)
    s = rng.uniform(-5, 5, 500)
    angle = math.radians(30.0)
    d = np.array([math.cos(angle), math.sin(angle)])
    p = np.array([-d[1], d[0]])
    pts = t[:, None] * d + s[:, None] * p + np.array([10.0, -4.0])
    mean, eigvals, axes = principal_axes_2d(pts)
    assert np.allclose(mean, [10.0, -4.0], atol=2.0)
    assert eigvals[0] > eigvals[1]
    assert abs(float(axes[0] @ d)) > 0.999
    assert abs(float(axes[0] @ axes[1])) < 1e-12


def test_principal_axes_axis_aligned():
    pts = np.array([[0.0, 0.0], [0.0, 10.0], [2.0, 0.0], [2.0, 10.0]])
    _, _, axes = principal_axes_2d(pts)
    assert np.allclose(axes[0], [0.0, 1.0])


def test_principal_axes_square_stays_on_axes():
    xs, ys = np.meshgrid(np.arange(20.0), np.arange(20.0))
    pts = np.stack([xs.ravel(), ys.ravel()], axis=1)
    _, _, axes = principal_axes_2d(pts)
    # equal spread: either coordinate axis, never the diagonal
    assert np.allclose(np.sort(np.abs(axes[0])), [0.0, 1.0])


def test_robust_height_percentile():
    heights = np.concatenate([np.arange(0.0, 101.0), [-50.0, np.nan]])
    assert robust_height(heights, 0.90) == pytest.approx(90.0)
    assert robust_height(heights, 0.5) == pytest.approx(50.0)


def test_robust_height_without_evidence():
    assert robust_height(np.array([-3.0, np.nan])) == 0.0
    assert robust_height(np.array([])) == 0.0


def test_classify_pose_thresholds():
    assert classify_pose(10.0, 200.0, 100.0) == (PoseLabel.FRONT, False)
    assert classify_pose(50.0, 200.0, 100.0) == (PoseLabel.SIDE, False)
    assert classify_pose(200.0, 200.0, 100.0) == (PoseLabel.SIDE, True)


def test_classify_pose_monotonic_in_gap():
    labels = [classify_pose(g, 150.0, 80.0) for g in np.linspace(0.0, 300.0, 61)]
    side = [lbl == PoseLabel.SIDE for lbl, _ in labels]
    standup = [s for _, s in labels]
    assert side == sorted(side)
    assert standup == sorted(standup)


def test_box_of_square_block(block_codes, table_mm, block_mm):
    rect = DepthRect(40, 40, 60, 60)
    mask, working = segmented(block_codes, rect, table_mm)
    box, heights = estimate_box(mask, working, DEPTH_INTR, 0, 255)
    assert abs(box.w_px - 20.0) <= 2.0
    assert abs(box.h_px - 20.0) <= 2.0
    assert abs(box.angle_deg) < 1e-6
    assert box.z_ref_mm == pytest.approx(block_mm)
    assert box.center_px[0] == pytest.approx(49.5, abs=0.5)
    assert box.center_px[1] == pytest.approx(49.5, abs=0.5)
    assert heights.shape == (mask.area_px,)


def test_box_of_rectangular_block(table_mm, block_mm):
    codes = make_codes(block=(35, 42, 64, 57))
    rect = DepthRect(32, 38, 67, 61)
    mask, working = segmented(codes, rect, table_mm)
    result = estimate_orientation(mask, working, DEPTH_INTR, 0, 255)
    box = result.box
    assert abs(box.w_px - 30.0) <= 2.0
    assert abs(box.h_px - 16.0) <= 2.0
    assert box.w_mm == pytest.approx(29 * block_mm / DEPTH_INTR.fx)
    gap = table_mm - block_mm
    assert result.gap_mm == pytest.approx(gap, rel=0.15)
    assert result.pose is PoseLabel.SIDE


def test_rotated_block_angle(table_mm):
    intr = CameraIntrinsics(fx=100.0, fy=100.0, cx=49.5, cy=49.5, width=100, height=100)
    codes = make_codes(block=None)
    corners = cv2.boxPoints(((50.0, 50.0), (40.0, 14.0), 30.0))
    cv2.fillPoly(codes, [np.round(corners).astype(np.int32)], 60)
    rect = DepthRect(25, 25, 75, 75)
    mask, working = segmented(codes, rect, table_mm, intr)
    box, _ = estimate_box(mask, working, intr, 0, 255)
    assert abs(abs(box.angle_deg) - 30.0) < 5.0
    assert box.w_px > box.h_px


def test_empty_mask_raises(flat_codes, table_mm):
    mask, working = segmented(flat_codes, DepthRect(40, 40, 60, 60), table_mm)
    with pytest.raises(MeasurementError) as exc:
        estimate_box(mask, working, DEPTH_INTR, 0, 255)
    assert exc.value.kind is FailureKind.SEGMENTATION_FAILED


def test_orientation_to_dict(block_codes, table_mm):
    mask, working = segmented(block_codes, DepthRect(40, 40, 60, 60), table_mm)
    data = estimate_orientation(mask, working, DEPTH_INTR, 0, 255).to_dict()
    assert data["pose"] in ("front", "side")
    assert set(data["box"]) == {"center_px", "w_px", "h_px", "angle_deg", "w_mm", "h_mm", "z_ref_mm"}
