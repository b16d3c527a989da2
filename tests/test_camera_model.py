import math

import numpy as np
import pytest

from parcel_vision.vision_nodes.camera_model import (
    CameraIntrinsics,
    back_project,
    depth_grid_intrinsics,
    focal_from_fov,
    fov_from_known_target,
    intrinsics_from_fov,
    project,
    resolve_intrinsics,
)
from parcel_vision.vision_nodes.measurement_types import CalibrationParams


def test_focal_from_fov():
    assert focal_from_fov(100, 90.0) == pytest.approx(50.0)
    assert focal_from_fov(100, 60.0) == pytest.approx(100.0 / (2.0 * math.tan(math.radians(30.0))))


@pytest.mark.parametrize("fov", [0.0, 180.0, -10.0])
def test_focal_from_fov_rejects_bad_fov(fov):
    with pytest.raises(ValueError):
        focal_from_fov(100, fov)


def test_intrinsics_from_fov_centres_principal_point():
    intr = intrinsics_from_fov(640, 480, 60.0, 45.0)
    assert intr.cx == 320.0
    assert intr.cy == 240.0
    assert intr.fx == pytest.approx(640 / (2 * math.tan(math.radians(30.0))))
    assert intr.fy == pytest.approx(480 / (2 * math.tan(math.radians(22.5))))


def test_resolve_intrinsics_prefers_explicit_values():
    cal = CalibrationParams(fx=500.0, fy=510.0, cx=310.0, cy=250.0)
    intr = resolve_intrinsics((640, 480), cal)
    assert (intr.fx, intr.fy, intr.cx, intr.cy) == (500.0, 510.0, 310.0, 250.0)


def test_resolve_intrinsics_partial_explicit_falls_back_to_fov():
    cal = CalibrationParams(fx=500.0)
    intr = resolve_intrinsics((640, 480), cal)
    assert intr.fx == pytest.approx(focal_from_fov(640, 60.0))


def test_non_positive_focal_rejected():
    with pytest.raises(ValueError):
        CameraIntrinsics(fx=0.0, fy=1.0, cx=0.0, cy=0.0, width=1, height=1)


def test_depth_grid_intrinsics_same_size_is_half_pixel_shift():
    rgb = intrinsics_from_fov(100, 100, 60.0, 45.0)
    grid = depth_grid_intrinsics(rgb, (100, 100))
    assert grid.fx == pytest.approx(rgb.fx)
    assert grid.cx == pytest.approx(rgb.cx - 0.5)


def test_depth_grid_intrinsics_matches_cell_centre_mapping():
    rgb = intrinsics_from_fov(640, 480, 60.0, 45.0)
    grid = depth_grid_intrinsics(rgb, (100, 100), align_dx_px=12.0, align_dy_px=-8.0)
    kx, ky = 6.4, 4.8
    z = 900.0
    for ix, iy in [(0, 0), (37, 81), (99, 99)]:
        u = (ix + 0.5) * kx + 12.0
        v = (iy + 0.5) * ky - 8.0
        expected = back_project(u, v, z, rgb)
        got = back_project(ix, iy, z, grid)
        assert np.allclose(got, expected)


def test_back_project_principal_point_is_on_axis():
    intr = intrinsics_from_fov(100, 100, 60.0, 45.0)
    p = back_project(intr.cx, intr.cy, 1000.0, intr)
    assert np.allclose(p, [0.0, 0.0, 1000.0])


def test_project_inverts_back_project():
    intr = CameraIntrinsics(fx=80.0, fy=90.0, cx=49.5, cy=49.5, width=100, height=100)
    xs, ys = np.meshgrid(np.arange(0, 100, 7), np.arange(0, 100, 11))
    z = np.full(xs.shape, 850.0)
    pts = back_project(xs, ys, z, intr)
    assert pts.shape == xs.shape + (3,)
    uv = project(pts, intr)
    assert np.allclose(uv[..., 0], xs)
    assert np.allclose(uv[..., 1], ys)


def test_fov_from_known_target_recovers_fov():
    image_px = 640
    f = focal_from_fov(image_px, 65.0)
    known_mm, z_mm = 210.0, 800.0
    px_len = known_mm * f / z_mm
    assert fov_from_known_target(px_len, known_mm, z_mm, image_px) == pytest.approx(65.0)


@pytest.mark.parametrize(
    "px_len,known_mm,z_mm,image_px",
    [(1.0, 100.0, 500.0, 640), (50.0, 0.0, 500.0, 640), (50.0, 100.0, -1.0, 640), (50.0, 100.0, 500.0, 0)],
)
def test_fov_from_known_target_invalid_inputs(px_len, known_mm, z_mm, image_px):
    assert math.isnan(fov_from_known_target(px_len, known_mm, z_mm, image_px))
