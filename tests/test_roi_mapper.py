import numpy as np
import pytest

from conftest import make_codes
from parcel_vision.vision_nodes.camera_model import intrinsics_from_fov
from parcel_vision.vision_nodes.depth_calibration import mm_for_sample
from parcel_vision.vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    FailureKind,
    MeasurementError,
    RegionOfInterest,
)
from parcel_vision.vision_nodes.roi_mapper import map_roi, median_depth_in_rect

TOF = intrinsics_from_fov(100, 100, 70.0, 60.0)


def test_same_resolution_maps_one_to_one(block_codes):
    rect = map_roi(RegionOfInterest(40, 40, 60, 60), (100, 100), DepthFrame(block_codes), CalibrationParams())
    assert rect.to_list() == [40, 40, 60, 60]


def test_rgb_to_grid_scaling():
    frame = DepthFrame(make_codes())
    rect = map_roi(RegionOfInterest(64, 48, 320, 240), (640, 480), frame, CalibrationParams())
    # 100 / 640 and 100 / 480
    assert rect.to_list() == [10, 10, 50, 50]


def test_alignment_offset_is_removed_before_scaling():
    frame = DepthFrame(make_codes())
    cal = CalibrationParams(align_dx_px=10.0, align_dy_px=-5.0)
    rect = map_roi(RegionOfInterest(40, 40, 60, 60), (100, 100), frame, cal)
    assert rect.to_list() == [30, 45, 50, 65]


def test_inverted_roi_is_normalized():
    frame = DepthFrame(make_codes())
    rect = map_roi(RegionOfInterest(60, 60, 40, 40), (100, 100), frame, CalibrationParams())
    assert rect.to_list() == [40, 40, 60, 60]


def test_roi_outside_grid_is_too_small():
    frame = DepthFrame(make_codes())
    with pytest.raises(MeasurementError) as exc:
        map_roi(RegionOfInterest(150, 150, 180, 180), (100, 100), frame, CalibrationParams())
    assert exc.value.kind is FailureKind.ROI_TOO_SMALL


def test_thin_roi_is_too_small():
    frame = DepthFrame(make_codes())
    with pytest.raises(MeasurementError) as exc:
        map_roi(RegionOfInterest(40, 40, 41, 80), (100, 100), frame, CalibrationParams(), min_span_px=2)
    assert exc.value.kind is FailureKind.ROI_TOO_SMALL


def test_optical_offset_shifts_by_parallax(flat_codes, table_mm):
    frame = DepthFrame(flat_codes)
    cal = CalibrationParams(optical_dx_mm=10.0)
    rect = map_roi(RegionOfInterest(40, 40, 60, 60), (100, 100), frame, cal, tof_intr=TOF)
    shift = 10.0 / table_mm * TOF.fx
    assert 0.5 < shift < 1.5
    assert rect.to_list() == [41, 40, 61, 60]


def test_optical_offset_ignored_without_tof_intrinsics(flat_codes):
    cal = CalibrationParams(optical_dx_mm=10.0)
    rect = map_roi(RegionOfInterest(40, 40, 60, 60), (100, 100), DepthFrame(flat_codes), cal)
    assert rect.to_list() == [40, 40, 60, 60]


def test_optical_offset_uses_fallback_depth_without_samples():
    frame = DepthFrame(np.zeros((100, 100), dtype=np.uint8))
    cal = CalibrationParams(optical_dy_mm=-30.0)
    rect = map_roi(
        RegionOfInterest(40, 40, 60, 60), (100, 100), frame, cal, tof_intr=TOF, fallback_depth_mm=600.0
    )
    shift = -30.0 / 600.0 * TOF.fy
    assert rect.ys == int(np.floor(40 + shift + 0.5))
    assert rect.xs == 40


def test_median_depth_in_rect(block_codes, block_mm):
    frame = DepthFrame(block_codes)
    rect = map_roi(RegionOfInterest(40, 40, 60, 60), (100, 100), frame, CalibrationParams())
    assert median_depth_in_rect(frame, rect) == pytest.approx(block_mm)
    assert block_mm == pytest.approx(mm_for_sample(60, 0, 255))
