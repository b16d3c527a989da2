import numpy as np
import pytest

from parcel_vision.vision_nodes.depth_calibration import (
    DEFAULT_WORKING_RANGE_MM,
    median_sample_mm,
    mm_for_sample,
    resolve_depth_range,
    samples_to_mm,
    saturation_fraction,
    valid_sample_mask,
)


def test_trivial_range_uses_working_range():
    assert resolve_depth_range(0, 255) == DEFAULT_WORKING_RANGE_MM
    assert resolve_depth_range(0.2, 254.6) == DEFAULT_WORKING_RANGE_MM


def test_calibrated_range_is_kept():
    assert resolve_depth_range(300, 1200) == (300.0, 1200.0)


def test_custom_default_range():
    assert resolve_depth_range(0, 255, (100.0, 1000.0)) == (100.0, 1000.0)
    assert mm_for_sample(255, 0, 255, (100.0, 1000.0)) == pytest.approx(1000.0)


def test_mm_for_sample_linear():
    assert mm_for_sample(0, 300, 1200) == pytest.approx(300.0)
    assert mm_for_sample(255, 300, 1200) == pytest.approx(1200.0)
    assert mm_for_sample(100, 0, 255) == pytest.approx(200.0 + 100.0 / 255.0 * 2300.0)


def test_conversion_strictly_increasing():
    values = [mm_for_sample(u, 0, 255) for u in range(1, 255)]
    assert all(b > a for a, b in zip(values, values[1:]))

    values = [mm_for_sample(u, 500, 800) for u in range(1, 255)]
    assert all(b > a for a, b in zip(values, values[1:]))


def test_degenerate_range_keeps_unit_span():
    # span is clamped to 1 mm so the mapping never collapses
    assert mm_for_sample(255, 500, 500) == pytest.approx(501.0)


def test_samples_to_mm_matches_scalar():
    codes = np.array([[1, 50], [200, 254]], dtype=np.uint8)
    out = samples_to_mm(codes, 0, 255)
    assert out.shape == codes.shape
    for (y, x), value in np.ndenumerate(codes):
        assert out[y, x] == pytest.approx(mm_for_sample(int(value), 0, 255))


def test_valid_sample_mask_excludes_reserved_codes():
    codes = np.array([0, 1, 128, 254, 255], dtype=np.uint8)
    assert valid_sample_mask(codes).tolist() == [False, True, True, True, False]


def test_saturation_fraction():
    codes = np.array([0, 1, 2, 3, 128, 252, 253, 255], dtype=np.uint8)
    # <= 2 or >= 253
    assert saturation_fraction(codes, margin=2) == pytest.approx(5 / 8)
    assert saturation_fraction(np.array([], dtype=np.uint8)) == 0.0


def test_median_sample_mm_upper_median_of_valid_codes():
    codes = np.array([0, 10, 20, 30, 40, 255], dtype=np.uint8)
    # valid 10, 20, 30, 40 -> upper median 30
    assert median_sample_mm(codes, 0, 255) == pytest.approx(mm_for_sample(30, 0, 255))


def test_median_sample_mm_none_without_valid_codes():
    assert median_sample_mm(np.array([0, 255, 0], dtype=np.uint8), 0, 255) is None
