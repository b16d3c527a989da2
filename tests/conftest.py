"""Synthetic depth scenes shared by the test suite.

Scenes are 8-bit depth grids with the trivial (0, 255) scale, so codes are
converted with the default 200..2500 mm working range:

    code 100 -> ~1101.96 mm (table)
    code 60  -> ~741.18 mm  (top of a parcel standing ~360 mm tall)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Sequence, Tuple

import numpy as np
import pytest

from parcel_vision.vision_nodes.depth_calibration import mm_for_sample
from parcel_vision.vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    MeasurementRequest,
    RegionOfInterest,
)

GRID = 100
TABLE_CODE = 100
BLOCK_CODE = 60
BLOCK_RECT = (40, 40, 59, 59)  # inclusive x0, y0, x1, y1
ROI = (40.0, 40.0, 60.0, 60.0)


def make_codes(
    size: int = GRID,
    background: int = TABLE_CODE,
    block: Optional[Tuple[int, int, int, int]] = BLOCK_RECT,
    block_code: int = BLOCK_CODE,
) -> np.ndarray:
    """Flat background with an optional raised axis-aligned block."""
    codes = np.full((size, size), background, dtype=np.uint8)
    if block is not None:
        x0, y0, x1, y1 = block
        codes[y0:y1 + 1, x0:x1 + 1] = block_code
    return codes


def make_request(
    codes: np.ndarray,
    roi: Sequence[float] = ROI,
    rgb_size: Tuple[int, int] = (GRID, GRID),
    calibration: Optional[CalibrationParams] = None,
    request_id: str = "test",
) -> MeasurementRequest:
    return MeasurementRequest(
        depth=DepthFrame(codes),
        roi=RegionOfInterest(*roi),
        rgb_size=rgb_size,
        calibration=calibration or CalibrationParams(),
        request_id=request_id,
    )


def write_bundle(
    path: Path,
    codes: np.ndarray,
    roi: Optional[Sequence[float]] = ROI,
    rgb_size: Optional[Tuple[int, int]] = (GRID, GRID),
    **meta_extra,
) -> Path:
    """Write a capture bundle directory the way the phone app exports it."""
    path.mkdir(parents=True, exist_ok=True)
    meta = {
        "depthWidth": int(codes.shape[1]),
        "depthHeight": int(codes.shape[0]),
        "scaleMin": 0,
        "scaleMax": 255,
        "hfovDeg": 60.0,
        "vfovDeg": 45.0,
    }
    if rgb_size is not None:
        meta["rgbWidth"], meta["rgbHeight"] = rgb_size
    if roi is not None:
        meta["roi"] = list(roi)
    meta.update(meta_extra)
    (path / "meta.json").write_text(json.dumps(meta), encoding="utf-8")
    (path / "depth_u8.raw").write_bytes(np.ascontiguousarray(codes, dtype=np.uint8).tobytes())
    return path


@pytest.fixture
def table_mm() -> float:
    return mm_for_sample(TABLE_CODE, 0, 255)


@pytest.fixture
def block_mm() -> float:
    return mm_for_sample(BLOCK_CODE, 0, 255)


@pytest.fixture
def block_codes() -> np.ndarray:
    return make_codes()


@pytest.fixture
def flat_codes() -> np.ndarray:
    return make_codes(block=None)


@pytest.fixture
def block_request(block_codes) -> MeasurementRequest:
    return make_request(block_codes)


@pytest.fixture
def block_bundle(tmp_path, block_codes) -> Path:
    return write_bundle(tmp_path / "capture_block", block_codes)
