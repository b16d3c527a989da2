"""
Capture bundle loading and measurement artifact saving.

A capture bundle is what the phone app exports for one RGB + ToF shot, either
as a directory or as a ``.zip`` (files may sit in a sub-folder):

- meta.json: depth grid size, calibration range and camera calibration
- depth_u8.raw: row-major 8-bit depth codes, depthWidth * depthHeight bytes
- photo.jpg: RGB photo (optional when meta carries rgbWidth / rgbHeight)

meta.json keys (camelCase, as written by the app):
    depthWidth, depthHeight, scaleMin, scaleMax, alignDxPx, alignDyPx,
    hfovDeg, vfovDeg, fx, fy, cx, cy, opticalDxMm, opticalDyMm,
    rgbWidth, rgbHeight, roi [left, top, right, bottom] (optional)

Artifacts written after a measurement:
- mask_depth.png: full depth grid, 255 = parcel, 0 = everything else
- measurement.json: ``MeasurementOutcome.to_dict()`` plus bundle info
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import cv2
import numpy as np

from parcel_vision.vision_nodes.measurement_pipeline import MeasurementOutcome
from parcel_vision.vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    MeasurementRequest,
    RegionOfInterest,
)
from parcel_vision.vision_nodes.segmentation import MaskResult

logger = logging.getLogger(__name__)

META_NAME = "meta.json"
DEPTH_NAME = "depth_u8.raw"
PHOTO_NAME = "photo.jpg"
MASK_IMAGE_NAME = "mask_depth.png"
RESULT_JSON_NAME = "measurement.json"


class BundleError(RuntimeError):
    """Capture bundle is missing files or carries inconsistent data."""


@dataclass(frozen=True)
class CaptureBundle:
    """Decoded capture bundle."""

    source: Path
    meta: Dict[str, Any]
    depth: DepthFrame
    rgb_size: Tuple[int, int]
    calibration: CalibrationParams
    roi: Optional[RegionOfInterest] = None
    photo: Optional[np.ndarray] = None

    def to_request(self, roi: Optional[RegionOfInterest] = None, request_id: Optional[str] = None) -> MeasurementRequest:
        """
        Request for this bundle.

        Raises:
            BundleError: no ROI given and none stored in meta.json
        """
        roi = roi or self.roi
        if roi is None:
            raise BundleError(f"No ROI given and {META_NAME} of {self.source.name} has none")
        return MeasurementRequest(
            depth=self.depth,
            roi=roi,
            rgb_size=self.rgb_size,
            calibration=self.calibration,
            request_id=request_id if request_id is not None else self.source.stem,
        )


def _opt_float(meta: Dict[str, Any], key: str, default: Optional[float] = None) -> Optional[float]:
    value = meta.get(key)
    return default if value is None else float(value)


def _fov(meta: Dict[str, Any], key: str, default: float) -> float:
    value = float(meta.get(key, default))
    if not (0.0 < value < 180.0):
        raise ValueError(f"{key} must be in (0, 180) degrees, got {value}")
    return value


def calibration_from_meta(meta: Dict[str, Any], base: Optional[CalibrationParams] = None) -> CalibrationParams:
    """
    Calibration from meta.json keys, falling back to ``base`` for missing ones.

    Raises:
        ValueError: non-numeric values or a field of view outside (0, 180)
    """
    d = base or CalibrationParams()
    cal = CalibrationParams(
        hfov_deg=_fov(meta, "hfovDeg", d.hfov_deg),
        vfov_deg=_fov(meta, "vfovDeg", d.vfov_deg),
        fx=_opt_float(meta, "fx", d.fx),
        fy=_opt_float(meta, "fy", d.fy),
        cx=_opt_float(meta, "cx", d.cx),
        cy=_opt_float(meta, "cy", d.cy),
        align_dx_px=float(meta.get("alignDxPx", d.align_dx_px)),
        align_dy_px=float(meta.get("alignDyPx", d.align_dy_px)),
        optical_dx_mm=_opt_float(meta, "opticalDxMm", d.optical_dx_mm),
        optical_dy_mm=_opt_float(meta, "opticalDyMm", d.optical_dy_mm),
        tof_hfov_deg=_fov(meta, "tofHfovDeg", d.tof_hfov_deg),
        tof_vfov_deg=_fov(meta, "tofVfovDeg", d.tof_vfov_deg),
    )
    if cal.has_explicit_intrinsics and (cal.fx <= 0 or cal.fy <= 0):
        raise ValueError(f"focal lengths must be positive, got fx={cal.fx} fy={cal.fy}")
    return cal


def _rgb_size(meta: Dict[str, Any], photo: Optional[np.ndarray], name: str) -> Tuple[int, int]:
    has_w = meta.get("rgbWidth") is not None
    has_h = meta.get("rgbHeight") is not None
    if has_w or has_h:
        try:
            size = (int(meta["rgbWidth"]), int(meta["rgbHeight"]))
        except (KeyError, TypeError, ValueError) as e:
            raise BundleError(f"rgbWidth and rgbHeight in {META_NAME} of {name} must both be integers") from e
        if size[0] <= 0 or size[1] <= 0:
            raise BundleError(f"Invalid RGB size {size[0]}x{size[1]} in {META_NAME} of {name}")
        return size
    if photo is not None:
        return int(photo.shape[1]), int(photo.shape[0])
    raise BundleError(f"Bundle {name} has neither rgbWidth/rgbHeight nor a decodable photo")


def _read_files(path: Path) -> Dict[str, bytes]:
    """Bundle member name -> bytes for the known files."""
    wanted = (META_NAME, DEPTH_NAME, PHOTO_NAME)
    files: Dict[str, bytes] = {}

    if path.is_dir():
        for name in wanted:
            candidate = path / name
            if candidate.exists():
                files[name] = candidate.read_bytes()
        return files

    if zipfile.is_zipfile(path):
        with zipfile.ZipFile(path) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                for name in wanted:
                    if info.filename.endswith(name) and name not in files:
                        files[name] = zf.read(info)
        return files

    raise BundleError(f"Not a bundle directory or zip archive: {path}")


def load_bundle(path: Path, calibration: Optional[CalibrationParams] = None) -> CaptureBundle:
    """
    Load a capture bundle from a directory or ``.zip``.

    Args:
        path: Bundle directory or archive
        calibration: Base calibration for keys meta.json does not carry
            (defaults to ``CalibrationParams()``)

    Returns:
        CaptureBundle

    Raises:
        BundleError: missing files, unreadable meta, inconsistent depth size,
            invalid calibration, RGB size or ROI
    """
    path = Path(path)
    if not path.exists():
        raise BundleError(f"Bundle not found: {path}")

    files = _read_files(path)
    missing = [name for name in (META_NAME, DEPTH_NAME) if name not in files]
    if missing:
        raise BundleError(f"Bundle {path.name} missing files: {', '.join(missing)}")

    try:
        meta = json.loads(files[META_NAME].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BundleError(f"Unreadable {META_NAME} in {path.name}: {e}") from e
    if not isinstance(meta, dict):
        raise BundleError(f"{META_NAME} in {path.name} must be a JSON object")

    try:
        depth = DepthFrame.from_bytes(
            files[DEPTH_NAME],
            int(meta.get("depthWidth", 100)),
            int(meta.get("depthHeight", 100)),
            float(meta.get("scaleMin", 0)),
            float(meta.get("scaleMax", 255)),
        )
    except (TypeError, ValueError) as e:
        raise BundleError(f"Invalid depth data in {path.name}: {e}") from e

    try:
        calibration = calibration_from_meta(meta, calibration)
    except (TypeError, ValueError) as e:
        raise BundleError(f"Invalid calibration in {META_NAME} of {path.name}: {e}") from e

    photo = None
    if PHOTO_NAME in files:
        photo = cv2.imdecode(np.frombuffer(files[PHOTO_NAME], dtype=np.uint8), cv2.IMREAD_COLOR)
        if photo is None:
            logger.warning(f"Could not decode {PHOTO_NAME} in {path.name}")

    rgb_size = _rgb_size(meta, photo, path.name)

    roi = None
    raw_roi = meta.get("roi")
    if raw_roi is not None:
        if not isinstance(raw_roi, (list, tuple)) or len(raw_roi) != 4:
            raise BundleError(f"roi in {META_NAME} must be [left, top, right, bottom], got {raw_roi!r}")
        try:
            roi = RegionOfInterest(*(float(v) for v in raw_roi))
        except (TypeError, ValueError) as e:
            raise BundleError(f"roi in {META_NAME} must hold numbers, got {raw_roi!r}") from e

    logger.info(
        f"[OK] Loaded bundle {path.name}: depth {depth.width}x{depth.height} "
        f"scale [{depth.scale_min:g}, {depth.scale_max:g}] rgb {rgb_size[0]}x{rgb_size[1]}"
    )
    return CaptureBundle(
        source=path,
        meta=meta,
        depth=depth,
        rgb_size=rgb_size,
        calibration=calibration,
        roi=roi,
        photo=photo,
    )


def mask_to_depth_image(mask: MaskResult, grid_shape: Tuple[int, int]) -> np.ndarray:
    """
    Paint a mask into a full depth-grid image.

    Args:
        mask: Segmentation result
        grid_shape: (height, width) of the depth grid

    Returns:
        uint8 image, 255 where the parcel is
    """
    img = np.zeros(grid_shape, dtype=np.uint8)
    ys, xs = mask.foreground_cells()
    img[ys, xs] = 255
    return img


def mask_iou(mask_img: np.ndarray, gt_mask: np.ndarray) -> float:
    """
    Intersection over union of a depth-grid mask and a ground-truth mask.

    The ground truth may have any resolution; it is resized to the grid with
    nearest-neighbour sampling and binarized at > 127. Two empty masks give 0.
    """
    pred = np.asarray(mask_img) > 0
    gt = np.asarray(gt_mask)
    if gt.ndim == 3:
        gt = cv2.cvtColor(gt, cv2.COLOR_BGR2GRAY)
    if gt.shape != pred.shape:
        gt = cv2.resize(gt, (pred.shape[1], pred.shape[0]), interpolation=cv2.INTER_NEAREST)
    gt = gt > 127
    union = int(np.count_nonzero(pred | gt))
    if union == 0:
        return 0.0
    return float(np.count_nonzero(pred & gt)) / float(union)


def load_gt_mask(path: Path) -> np.ndarray:
    img = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise BundleError(f"Could not read ground-truth mask: {path}")
    return img


def save_measurement_artifacts(
    outcome: MeasurementOutcome,
    out_dir: Path,
    grid_shape: Tuple[int, int],
    extra_data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Path]:
    """
    Save the debug mask image and the JSON result of a measurement.

    Args:
        outcome: Measurement outcome (failed outcomes are saved too)
        out_dir: Output directory (created if needed)
        grid_shape: (height, width) of the depth grid
        extra_data: Optional additional data merged into the JSON

    Returns:
        Mapping of artifact kind ("mask", "json") to written path
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: Dict[str, Path] = {}

    if outcome.mask is not None:
        mask_path = out_dir / MASK_IMAGE_NAME
        if not cv2.imwrite(str(mask_path), mask_to_depth_image(outcome.mask, grid_shape)):
            raise OSError(f"Failed to write {mask_path}")
        written["mask"] = mask_path

    data = {
        "timestamp_iso": datetime.now().isoformat(),
        "depth_grid": {"height": int(grid_shape[0]), "width": int(grid_shape[1])},
        "measurement": outcome.to_dict(),
    }
    if extra_data:
        data.update(extra_data)

    json_path = out_dir / RESULT_JSON_NAME
    with open(json_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    written["json"] = json_path

    logger.info(f"[OK] Saved {len(written)} files to {out_dir}:")
    for path in written.values():
        logger.info(f"  - {path.name}")
    return written
