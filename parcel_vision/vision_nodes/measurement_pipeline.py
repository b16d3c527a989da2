"""
Parcel measurement pipeline.

Chains the measurement stages for one depth frame and one ROI:

    ROI mapping -> ROI sample check -> working copy + 3x3 median
    -> ring RANSAC plane -> segmentation -> oriented box + height
    -> metric dimensions + confidence

``measure_parcel`` is a pure function of its request and settings. Expected,
input-driven failures come back as a failed ``MeasurementOutcome`` tagged with
a ``FailureKind``; only malformed input (wrong types, inconsistent buffers)
raises. Degraded but usable conditions (plane fallback, weak height evidence,
sparse or saturated depth) are reported as notes and a lower confidence.

``MeasurementEngine`` wraps the function with YAML-backed settings:

    engine = MeasurementEngine()                 # packaged or $PARCEL_VISION_CONFIG
    outcome = engine.measure(request)
    if outcome.success:
        print(outcome.dims.length_mm, outcome.dims.width_mm)
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from parcel_vision.configs.config import ConfigError, measurement_config_path
from parcel_vision.vision_nodes.camera_model import (
    depth_grid_intrinsics,
    intrinsics_from_fov,
    resolve_intrinsics,
)
from parcel_vision.vision_nodes.depth_calibration import saturation_fraction, valid_sample_mask
from parcel_vision.vision_nodes.dimension_model import (
    ConfidencePolicy,
    DimResult,
    median_depth_mm,
    to_physical,
)
from parcel_vision.vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    DepthRect,
    FailureKind,
    MeasurementError,
    MeasurementRequest,
    RegionOfInterest,
)
from parcel_vision.vision_nodes.orientation import OrientationResult, estimate_orientation
from parcel_vision.vision_nodes.plane_estimator import (
    PlaneFit,
    PlaneFitStatus,
    collect_ring_points,
    fit_plane,
)
from parcel_vision.vision_nodes.roi_mapper import map_roi
from parcel_vision.vision_nodes.segmentation import (
    MaskResult,
    median3x3_in_rect,
    roi_valid_fraction,
    segment,
)
from parcel_vision.vision_tools.config_manager import ConfigManager

logger = logging.getLogger(__name__)


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name) if config else None
    return value if isinstance(value, Mapping) else {}


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass(frozen=True)
class MeasurementSettings:
    """Tunables of one pipeline run; defaults match the packaged YAML."""

    default_range: Tuple[float, float] = (200.0, 2500.0)
    # ROI
    min_span_px: int = 2
    min_roi_samples: int = 40
    fallback_depth_mm: float = 600.0
    # Plane
    ring_pad_px: int = 6
    ransac_iters: int = 150
    inlier_thresh_mm: float = 6.0
    min_ring_points: int = 50
    seed: int = 1234
    checkpoint_every: int = 16
    # Segmentation
    height_thresh_mm: float = 20.0
    roi_pad_px: int = 4
    median_min_valid: int = 3
    # Orientation
    height_percentile: float = 0.90
    side_ratio: float = 0.5
    standing_ratio: float = 1.0
    # Dimensions
    min_height_gap_mm: float = 10.0
    sigma_px: float = 0.7
    rel_sigma: float = 0.01
    height_sigma_floor_mm: float = 3.0
    height_rel_sigma: float = 0.10
    confidence: ConfidencePolicy = field(default_factory=ConfidencePolicy)
    # Diagnostics
    saturation_margin: int = 2
    saturation_warn_frac: float = 0.25
    low_valid_frac: float = 0.5

    @classmethod
    def from_config(cls, config: Optional[Mapping[str, Any]]) -> "MeasurementSettings":
        """
        Build settings from a parsed measurement YAML.

        Missing sections or keys keep their defaults.

        Raises:
            ConfigError: a value has the wrong type or is out of range
        """
        config = config or {}
        d = cls()
        depth = _section(config, "depth")
        roi = _section(config, "roi")
        plane = _section(config, "plane")
        seg = _section(config, "segmentation")
        ori = _section(config, "orientation")
        dims = _section(config, "dimensions")
        diag = _section(config, "diagnostics")
        try:
            return cls(
                default_range=(
                    float(depth.get("default_min_mm", d.default_range[0])),
                    float(depth.get("default_max_mm", d.default_range[1])),
                ),
                min_span_px=int(roi.get("min_span_px", d.min_span_px)),
                min_roi_samples=int(roi.get("min_roi_samples", d.min_roi_samples)),
                fallback_depth_mm=float(roi.get("fallback_depth_mm", d.fallback_depth_mm)),
                ring_pad_px=int(plane.get("ring_pad_px", d.ring_pad_px)),
                ransac_iters=int(plane.get("ransac_iters", d.ransac_iters)),
                inlier_thresh_mm=float(plane.get("inlier_thresh_mm", d.inlier_thresh_mm)),
                min_ring_points=int(plane.get("min_ring_points", d.min_ring_points)),
                seed=int(plane.get("seed", d.seed)),
                checkpoint_every=int(plane.get("checkpoint_every", d.checkpoint_every)),
                height_thresh_mm=float(seg.get("height_thresh_mm", d.height_thresh_mm)),
                roi_pad_px=int(seg.get("roi_pad_px", d.roi_pad_px)),
                median_min_valid=int(seg.get("median_min_valid", d.median_min_valid)),
                height_percentile=float(ori.get("height_percentile", d.height_percentile)),
                side_ratio=float(ori.get("side_ratio", d.side_ratio)),
                standing_ratio=float(ori.get("standing_ratio", d.standing_ratio)),
                min_height_gap_mm=float(dims.get("min_height_gap_mm", d.min_height_gap_mm)),
                sigma_px=float(dims.get("sigma_px", d.sigma_px)),
                rel_sigma=float(dims.get("rel_sigma", d.rel_sigma)),
                height_sigma_floor_mm=float(dims.get("height_sigma_floor_mm", d.height_sigma_floor_mm)),
                height_rel_sigma=float(dims.get("height_rel_sigma", d.height_rel_sigma)),
                confidence=ConfidencePolicy.from_dict(dims.get("confidence")),
                saturation_margin=int(diag.get("saturation_margin", d.saturation_margin)),
                saturation_warn_frac=float(diag.get("saturation_warn_frac", d.saturation_warn_frac)),
                low_valid_frac=float(diag.get("low_valid_frac", d.low_valid_frac)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid measurement settings: {e}") from e


def calibration_from_config(config: Optional[Mapping[str, Any]]) -> CalibrationParams:
    """Default CalibrationParams from the ``calibration`` section."""
    cal = _section(config or {}, "calibration")
    d = CalibrationParams()
    try:
        return CalibrationParams(
            hfov_deg=float(cal.get("hfov_deg", d.hfov_deg)),
            vfov_deg=float(cal.get("vfov_deg", d.vfov_deg)),
            fx=_opt_float(cal.get("fx")),
            fy=_opt_float(cal.get("fy")),
            cx=_opt_float(cal.get("cx")),
            cy=_opt_float(cal.get("cy")),
            align_dx_px=float(cal.get("align_dx_px", d.align_dx_px) or 0.0),
            align_dy_px=float(cal.get("align_dy_px", d.align_dy_px) or 0.0),
            optical_dx_mm=_opt_float(cal.get("optical_dx_mm")),
            optical_dy_mm=_opt_float(cal.get("optical_dy_mm")),
            tof_hfov_deg=float(cal.get("tof_hfov_deg", d.tof_hfov_deg)),
            tof_vfov_deg=float(cal.get("tof_vfov_deg", d.tof_vfov_deg)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid calibration settings: {e}") from e


@dataclass(frozen=True)
class MeasurementOutcome:
    """Tagged result of one measurement call.

    ``success`` is True exactly when ``dims`` is set; otherwise ``failure`` names
    the reason. Intermediate products are kept for debug overlays as far as the
    run got.
    """

    success: bool
    failure: Optional[FailureKind] = None
    message: str = ""
    request_id: str = ""
    dims: Optional[DimResult] = None
    mask: Optional[MaskResult] = None
    orientation: Optional[OrientationResult] = None
    plane_fit: Optional[PlaneFit] = None
    depth_rect: Optional[DepthRect] = None
    valid_frac: Optional[float] = None
    saturation_frac: Optional[float] = None
    n_roi_points: int = 0
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failure": self.failure.value if self.failure else None,
            "message": self.message,
            "request_id": self.request_id,
            "dims": self.dims.to_dict() if self.dims else None,
            "mask": self.mask.to_dict() if self.mask else None,
            "orientation": self.orientation.to_dict() if self.orientation else None,
            "plane_fit": self.plane_fit.to_dict() if self.plane_fit else None,
            "depth_rect": self.depth_rect.to_list() if self.depth_rect else None,
            "valid_frac": self.valid_frac,
            "saturation_frac": self.saturation_frac,
            "n_roi_points": int(self.n_roi_points),
            "notes": list(self.notes),
        }


def _check_cancel(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise MeasurementError(FailureKind.CANCELLED, f"cancelled before {stage}")


def measure_parcel(
    request: MeasurementRequest,
    settings: Optional[MeasurementSettings] = None,
    cancel_event: Optional[threading.Event] = None,
) -> MeasurementOutcome:
    """
    Measure the parcel inside ``request.roi``.

    Args:
        request: Depth frame, ROI, RGB size and calibration (never mutated)
        settings: Pipeline tunables; defaults when None
        cancel_event: Optional flag checked between stages and inside RANSAC

    Returns:
        MeasurementOutcome, successful or tagged with a FailureKind

    Raises:
        ValueError: ``request`` is not a MeasurementRequest
    """
    if not isinstance(request, MeasurementRequest):
        raise ValueError(f"expected MeasurementRequest, got {type(request).__name__}")
    settings = settings or MeasurementSettings()

    # Filled stage by stage so failures still report how far the run got
    partial: Dict[str, Any] = {}
    try:
        return _run(request, settings, cancel_event, partial)
    except MeasurementError as e:
        log = logger.info if e.kind == FailureKind.CANCELLED else logger.warning
        log(f"Measurement {request.request_id or '-'} failed: {e.kind.value} ({e.message})")
        return MeasurementOutcome(
            success=False,
            failure=e.kind,
            message=e.message,
            request_id=request.request_id,
            **partial,
        )


def _run(
    request: MeasurementRequest,
    settings: MeasurementSettings,
    cancel_event: Optional[threading.Event],
    partial: Dict[str, Any],
) -> MeasurementOutcome:
    depth: DepthFrame = request.depth
    cal = request.calibration
    rng_mm = settings.default_range

    if depth.width == 0 or depth.height == 0:
        raise MeasurementError(FailureKind.NO_DEPTH_GRID, f"depth grid is {depth.width}x{depth.height}")

    # Geometry, once per call
    rgb_intr = resolve_intrinsics(request.rgb_size, cal)
    depth_intr = depth_grid_intrinsics(rgb_intr, depth.size, cal.align_dx_px, cal.align_dy_px)
    tof_intr = intrinsics_from_fov(depth.width, depth.height, cal.tof_hfov_deg, cal.tof_vfov_deg)

    rect = map_roi(
        request.roi,
        request.rgb_size,
        depth,
        cal,
        tof_intr=tof_intr,
        min_span_px=settings.min_span_px,
        fallback_depth_mm=settings.fallback_depth_mm,
        default_range=rng_mm,
    )
    partial["depth_rect"] = rect

    rows, cols = rect.slices()
    roi_codes = depth.data[rows, cols]
    n_valid = int(np.count_nonzero(valid_sample_mask(roi_codes)))
    valid_frac = roi_valid_fraction(depth.data, rect)
    sat_frac = saturation_fraction(roi_codes, settings.saturation_margin)
    partial.update(n_roi_points=n_valid, valid_frac=valid_frac, saturation_frac=sat_frac)
    if n_valid < settings.min_roi_samples:
        raise MeasurementError(
            FailureKind.INSUFFICIENT_ROI_SAMPLES,
            f"{n_valid} valid depth samples in ROI (< {settings.min_roi_samples})",
        )

    # Private working copy; the caller's frame stays untouched
    working = median3x3_in_rect(depth.data, rect, settings.median_min_valid)
    _check_cancel(cancel_event, "plane fit")

    ring = collect_ring_points(
        working, rect, settings.ring_pad_px, depth_intr, depth.scale_min, depth.scale_max, rng_mm
    )
    plane_fit = fit_plane(
        ring,
        iters=settings.ransac_iters,
        inlier_thresh_mm=settings.inlier_thresh_mm,
        min_points=settings.min_ring_points,
        seed=settings.seed,
        cancel_event=cancel_event,
        checkpoint_every=settings.checkpoint_every,
    )
    partial["plane_fit"] = plane_fit
    if plane_fit.status == PlaneFitStatus.NO_RING or plane_fit.plane is None:
        raise MeasurementError(FailureKind.PLANE_FIT_UNAVAILABLE, plane_fit.reason or "no ring points")
    _check_cancel(cancel_event, "segmentation")

    mask = segment(
        working,
        rect,
        plane_fit.plane,
        depth_intr,
        depth.scale_min,
        depth.scale_max,
        valid_frac=valid_frac,
        height_thresh_mm=settings.height_thresh_mm,
        roi_pad=settings.roi_pad_px,
        default_range=rng_mm,
    )
    partial["mask"] = mask
    if mask.is_empty:
        raise MeasurementError(
            FailureKind.SEGMENTATION_FAILED,
            f"no component >= {settings.height_thresh_mm:g} mm above the plane overlaps the ROI",
        )
    _check_cancel(cancel_event, "box estimation")

    z_med = median_depth_mm(mask, working, depth.scale_min, depth.scale_max, rng_mm)
    orientation = estimate_orientation(
        mask,
        working,
        depth_intr,
        depth.scale_min,
        depth.scale_max,
        height_percentile=settings.height_percentile,
        side_ratio=settings.side_ratio,
        standing_ratio=settings.standing_ratio,
        default_range=rng_mm,
        z_ref_mm=z_med,
    )
    partial["orientation"] = orientation

    dims = to_physical(
        orientation.box,
        z_med,
        depth_intr.fx,
        depth_intr.fy,
        valid_frac,
        orientation.gap_mm,
        mask.area_px,
        policy=settings.confidence,
        min_height_gap_mm=settings.min_height_gap_mm,
        sigma_px=settings.sigma_px,
        rel_sigma=settings.rel_sigma,
        height_sigma_floor_mm=settings.height_sigma_floor_mm,
        height_rel_sigma=settings.height_rel_sigma,
    )

    notes = []
    plane_fallback = plane_fit.status == PlaneFitStatus.FALLBACK_FLAT
    saturated = sat_frac > settings.saturation_warn_frac
    if plane_fallback:
        notes.append(f"plane fallback: {plane_fit.reason}")
    if dims.height_mm is None:
        notes.append(
            f"height below evidence: gap {orientation.gap_mm:.1f} mm < {settings.min_height_gap_mm:g} mm"
        )
    if valid_frac < settings.low_valid_frac:
        notes.append(f"low valid depth: {valid_frac:.0%} of ROI")
    if saturated:
        notes.append(f"depth saturation: {sat_frac:.0%} of ROI near range limits")
    if plane_fallback or saturated:
        dims = dataclasses.replace(
            dims, confidence=settings.confidence.degrade(dims.confidence, plane_fallback, saturated)
        )
    for note in notes:
        logger.warning(f"Measurement {request.request_id or '-'}: {note}")

    logger.debug(
        f"Measured L={dims.length_mm:.1f} W={dims.width_mm:.1f} "
        f"H={'n/a' if dims.height_mm is None else f'{dims.height_mm:.1f}'} mm conf={dims.confidence:.2f}"
    )
    return MeasurementOutcome(
        success=True,
        request_id=request.request_id,
        dims=dims,
        mask=mask,
        orientation=orientation,
        plane_fit=plane_fit,
        depth_rect=rect,
        valid_frac=valid_frac,
        saturation_frac=sat_frac,
        n_roi_points=n_valid,
        notes=tuple(notes),
    )


class MeasurementEngine:
    """
    Config-backed front end of :func:`measure_parcel`.

    Holds only immutable settings and the default calibration, so one engine
    can serve concurrent calls. ``reload_config`` swaps both when the YAML
    changed on disk.
    """

    def __init__(self, config_path: Optional[Path] = None, logger=None):
        """
        Initialize the engine.

        Args:
            config_path: Measurement YAML; $PARCEL_VISION_CONFIG or the packaged
                default when None
            logger: Logger for lifecycle messages (module logger if None)

        Raises:
            ConfigError: the file is missing, unparsable or fails validation
        """
        self.log = logger or logging.getLogger(__name__)
        self.config_path = Path(config_path) if config_path else measurement_config_path()

        self.log.info("=" * 60)
        self.log.info("Initializing parcel measurement engine")
        self.log.info("=" * 60)
        self.log.info(f"Config: {self.config_path}")

        self.config_manager = ConfigManager(self.config_path, logger=self.log)
        if not self.config_manager.loaded:
            raise ConfigError(f"Could not load config: {self.config_path}")
        self._apply(self.config_manager.config)
        self.config_manager.register_change_callback(self._apply)

        for line in self.config_manager.get_summary().splitlines():
            self.log.debug(line)
        self.log.info("[OK] Measurement engine ready")

    def _apply(self, config: Mapping[str, Any]) -> None:
        if not self.config_manager.validate():
            raise ConfigError(f"Invalid configuration: {self.config_path}")
        settings = MeasurementSettings.from_config(config)
        calibration = calibration_from_config(config)
        # Single attribute swap so readers see a consistent pair
        self._state = (settings, calibration)

    @property
    def settings(self) -> MeasurementSettings:
        return self._state[0]

    @property
    def calibration(self) -> CalibrationParams:
        return self._state[1]

    def reload_config(self) -> bool:
        """
        Re-read the YAML if it changed.

        Returns:
            True when new settings are active, False if the file is unchanged

        Raises:
            ConfigError: the new file is invalid; the previous settings stay active
        """
        return self.config_manager.reload()

    def build_request(
        self,
        depth: DepthFrame,
        roi: RegionOfInterest,
        rgb_size: Tuple[int, int],
        calibration: Optional[CalibrationParams] = None,
        request_id: str = "",
    ) -> MeasurementRequest:
        """Request using the configured calibration unless one is given."""
        return MeasurementRequest(
            depth=depth,
            roi=roi,
            rgb_size=rgb_size,
            calibration=calibration or self.calibration,
            request_id=request_id,
        )

    def measure(
        self,
        request: MeasurementRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> MeasurementOutcome:
        settings = self.settings
        self.log.debug(f"Measure request: {request.describe()}")
        outcome = measure_parcel(request, settings, cancel_event)
        if outcome.success:
            dims = outcome.dims
            self.log.info(
                f"[OK] {request.request_id or 'measurement'}: "
                f"{dims.length_mm:.0f} x {dims.width_mm:.0f} x "
                f"{'?' if dims.height_mm is None else f'{dims.height_mm:.0f}'} mm "
                f"(confidence {dims.confidence:.2f})"
            )
        return outcome
