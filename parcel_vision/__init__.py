"""
Parcel Vision

Depth-based parcel dimensioning from one RGB photo, a co-registered 8-bit ToF
depth grid and a region of interest.

Modules:
    - vision_nodes.measurement_pipeline: measure_parcel / MeasurementEngine
    - vision_nodes.measurement_worker: off-thread dispatch with cancellation
    - vision_nodes.*: calibration, geometry, ROI mapping, plane fit,
      segmentation, oriented box, dimensions
    - vision_tools.*: config manager, ROS2-style logger, capture bundles, CLI
"""

__version__ = "1.0.0"

from .vision_nodes.measurement_types import (
    CalibrationParams,
    DepthFrame,
    FailureKind,
    MeasurementError,
    MeasurementRequest,
    RegionOfInterest,
)
from .vision_nodes.dimension_model import ConfidencePolicy, DimResult
from .vision_nodes.measurement_pipeline import (
    MeasurementEngine,
    MeasurementOutcome,
    MeasurementSettings,
    measure_parcel,
)
from .vision_nodes.measurement_worker import MeasurementWorker

__all__ = [
    "CalibrationParams",
    "DepthFrame",
    "FailureKind",
    "MeasurementError",
    "MeasurementRequest",
    "RegionOfInterest",
    "ConfidencePolicy",
    "DimResult",
    "MeasurementEngine",
    "MeasurementOutcome",
    "MeasurementSettings",
    "measure_parcel",
    "MeasurementWorker",
]
