"""
Off-thread dispatch of measurements.

RANSAC plus per-cell back-projection is too slow for an interactive loop, so
callers hand requests to a ``MeasurementWorker``. The worker runs them one at a
time on its own thread; submitting a new request cancels the one still in
flight (its future resolves to a CANCELLED outcome), so at most one
measurement per worker is ever running.

Usage:
    worker = MeasurementWorker(engine)
    future = worker.submit(request, callback=on_result)
    ...
    worker.shutdown()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from parcel_vision.vision_nodes.measurement_pipeline import (
    MeasurementEngine,
    MeasurementOutcome,
    MeasurementSettings,
    measure_parcel,
)
from parcel_vision.vision_nodes.measurement_types import MeasurementRequest

logger = logging.getLogger(__name__)


class MeasurementWorker:
    """Single-thread measurement executor with cancel-on-resubmit."""

    def __init__(
        self,
        engine: Optional[MeasurementEngine] = None,
        settings: Optional[MeasurementSettings] = None,
        name: str = "parcel-measure",
    ):
        """
        Initialize the worker.

        Args:
            engine: Engine to run requests with; plain ``measure_parcel`` with
                ``settings`` when None
            settings: Settings for the engine-less mode
            name: Thread name prefix
        """
        self.engine = engine
        self.settings = settings
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._lock = threading.Lock()
        self._current: Optional[threading.Event] = None
        self._closed = False

    def _run(self, request: MeasurementRequest, cancel_event: threading.Event) -> MeasurementOutcome:
        if self.engine is not None:
            return self.engine.measure(request, cancel_event)
        return measure_parcel(request, self.settings, cancel_event)

    def submit(
        self,
        request: MeasurementRequest,
        callback: Optional[Callable[[MeasurementOutcome], None]] = None,
    ) -> "Future[MeasurementOutcome]":
        """
        Queue a measurement, cancelling the previous one if it is still running.

        Args:
            request: Measurement request (validated immediately)
            callback: Optional function called with the outcome on the worker thread

        Returns:
            Future resolving to the MeasurementOutcome

        Raises:
            ValueError: ``request`` is not a MeasurementRequest
            RuntimeError: the worker was shut down
        """
        if not isinstance(request, MeasurementRequest):
            raise ValueError(f"expected MeasurementRequest, got {type(request).__name__}")

        cancel_event = threading.Event()
        with self._lock:
            if self._closed:
                raise RuntimeError("MeasurementWorker is shut down")
            if self._current is not None:
                self._current.set()
            self._current = cancel_event

        def _job() -> MeasurementOutcome:
            outcome = self._run(request, cancel_event)
            with self._lock:
                if self._current is cancel_event:
                    self._current = None
            if callback is not None:
                try:
                    callback(outcome)
                except Exception as e:
                    logger.error(f"Measurement callback error: {e}")
            return outcome

        logger.debug(f"Queued measurement {request.request_id or '-'}")
        return self._executor.submit(_job)

    def cancel(self) -> None:
        """Signal the in-flight measurement, if any, to stop."""
        with self._lock:
            if self._current is not None:
                self._current.set()

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the in-flight measurement and stop the worker thread."""
        with self._lock:
            self._closed = True
            if self._current is not None:
                self._current.set()
        self._executor.shutdown(wait=wait)
        logger.debug("[OK] Measurement worker stopped")

    def __enter__(self) -> "MeasurementWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
