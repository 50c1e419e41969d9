"""Paired camera lifetime for a single verification step."""
from __future__ import annotations

import logging
import threading
from typing import Optional

from .camera_manager import Camera, CameraError, CameraFactory
from .pipeline import VisionFrame, VisionPipeline


class CameraLease:
    """Owns one camera for as long as a step needs it.

    Acquire and release are idempotent and thread-safe; anything started by
    ``acquire`` is stopped by ``release`` no matter which exit path the step
    takes.
    """

    def __init__(
        self,
        factory: CameraFactory,
        facing: str,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._factory = factory
        self._facing = facing
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._camera: Optional[Camera] = None
        self._pipeline: Optional[VisionPipeline] = None

    # ------------------------------------------------------------------
    # Internal helpers
    def _shutdown_locked(self) -> None:
        camera = self._camera
        if camera is not None:
            try:
                camera.stop()
            except Exception as exc:
                self._logger.warning("[Camera] stop() failed: %s", exc)
        self._pipeline = None
        self._camera = None

    # ------------------------------------------------------------------
    # Public API
    @property
    def facing(self) -> str:
        return self._facing

    @property
    def camera(self) -> Optional[Camera]:
        with self._lock:
            return self._camera

    def acquire(self) -> VisionPipeline:
        with self._lock:
            if self._pipeline is not None and self._camera is not None and self._camera.is_live():
                return self._pipeline
            self._shutdown_locked()
            camera = self._factory(self._facing)
            try:
                camera.start()
            except CameraError:
                camera.stop()
                raise
            except Exception as exc:
                camera.stop()
                raise CameraError(str(exc)) from exc
            self._camera = camera
            self._pipeline = VisionPipeline(camera)
            return self._pipeline

    def next_frame(self) -> VisionFrame:
        with self._lock:
            if self._pipeline is None:
                raise CameraError("Camera is not live")
            return self._pipeline.next_frame()

    def is_live(self) -> bool:
        with self._lock:
            return bool(self._camera is not None and self._camera.is_live())

    def release(self) -> None:
        with self._lock:
            self._shutdown_locked()

    def __enter__(self) -> "CameraLease":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
