"""Camera device management with reusable state."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import cv2
import numpy as np


logger = logging.getLogger(__name__)

FACING_USER = "user"
FACING_ENVIRONMENT = "environment"


class CameraError(RuntimeError):
    """Raised when camera operations fail."""


class CameraProvider(Protocol):
    """Abstraction for objects that can supply cv2.VideoCapture."""

    def open(self, index: int) -> cv2.VideoCapture:
        ...


class Camera(Protocol):
    """Anything a camera lease can start, read and stop."""

    facing: str

    def start(self):
        ...

    def read(self) -> np.ndarray:
        ...

    def stop(self) -> None:
        ...

    def is_live(self) -> bool:
        ...


CameraFactory = Callable[[str], Camera]


class DefaultCameraProvider:
    """Real provider that uses OpenCV to create VideoCapture objects."""

    def open(self, index: int) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(index)
        if not capture or not capture.isOpened():
            raise CameraError(f"Cannot open camera index {index}")
        return capture


@dataclass
class CameraConfig:
    index: int = 0
    facing: str = FACING_USER
    width: Optional[int] = None
    height: Optional[int] = None
    warmup_frames: int = 3
    buffer_size: Optional[int] = 2


@dataclass
class CameraState:
    """State container for camera device handles."""

    capture: Optional[cv2.VideoCapture] = None


class CameraManager:
    """Owns a local camera device lifecycle and exposes safe read operations."""

    def __init__(
        self,
        index: int = 0,
        facing: str = FACING_USER,
        provider: Optional[CameraProvider] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        warmup_frames: int = 3,
        buffer_size: Optional[int] = 2,
    ):
        self.config = CameraConfig(
            index=index,
            facing=facing,
            width=width,
            height=height,
            warmup_frames=warmup_frames,
            buffer_size=buffer_size,
        )
        self.state = CameraState()
        self.provider = provider or DefaultCameraProvider()

    @property
    def facing(self) -> str:
        return self.config.facing

    def start(self) -> cv2.VideoCapture:
        capture = self.state.capture
        if capture is not None and capture.isOpened():
            return capture

        capture = self.provider.open(self.config.index)
        self._configure_capture(capture)
        self.state.capture = capture
        logger.info("[Camera] Opened %s camera (index %s)", self.config.facing, self.config.index)
        return capture

    def _configure_capture(self, capture: cv2.VideoCapture) -> None:
        if capture is None:
            return
        try:
            if self.config.width:
                capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.config.width)
            if self.config.height:
                capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.config.height)
            if self.config.buffer_size is not None and hasattr(cv2, "CAP_PROP_BUFFERSIZE"):
                capture.set(cv2.CAP_PROP_BUFFERSIZE, self.config.buffer_size)

            actual_w = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))
            actual_h = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))
            fps = capture.get(cv2.CAP_PROP_FPS)
            logger.info(
                "Camera ready: %sx%s @ %.2f fps",
                actual_w,
                actual_h,
                fps or 0,
            )

            warmup = max(0, self.config.warmup_frames)
            if warmup:
                logger.debug("Warming up camera (%s frames)", warmup)
                success = 0
                for _ in range(warmup):
                    ret, _frame = capture.read()
                    if ret:
                        success += 1
                    time.sleep(0.05)
                logger.debug("Warmup frames ok=%s/%s", success, warmup)
        except Exception as exc:
            logger.warning("Unable to configure camera: %s", exc)

    def stop(self) -> None:
        capture = self.state.capture
        self.state.capture = None
        if capture is not None:
            capture.release()
            logger.info("[Camera] Released %s camera (index %s)", self.config.facing, self.config.index)

    def read(self) -> np.ndarray:
        capture = self.state.capture
        if capture is None:
            raise CameraError("Camera is not started")
        ret, frame = capture.read()
        if not ret or frame is None:
            raise CameraError("Unable to read frame from camera")
        return frame

    def is_live(self) -> bool:
        capture = self.state.capture
        return bool(capture is not None and capture.isOpened())


class FrameBufferCamera:
    """Camera whose frames are pushed in by a remote client (browser canvas samples)."""

    def __init__(self, facing: str = FACING_USER):
        self.facing = facing
        self._frame: Optional[np.ndarray] = None
        self._live = False
        self._lock = threading.Lock()

    def start(self) -> "FrameBufferCamera":
        with self._lock:
            self._live = True
        return self

    def push(self, frame: np.ndarray) -> None:
        with self._lock:
            if not self._live:
                raise CameraError("Camera stream is not active")
            self._frame = frame

    def read(self) -> np.ndarray:
        with self._lock:
            if not self._live:
                raise CameraError("Camera stream is not active")
            if self._frame is None:
                raise CameraError("No frame received from camera")
            frame, self._frame = self._frame, None
        return frame

    def stop(self) -> None:
        with self._lock:
            self._live = False
            self._frame = None

    def is_live(self) -> bool:
        with self._lock:
            return self._live


def local_camera_factory(
    *,
    front_index: int = 0,
    rear_index: int = 0,
    width: Optional[int] = None,
    height: Optional[int] = None,
    warmup_frames: int = 3,
    buffer_size: Optional[int] = 2,
    provider: Optional[CameraProvider] = None,
) -> CameraFactory:
    """Build a factory that maps a facing mode onto a local OpenCV device index."""

    def factory(facing: str) -> CameraManager:
        index = front_index if facing == FACING_USER else rear_index
        return CameraManager(
            index=index,
            facing=facing,
            provider=provider,
            width=width,
            height=height,
            warmup_frames=warmup_frames,
            buffer_size=buffer_size,
        )

    return factory


class FrameBufferCameraPool:
    """One pushed-frame camera per facing mode, shared by the steps of a session."""

    def __init__(self) -> None:
        self._cameras: Dict[str, FrameBufferCamera] = {}
        self._lock = threading.Lock()

    def __call__(self, facing: str) -> FrameBufferCamera:
        with self._lock:
            camera = self._cameras.get(facing)
            if camera is None:
                camera = FrameBufferCamera(facing)
                self._cameras[facing] = camera
            return camera

    def push(self, facing: str, frame: np.ndarray) -> None:
        with self._lock:
            camera = self._cameras.get(facing)
        if camera is None:
            raise CameraError(f"No {facing} camera has been started")
        camera.push(frame)

    def any_live(self) -> bool:
        with self._lock:
            cameras = list(self._cameras.values())
        return any(camera.is_live() for camera in cameras)
