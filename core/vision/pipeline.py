"""Vision pipeline that normalizes frames before AI inference."""
from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from .camera_manager import Camera, CameraError


@dataclass
class VisionFrame:
    bgr: np.ndarray
    rgb: np.ndarray


class VisionPipeline:
    """Reads camera frames and adds the RGB view the encoders expect."""

    def __init__(self, camera: Camera):
        self.camera = camera

    def next_frame(self) -> VisionFrame:
        frame = self.camera.read()
        return VisionFrame(bgr=frame, rgb=cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))


def decode_image_bytes(data: bytes) -> np.ndarray:
    """Decode JPEG/PNG bytes into a BGR frame."""
    if not data:
        raise CameraError("Empty image payload")
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise CameraError("Unable to decode image payload")
    return image


def decode_base64_image(payload: str) -> np.ndarray:
    """Decode a data URI / base64 string posted by a browser canvas."""
    if not payload:
        raise CameraError("Empty image payload")
    if "," in payload and payload.strip().startswith("data:"):
        payload = payload.split(",", 1)[1]
    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise CameraError(f"Invalid base64 image: {exc}") from exc
    return decode_image_bytes(raw)


def encode_jpeg(frame: np.ndarray, quality: int = 85) -> Optional[bytes]:
    ret, buf = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ret:
        return None
    return buf.tobytes()
