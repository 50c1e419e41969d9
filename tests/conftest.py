from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
import pytest

import config
from core.attendance.recorder import InMemoryAttendanceRecorder
from core.inference.engine import DetectedFace, InferenceError
from core.verification.codes import RotatingCodeRegistry
from core.verification.descriptor_store import DescriptorStore
from core.verification.directory import Directory
from core.verification.orchestrator import PipelineSettings, VerificationOrchestrator
from services.descriptor_builder import DescriptorBuilder, ImageFetchError

RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
BLACK = (0, 0, 0)


def solid_rgb(color, size=32) -> np.ndarray:
    img = np.zeros((size, size, 3), dtype=np.uint8)
    img[:, :] = color
    return img


def solid_bgr(color, size=32) -> np.ndarray:
    return solid_rgb(color, size)[:, :, ::-1].copy()


class ColorEngine:
    """Treats a frame's mean colour as its face descriptor; black frames have no face."""

    def __init__(self, name: str = "fake-encoder"):
        self.name = name
        self.available = True
        self.smile = 1.0
        self.fail_with: Optional[Exception] = None
        self.calls = 0

    @property
    def model_name(self) -> str:
        if not self.available:
            raise InferenceError("No face descriptor strategy is available")
        return self.name

    def ready(self) -> bool:
        return self.available

    def reads_expressions(self) -> bool:
        return True

    def _descriptor(self, rgb: np.ndarray) -> Optional[np.ndarray]:
        mean = np.asarray(rgb, dtype="float32").reshape(-1, 3).mean(axis=0) / 255.0
        if float(mean.sum()) < 0.05:
            return None
        return mean.astype("float32")

    def detect_single(self, rgb):
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        descriptor = self._descriptor(rgb)
        if descriptor is None:
            return None
        return DetectedFace(descriptor=descriptor, box=(0, rgb.shape[1], rgb.shape[0], 0))

    def detect_all(self, rgb) -> List[DetectedFace]:
        face = self.detect_single(rgb)
        return [face] if face is not None else []

    def smile_score(self, rgb):
        return self.smile


class PhotoLibrary:
    """URL -> image lookup standing in for HTTP fetches."""

    def __init__(self, photos: Optional[Dict[str, np.ndarray]] = None):
        self.photos = dict(photos or {})
        self.fetched: List[str] = []

    def __call__(self, source: str) -> np.ndarray:
        self.fetched.append(source)
        image = self.photos.get(source)
        if image is None:
            raise ImageFetchError(f"404 for {source}")
        return image


class FixedClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


DIRECTORY_DATA = {
    "departments": [
        {
            "id": "cs",
            "name": "Computer Science",
            "location": {"lat": 10.7769, "lng": 106.7009},
            "radius": 100,
            "classroomPhotoUrls": [
                {"url": "https://img/classroom-1.jpg", "embedded": True},
                {"url": "https://img/classroom-2.jpg", "embedded": False},
            ],
            "studentsInClassroomPhotoUrls": [
                {"url": "https://img/students-1.jpg", "embedded": True},
            ],
        },
        {
            "id": "math",
            "name": "Mathematics",
            "modes": {
                "mode1": {"enabled": True},
                "mode2": {"enabled": False},
            },
        },
        {
            "id": "bio",
            "name": "Biology",
            "location": {"lat": 10.7769, "lng": 106.7009},
            "modes": {
                "mode1": {"enabled": True, "startTime": "08:00", "endTime": "10:00"},
                "mode2": {"enabled": True},
            },
        },
    ],
    "users": [
        {"uid": "u1", "name": "Lan", "profileImage": "https://img/u1.jpg"},
        {"uid": "u2", "name": "Minh"},
        {"uid": "u3", "name": "Hoa", "profileImage": "https://img/u3-group.jpg"},
    ],
}


@pytest.fixture
def directory():
    return Directory.from_dict(DIRECTORY_DATA)


@pytest.fixture
def engine():
    return ColorEngine()


@pytest.fixture
def photos():
    return PhotoLibrary(
        {
            "https://img/u1.jpg": solid_rgb(RED),
            "https://img/u3-group.jpg": solid_rgb(BLACK),
            "https://img/classroom-1.jpg": solid_rgb(GREEN),
            "https://img/students-1.jpg": solid_rgb(RED),
        }
    )


@pytest.fixture
def store(engine, photos):
    return DescriptorStore(DescriptorBuilder(engine, fetch=photos))


@pytest.fixture
def code_clock():
    return FixedClock()


@pytest.fixture
def codes(code_clock):
    return RotatingCodeRegistry(classroom_ttl=120, qr_ttl=30, clock=code_clock)


@pytest.fixture
def recorder():
    return InMemoryAttendanceRecorder()


@pytest.fixture
def settings():
    return PipelineSettings(geo_timeout=0.05, scan_interval=0.01)


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def orchestrator(directory, store, codes, engine, recorder, settings, now):
    return VerificationOrchestrator(
        directory=directory,
        store=store,
        codes=codes,
        engine=engine,
        recorder=recorder,
        settings=settings,
        clock=lambda: now,
    )


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    monkeypatch.setattr(config, "LOG_DIR", path)
    return path
