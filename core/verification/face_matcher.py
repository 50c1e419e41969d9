"""Live face matching against a cached reference descriptor.

``FaceScanTask`` is the polling loop: each tick samples one frame from a
front-camera lease, extracts at most one face descriptor and compares it to
the reference. The task and its camera share one lifetime: the first
verified frame, a cancel or a failure stops the loop and releases the camera
in the same call.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np

from core.inference.engine import InferenceEngine, InferenceError
from core.vision.camera_manager import CameraError
from core.vision.pipeline import encode_jpeg
from core.vision.state import CameraLease

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.55

MSG_NO_FACE = "No face detected. Please center your face."
MSG_KEEP_CENTERED = "Keep your face centered"
MSG_VERIFIED = "Face verified!"
MSG_SMILE = "Face matched. Please smile to confirm you're live."
MSG_TIMED_OUT = "Face not verified in time. Please try again."

SCAN_IDLE = "idle"
SCAN_SCANNING = "scanning"
SCAN_VERIFIED = "verified"
SCAN_CANCELLED = "cancelled"
SCAN_FAILED = "failed"


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype="float32").ravel()
    b = np.asarray(b, dtype="float32").ravel()
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


def similarity_from_distance(distance: float) -> float:
    return max(0.0, min(1.0, 1.0 - distance))


def compare(probe: np.ndarray, reference: np.ndarray) -> float:
    """Similarity in [0, 1] computed as ``1 - euclidean_distance``."""
    return similarity_from_distance(euclidean_distance(probe, reference))


def is_match(distance: float, threshold: float = DEFAULT_SIMILARITY_THRESHOLD) -> bool:
    return distance < threshold


@dataclass(frozen=True)
class MatchResult:
    distance: float
    similarity: float
    verified: bool


class FaceMatcher:
    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.threshold = threshold

    def match(self, probe: np.ndarray, reference: np.ndarray) -> MatchResult:
        distance = euclidean_distance(probe, reference)
        return MatchResult(
            distance=distance,
            similarity=similarity_from_distance(distance),
            verified=is_match(distance, self.threshold),
        )

    def best_distance(self, probe: np.ndarray, references: Sequence[np.ndarray]) -> Optional[float]:
        if not references:
            return None
        return min(euclidean_distance(probe, ref) for ref in references)


class FaceScanTask:
    """Cooperative face scan paired with a camera lease."""

    def __init__(
        self,
        *,
        lease: CameraLease,
        reference: np.ndarray,
        engine: InferenceEngine,
        matcher: Optional[FaceMatcher] = None,
        interval: float = 0.5,
        liveness_required: bool = False,
        smile_threshold: float = 0.8,
        timeout: float = 0.0,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._lease = lease
        self._reference = np.asarray(reference, dtype="float32")
        self._engine = engine
        self._matcher = matcher or FaceMatcher()
        self._interval = interval
        self._liveness_required = liveness_required
        self._smile_threshold = smile_threshold
        self._timeout = timeout
        self._clock = clock or time.monotonic
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()

        self.state = SCAN_IDLE
        self.message = ""
        self.similarity = 0.0
        self.best_similarity = 0.0
        self.evidence: Optional[bytes] = None
        self.error: Optional[str] = None
        self._started_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Internal helpers
    def _finish_locked(self, state: str, message: str) -> None:
        self.state = state
        self.message = message
        self._lease.release()

    # ------------------------------------------------------------------
    # Public API
    @property
    def scanning(self) -> bool:
        return self.state == SCAN_SCANNING

    @property
    def verified(self) -> bool:
        return self.state == SCAN_VERIFIED

    def start(self) -> None:
        """Acquire the camera; camera errors propagate after the lease is released."""
        with self._lock:
            if self.state == SCAN_SCANNING:
                return
            try:
                self._lease.acquire()
            except CameraError:
                self._lease.release()
                raise
            self.state = SCAN_SCANNING
            self.message = "Center your face in the frame."
            self._started_at = self._clock()

    def tick(self) -> str:
        with self._lock:
            if self.state != SCAN_SCANNING:
                return self.state

            if self._timeout and self._clock() - (self._started_at or 0.0) >= self._timeout:
                self._logger.info("[FaceMatcher] Scan timed out after %.1fs", self._timeout)
                self._finish_locked(SCAN_FAILED, MSG_TIMED_OUT)
                return self.state

            try:
                frame = self._lease.next_frame()
                face = self._engine.detect_single(frame.rgb)
                if face is None:
                    self.similarity = 0.0
                    self.message = MSG_NO_FACE
                    return self.state

                result = self._matcher.match(face.descriptor, self._reference)
                self.similarity = result.similarity
                self.best_similarity = max(self.best_similarity, result.similarity)
                if not result.verified:
                    self.message = MSG_KEEP_CENTERED
                    return self.state

                if self._liveness_required:
                    score = self._engine.smile_score(frame.rgb)
                    if score is None or score <= self._smile_threshold:
                        self.message = MSG_SMILE
                        return self.state
            except (CameraError, InferenceError) as exc:
                self.error = str(exc)
                self._logger.warning("[FaceMatcher] Scan aborted: %s", exc)
                self._finish_locked(SCAN_FAILED, f"Face scan failed: {exc}")
                return self.state

            self.evidence = encode_jpeg(frame.bgr)
            self._logger.info("[FaceMatcher] ✅ Verified (similarity=%.3f)", self.similarity)
            self._finish_locked(SCAN_VERIFIED, MSG_VERIFIED)
            return self.state

    def run(self, stop_event: Optional[threading.Event] = None) -> str:
        """Drive ticks every ``interval`` seconds until verified, failed or stopped."""
        stop_event = stop_event or threading.Event()
        self.start()
        while True:
            state = self.tick()
            if state != SCAN_SCANNING:
                return state
            if stop_event.wait(self._interval):
                self.cancel()
                return self.state

    def cancel(self) -> None:
        with self._lock:
            if self.state == SCAN_SCANNING:
                self.state = SCAN_CANCELLED
                self.message = "Face scan cancelled."
            self._lease.release()


# ----------------------------------------------------------------------
# Classroom scoring
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ClassroomScore:
    best: float
    user_present: bool
    overall: float
    passed: bool
    faces: int


class ClassroomScorer:
    """Scores a classroom frame against cached classroom descriptors.

    ``overall = (best + 1) / 2`` when the user's own face is in the frame,
    otherwise ``best / 2``; the frame passes when ``overall`` exceeds the
    match threshold.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        match_threshold: float = 0.5,
        user_threshold: float = 0.45,
    ) -> None:
        self._engine = engine
        self._matcher = FaceMatcher()
        self.match_threshold = match_threshold
        self.user_threshold = user_threshold

    def score(
        self,
        rgb: np.ndarray,
        classroom: List[np.ndarray],
        user_reference: Optional[np.ndarray] = None,
    ) -> ClassroomScore:
        faces = self._engine.detect_all(rgb)
        best = 0.0
        user_present = False
        for face in faces:
            distance = self._matcher.best_distance(face.descriptor, classroom)
            if distance is not None:
                best = max(best, similarity_from_distance(distance))
            if user_reference is not None:
                if compare(face.descriptor, user_reference) > self.user_threshold:
                    user_present = True

        overall = (best + 1) / 2 if user_present else best / 2
        return ClassroomScore(
            best=best,
            user_present=user_present,
            overall=overall,
            passed=overall > self.match_threshold,
            faces=len(faces),
        )


__all__ = [
    "ClassroomScore",
    "ClassroomScorer",
    "FaceMatcher",
    "FaceScanTask",
    "MSG_KEEP_CENTERED",
    "MSG_NO_FACE",
    "MSG_VERIFIED",
    "MatchResult",
    "SCAN_CANCELLED",
    "SCAN_FAILED",
    "SCAN_SCANNING",
    "SCAN_VERIFIED",
    "compare",
    "euclidean_distance",
    "is_match",
    "similarity_from_distance",
]
