"""Reusable face descriptor extraction abstractions.

This module centralizes face detection and 128-d descriptor extraction so the
verification steps and the descriptor cache can treat inference as a
stateful service. Only one strategy is active at a time: descriptors from
different models live in different embedding spaces and must never be
compared with each other.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import cv2
import numpy as np

# (top, right, bottom, left), same ordering as face_recognition
FaceBox = Tuple[int, int, int, int]


class InferenceError(RuntimeError):
    """Raised when an inference strategy cannot complete."""


@dataclass
class DetectedFace:
    descriptor: np.ndarray
    box: FaceBox
    confidence: float = 1.0

    @property
    def area(self) -> int:
        top, right, bottom, left = self.box
        return max(0, bottom - top) * max(0, right - left)


def as_descriptor(values: Any) -> np.ndarray:
    return np.asarray(values, dtype="float32").ravel()


class EncoderStrategy:
    """Protocol-ish base class for duck-typed strategies."""

    name: str = "strategy"
    reads_expressions: bool = False

    def warmup(self, force: bool = False) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def detect_all(self, rgb: np.ndarray) -> List[DetectedFace]:  # pragma: no cover - interface
        raise NotImplementedError

    def detect_single(self, rgb: np.ndarray) -> Optional[DetectedFace]:
        faces = self.detect_all(rgb)
        if not faces:
            return None
        return max(faces, key=lambda face: face.area)

    def smile_score(self, rgb: np.ndarray) -> Optional[float]:
        raise InferenceError(f"Strategy {self.name} cannot read facial expressions")

    def is_ready(self) -> bool:
        return True


class FaceRecognitionStrategy(EncoderStrategy):
    """dlib ResNet descriptors through the ``face_recognition`` package."""

    name = "face_recognition"

    def __init__(
        self,
        *,
        face_recognition_module: Any,
        num_jitters: int = 1,
        detection_model: str = "hog",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._fr = face_recognition_module
        self._num_jitters = num_jitters
        self._detection_model = detection_model
        self._logger = logger or logging.getLogger(__name__)

    def warmup(self, force: bool = False) -> None:
        if self._fr is None:
            raise InferenceError("face_recognition dependency is missing")

    def detect_all(self, rgb: np.ndarray) -> List[DetectedFace]:
        self.warmup()
        try:
            locations = self._fr.face_locations(rgb, model=self._detection_model)
            if not locations:
                return []
            encodings = self._fr.face_encodings(
                rgb, known_face_locations=locations, num_jitters=self._num_jitters
            )
        except Exception as exc:
            raise InferenceError(f"face_recognition failed to encode: {exc}") from exc
        return [
            DetectedFace(descriptor=as_descriptor(encoding), box=tuple(location))
            for location, encoding in zip(locations, encodings)
        ]

    def detect_single(self, rgb: np.ndarray) -> Optional[DetectedFace]:
        self.warmup()
        try:
            locations = self._fr.face_locations(rgb, model=self._detection_model)
            if not locations:
                return None
            largest = max(locations, key=lambda box: (box[2] - box[0]) * (box[1] - box[3]))
            encodings = self._fr.face_encodings(
                rgb, known_face_locations=[largest], num_jitters=self._num_jitters
            )
        except Exception as exc:
            raise InferenceError(f"face_recognition failed to encode: {exc}") from exc
        if not encodings:
            return None
        return DetectedFace(descriptor=as_descriptor(encodings[0]), box=tuple(largest))

    def is_ready(self) -> bool:
        return self._fr is not None


class DeepFaceStrategy(EncoderStrategy):
    """DeepFace ``represent`` descriptors, L2-normalized so distances stay in [0, 2]."""

    reads_expressions = True

    def __init__(
        self,
        *,
        deepface_module: Any,
        model_name: str = "Facenet",
        detector_backend: str = "opencv",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._deepface = deepface_module
        self._model_name = model_name
        self._detector_backend = detector_backend
        self._logger = logger or logging.getLogger(__name__)
        self._warm = False
        self._lock = threading.RLock()
        self.name = f"deepface:{model_name}"

    def warmup(self, force: bool = False) -> None:
        if self._deepface is None:
            raise InferenceError("DeepFace dependency is missing")
        with self._lock:
            if self._warm and not force:
                return
            try:
                self._deepface.build_model(self._model_name)
            except Exception as exc:  # pragma: no cover - depends on model download
                raise InferenceError(f"DeepFace model {self._model_name} unavailable: {exc}") from exc
            self._warm = True
            self._logger.info("[Inference] DeepFace model %s ready", self._model_name)

    def detect_all(self, rgb: np.ndarray) -> List[DetectedFace]:
        self.warmup()
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        try:
            representations = self._deepface.represent(
                img_path=bgr,
                model_name=self._model_name,
                detector_backend=self._detector_backend,
                enforce_detection=False,
            )
        except Exception as exc:
            raise InferenceError(f"DeepFace failed to create embedding: {exc}") from exc

        faces: List[DetectedFace] = []
        for rep in representations or []:
            confidence = float(rep.get("face_confidence") or 0.0)
            if confidence <= 0.0:
                # enforce_detection=False embeds the whole frame when no face is found
                continue
            area = rep.get("facial_area") or {}
            x, y = int(area.get("x", 0)), int(area.get("y", 0))
            w, h = int(area.get("w", 0)), int(area.get("h", 0))
            vector = as_descriptor(rep["embedding"])
            norm = float(np.linalg.norm(vector))
            if norm > 0:
                vector = vector / norm
            faces.append(DetectedFace(descriptor=vector, box=(y, x + w, y + h, x), confidence=confidence))
        return faces

    def smile_score(self, rgb: np.ndarray) -> Optional[float]:
        bgr = cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
        try:
            analysis = self._deepface.analyze(
                img_path=bgr,
                actions=["emotion"],
                detector_backend=self._detector_backend,
                enforce_detection=False,
            )
        except Exception as exc:
            raise InferenceError(f"DeepFace failed to analyze expression: {exc}") from exc
        if not analysis:
            return None
        first = analysis[0] if isinstance(analysis, list) else analysis
        if float(first.get("face_confidence") or 0.0) <= 0.0:
            return None
        happy = (first.get("emotion") or {}).get("happy")
        return None if happy is None else float(happy) / 100.0

    def is_ready(self) -> bool:
        return self._deepface is not None


class InferenceEngine:
    """High-level entry point bound to the first ready strategy."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._strategies: List[EncoderStrategy] = []
        self._expression_strategy: Optional[EncoderStrategy] = None
        self._lock = threading.RLock()

    def add_strategy(self, strategy: Optional[EncoderStrategy]) -> None:
        if strategy is None:
            return
        self._logger.info("[Inference] Added strategy %s", strategy.name)
        self._strategies.append(strategy)

    def set_expression_strategy(self, strategy: Optional[EncoderStrategy]) -> None:
        self._expression_strategy = strategy

    def has_strategies(self) -> bool:
        return bool(self._strategies)

    def active(self) -> EncoderStrategy:
        with self._lock:
            for strategy in self._strategies:
                if strategy.is_ready():
                    return strategy
        raise InferenceError("No face descriptor strategy is available")

    @property
    def model_name(self) -> str:
        return self.active().name

    def ready(self) -> bool:
        return any(strategy.is_ready() for strategy in self._strategies)

    def warmup(self, force: bool = False) -> None:
        try:
            self.active().warmup(force=force)
        except InferenceError as exc:
            self._logger.warning("[Inference] Warmup error: %s", exc)

    def detect_single(self, rgb: np.ndarray) -> Optional[DetectedFace]:
        return self.active().detect_single(rgb)

    def detect_all(self, rgb: np.ndarray) -> List[DetectedFace]:
        return self.active().detect_all(rgb)

    def _expression_reader(self) -> EncoderStrategy:
        if self._expression_strategy is not None and self._expression_strategy.is_ready():
            return self._expression_strategy
        return self.active()

    def reads_expressions(self) -> bool:
        try:
            return self._expression_reader().reads_expressions
        except InferenceError:
            return False

    def smile_score(self, rgb: np.ndarray) -> Optional[float]:
        return self._expression_reader().smile_score(rgb)


def build_default_engine(
    *,
    preferred: str = "face_recognition",
    deepface_model: str = "Facenet",
    logger: Optional[logging.Logger] = None,
) -> InferenceEngine:
    """Assemble the engine from whichever face libraries are installed."""
    log = logger or logging.getLogger(__name__)
    engine = InferenceEngine(logger=log)

    try:
        import face_recognition
    except ImportError:
        face_recognition = None
        log.warning("[Inference] ⚠️ face_recognition không khả dụng trong môi trường hiện tại.")

    try:
        from deepface import DeepFace
    except ImportError:
        DeepFace = None
        log.warning("[Inference] ⚠️ DeepFace không khả dụng trong môi trường hiện tại.")

    fr_strategy = (
        FaceRecognitionStrategy(face_recognition_module=face_recognition, logger=log)
        if face_recognition is not None
        else None
    )
    df_strategy = (
        DeepFaceStrategy(deepface_module=DeepFace, model_name=deepface_model, logger=log)
        if DeepFace is not None
        else None
    )

    ordered = [df_strategy, fr_strategy] if preferred.startswith("deepface") else [fr_strategy, df_strategy]
    for strategy in ordered:
        engine.add_strategy(strategy)
    engine.set_expression_strategy(df_strategy)

    if not engine.has_strategies():
        log.error("[Inference] ❌ Không có thư viện nhận diện khuôn mặt nào được cài đặt")
    return engine


__all__ = [
    "DetectedFace",
    "DeepFaceStrategy",
    "EncoderStrategy",
    "FaceRecognitionStrategy",
    "InferenceEngine",
    "InferenceError",
    "as_descriptor",
    "build_default_engine",
]
