"""Classroom presence confirmation: rear camera or staff-issued code."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from core.vision.camera_manager import CameraError
from core.vision.state import CameraLease

from .codes import RotatingCodeRegistry
from .face_matcher import ClassroomScore, ClassroomScorer

logger = logging.getLogger(__name__)

PATH_CAMERA = "camera"
PATH_CODE = "code"

MSG_CAMERA_NOT_LIVE = "Camera is not active. Start the camera first."
MSG_CAMERA_CONFIRMED = "Classroom presence confirmed."
MSG_NO_CLASSROOM_PHOTOS = (
    "Classroom photos for this department haven't been analyzed. "
    "Use the classroom code instead."
)


@dataclass(frozen=True)
class PresenceResult:
    success: bool
    message: str
    path: str
    score: Optional[ClassroomScore] = None


class PresenceConfirmer:
    """Two mutually exclusive paths; the camera is released whenever either path ends."""

    def __init__(
        self,
        *,
        department_id: str,
        user_id: str,
        lease: CameraLease,
        codes: RotatingCodeRegistry,
        scorer: Optional[ClassroomScorer] = None,
        classroom_references: Optional[Callable[[], List[np.ndarray]]] = None,
        user_reference: Optional[Callable[[], Optional[np.ndarray]]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.department_id = department_id
        self.user_id = user_id
        self._lease = lease
        self._codes = codes
        self._scorer = scorer
        self._classroom_references = classroom_references or (lambda: [])
        self._user_reference = user_reference or (lambda: None)
        self._logger = logger or logging.getLogger(__name__)
        self.path: Optional[str] = None

    @property
    def camera_live(self) -> bool:
        return self._lease.is_live()

    def open_camera(self) -> None:
        self.path = PATH_CAMERA
        self._lease.acquire()
        self._logger.info("[Presence] Rear camera live for %s", self.department_id)

    def confirm_camera(self) -> PresenceResult:
        if not self._lease.is_live():
            return PresenceResult(False, MSG_CAMERA_NOT_LIVE, PATH_CAMERA)
        try:
            if self._scorer is None:
                return PresenceResult(True, MSG_CAMERA_CONFIRMED, PATH_CAMERA)
            return self._score_frame()
        finally:
            self._lease.release()

    def _score_frame(self) -> PresenceResult:
        references = self._classroom_references()
        if not references:
            return PresenceResult(False, MSG_NO_CLASSROOM_PHOTOS, PATH_CAMERA)
        try:
            frame = self._lease.next_frame()
        except CameraError as exc:
            return PresenceResult(False, f"Could not capture the classroom: {exc}", PATH_CAMERA)
        score = self._scorer.score(frame.rgb, references, self._user_reference())
        percent = round(score.overall * 100)
        self._logger.info(
            "[Presence] Classroom score %.3f (best=%.3f, user_present=%s)",
            score.overall,
            score.best,
            score.user_present,
        )
        if score.passed:
            return PresenceResult(True, f"Classroom verified. Score: {percent}%", PATH_CAMERA, score)
        return PresenceResult(False, f"Could not verify classroom. Please try again. Score: {percent}%", PATH_CAMERA, score)

    def submit_code(self, code: str) -> PresenceResult:
        # switching to the code path gives the camera back
        self._lease.release()
        self.path = PATH_CODE
        result = self._codes.validate_classroom_code(self.department_id, code, self.user_id)
        return PresenceResult(result.success, result.message, PATH_CODE)

    def release(self) -> None:
        self._lease.release()


__all__ = ["PATH_CAMERA", "PATH_CODE", "PresenceConfirmer", "PresenceResult"]
