"""Verification steps behind one start/run/retry/cancel interface.

Every step converts device, network and model failures into its own
``failed`` state with a human-readable message; nothing raised by a
collaborator escapes ``run``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import numpy as np

from core.vision.camera_manager import CameraError
from core.vision.state import CameraLease

from .codes import RotatingCodeRegistry, decode_qr_from_frame
from .face_matcher import SCAN_FAILED, SCAN_SCANNING, SCAN_VERIFIED, FaceScanTask
from .geo import (
    GeoFence,
    GeoVerifier,
    LocationError,
    LocationProvider,
    bearing,
    compass_point,
    describe_location_error,
)
from .presence import PresenceConfirmer

logger = logging.getLogger(__name__)

MSG_GEO_SKIPPED = "GPS location for this department is not set. Skipping."
MSG_FACE_BLOCKED = (
    "Your profile photo hasn't been analyzed. "
    "Refresh your profile cache and try again."
)


class StepKind(str, Enum):
    GEO = "geo"
    PRESENCE = "presence"
    FACE = "face"
    CODE = "code"


class StepStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"


def camera_failure_message(exc: Exception) -> str:
    return f"Camera access failed: {exc}. Please grant camera permission and try again."


@dataclass
class StepOutcome:
    kind: StepKind
    status: StepStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


class VerificationStep:
    """Base step. Subclasses implement ``_on_start``, ``_run`` and ``_release``."""

    kind: StepKind

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self.status = StepStatus.PENDING
        self.message = ""
        self.details: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Hooks
    def _on_start(self) -> None:
        pass

    def _run(self, **inputs: Any) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def _release(self) -> None:
        pass

    # ------------------------------------------------------------------
    # State helpers
    def _set(self, status: StepStatus, message: str) -> None:
        self.status = status
        self.message = message

    def succeed(self, message: str) -> None:
        self._release()
        self._set(StepStatus.SUCCESS, message)

    def fail(self, message: str) -> None:
        self._release()
        self._set(StepStatus.FAILED, message)

    def block(self, message: str) -> None:
        self._release()
        self._set(StepStatus.BLOCKED, message)

    # ------------------------------------------------------------------
    # Public interface
    def start(self) -> StepStatus:
        self._set(StepStatus.ACTIVE, "")
        self.details = {}
        try:
            self._on_start()
        except Exception as exc:
            self._logger.error("[Verification] %s step failed to start: %s", self.kind.value, exc, exc_info=True)
            self.fail(f"Something went wrong: {exc}")
        return self.status

    def run(self, **inputs: Any) -> StepStatus:
        if self.status != StepStatus.ACTIVE:
            return self.status
        try:
            self._run(**inputs)
        except Exception as exc:
            self._logger.error("[Verification] %s step error: %s", self.kind.value, exc, exc_info=True)
            self.fail(f"Something went wrong: {exc}")
        return self.status

    def retry(self) -> StepStatus:
        self._release()
        return self.start()

    def cancel(self) -> None:
        self._release()

    def outcome(self) -> StepOutcome:
        return StepOutcome(self.kind, self.status, self.message, dict(self.details))


# ----------------------------------------------------------------------
# GPS
# ----------------------------------------------------------------------
class GeoStep(VerificationStep):
    kind = StepKind.GEO

    def __init__(
        self,
        *,
        fence: Optional[GeoFence],
        provider: LocationProvider,
        verifier: Optional[GeoVerifier] = None,
        timeout: float = 20.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger=logger)
        self._fence = fence
        self._provider = provider
        self._verifier = verifier or GeoVerifier()
        self._timeout = timeout

    def _on_start(self) -> None:
        if self._fence is None:
            self.details = {"skipped": True}
            self._set(StepStatus.SUCCESS, MSG_GEO_SKIPPED)
            return
        self.message = "Getting your location..."

    def _run(self, **inputs: Any) -> None:
        try:
            position = self._provider.current_position(self._timeout)
        except LocationError as exc:
            self.details = {"error": exc.kind}
            self.fail(describe_location_error(exc))
            return

        result = self._verifier.verify(position, self._fence)
        self._logger.info(
            "[Geo] %.1fm from fence center (radius %.0fm)", result.distance_meters, self._fence.radius_meters
        )
        self.details = {
            "distance_meters": round(result.distance_meters, 1),
            "within_range": result.within_range,
            "position": {"lat": position.lat, "lng": position.lng},
        }
        if result.within_range:
            self.succeed("Location verified!")
            return

        heading = bearing(position, self._fence.center)
        self.details["bearing"] = round(heading, 1)
        self.fail(
            f"You are {result.distance_meters:.0f}m away (head {compass_point(heading)}). "
            "Move into the designated zone."
        )


# ----------------------------------------------------------------------
# Classroom presence
# ----------------------------------------------------------------------
class PresenceStep(VerificationStep):
    kind = StepKind.PRESENCE

    def __init__(self, *, confirmer: PresenceConfirmer, logger: Optional[logging.Logger] = None) -> None:
        super().__init__(logger=logger)
        self._confirmer = confirmer

    def _on_start(self) -> None:
        self.message = "Confirm you are in the classroom using your camera or a code from your teacher."

    def _run(self, *, action: Optional[str] = None, code: Optional[str] = None, **_: Any) -> None:
        if code is not None:
            result = self._confirmer.submit_code(code)
        elif action == "camera":
            try:
                self._confirmer.open_camera()
            except CameraError as exc:
                self.fail(camera_failure_message(exc))
                return
            self.details = {"path": "camera", "camera_live": True}
            self.message = "Point your camera at the classroom, then confirm."
            return
        elif action == "confirm":
            result = self._confirmer.confirm_camera()
        else:
            self.message = "Choose the camera or enter the classroom code."
            return

        self.details = {"path": result.path, "camera_live": False}
        if result.score is not None:
            self.details["score"] = round(result.score.overall, 3)
        if result.success:
            self.succeed(result.message)
        else:
            self.fail(result.message)

    def _release(self) -> None:
        self._confirmer.release()


# ----------------------------------------------------------------------
# Rotating QR code
# ----------------------------------------------------------------------
class QrCodeStep(VerificationStep):
    kind = StepKind.CODE

    def __init__(
        self,
        *,
        department_id: str,
        user_id: str,
        codes: RotatingCodeRegistry,
        lease: Optional[CameraLease] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger=logger)
        self._department_id = department_id
        self._user_id = user_id
        self._codes = codes
        self._lease = lease

    def _on_start(self) -> None:
        self.message = "Point your camera at the QR code."

    def _run(
        self,
        *,
        token: Optional[str] = None,
        image: Optional[np.ndarray] = None,
        action: Optional[str] = None,
        **_: Any,
    ) -> None:
        if token is None and image is None and action == "scan":
            if self._lease is None:
                self.fail("No camera is available for scanning.")
                return
            try:
                self._lease.acquire()
                image = self._lease.next_frame().bgr
            except CameraError as exc:
                self.fail(camera_failure_message(exc))
                return

        if token is None and image is not None:
            token = decode_qr_from_frame(image)
            if token is None:
                self.message = "No QR code found. Point your camera at the QR code."
                return

        if not token:
            self.message = "Point your camera at the QR code."
            return

        self._release()
        self.message = "Validating token..."
        result = self._codes.validate_qr_token(self._department_id, token, self._user_id)
        if result.success:
            self.succeed(result.message)
        else:
            self.fail(result.message)

    def _release(self) -> None:
        if self._lease is not None:
            self._lease.release()


# ----------------------------------------------------------------------
# Face
# ----------------------------------------------------------------------
class FaceStep(VerificationStep):
    kind = StepKind.FACE

    def __init__(
        self,
        *,
        reference: Callable[[], Optional[np.ndarray]],
        task_factory: Callable[[np.ndarray], FaceScanTask],
        logger: Optional[logging.Logger] = None,
    ) -> None:
        super().__init__(logger=logger)
        self._reference = reference
        self._task_factory = task_factory
        self._task: Optional[FaceScanTask] = None
        self.evidence: Optional[bytes] = None

    @property
    def similarity(self) -> float:
        return self._task.similarity if self._task is not None else 0.0

    def _on_start(self) -> None:
        self.evidence = None
        reference = self._reference()
        if reference is None:
            self.block(MSG_FACE_BLOCKED)
            return
        self._task = self._task_factory(reference)
        try:
            self._task.start()
        except CameraError as exc:
            self.fail(camera_failure_message(exc))
            return
        self.message = self._task.message
        self.details = {"camera_live": True}

    def _run(self, *, stop_event: Optional[threading.Event] = None, **_: Any) -> None:
        if self._task is None:
            self.fail("Face scan is not running.")
            return
        if stop_event is not None:
            state = self._task.run(stop_event)
        else:
            state = self._task.tick()

        self.details = {
            "similarity": round(self._task.similarity, 3),
            "camera_live": state == SCAN_SCANNING,
        }
        if state == SCAN_VERIFIED:
            self.evidence = self._task.evidence
            self.succeed(self._task.message)
        elif state == SCAN_FAILED:
            self.fail(self._task.message)
        elif state == SCAN_SCANNING:
            self.message = self._task.message
        else:
            self.fail(self._task.message or "Face scan cancelled.")

    def discard_evidence(self) -> None:
        """Drop the captured frame once the recorder has it."""
        self.evidence = None
        if self._task is not None:
            self._task.evidence = None

    def _release(self) -> None:
        if self._task is not None:
            self._task.cancel()


__all__ = [
    "FaceStep",
    "GeoStep",
    "MSG_FACE_BLOCKED",
    "MSG_GEO_SKIPPED",
    "PresenceStep",
    "QrCodeStep",
    "StepKind",
    "StepOutcome",
    "StepStatus",
    "VerificationStep",
    "camera_failure_message",
]
