"""Step-ordered verification state machine.

Mode 1 runs GPS -> classroom presence -> face; mode 2 runs rotating QR code
-> face. A step only starts once the previous one reports ``success``; a
failed step stays current until the user retries it. Completion hands the
verified result to the attendance recorder; abandoning releases every
device handle and writes nothing.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from core.attendance.recorder import AttendanceRecorder, AttendanceSubmission, RecordingResult
from core.inference.engine import InferenceEngine, InferenceError
from core.vision.camera_manager import FACING_ENVIRONMENT, FACING_USER, CameraFactory
from core.vision.state import CameraLease
from logging_config import verification_logger

from .codes import RotatingCodeRegistry
from .descriptor_store import DescriptorStore
from .directory import Department, Directory, UserProfile
from .face_matcher import ClassroomScorer, FaceMatcher, FaceScanTask
from .geo import GeoVerifier, LocationProvider
from .presence import PresenceConfirmer
from .steps import (
    FaceStep,
    GeoStep,
    PresenceStep,
    QrCodeStep,
    StepKind,
    StepStatus,
    VerificationStep,
)

logger = logging.getLogger(__name__)

MODE_GPS_CLASSROOM_FACE = 1
MODE_QR_FACE = 2

MODE_STEPS = {
    MODE_GPS_CLASSROOM_FACE: (StepKind.GEO, StepKind.PRESENCE, StepKind.FACE),
    MODE_QR_FACE: (StepKind.CODE, StepKind.FACE),
}

MSG_RECORDING_FAILED = "Could not save your attendance record. Please try again."


class VerificationError(Exception):
    """Base error for requests the state machine refuses."""


class StepOrderError(VerificationError):
    """Raised when an action targets a step that is not the current one."""


class ModeUnavailableError(VerificationError):
    """Raised when a mode is disabled or outside its schedule."""


class SessionNotFoundError(VerificationError):
    """Raised for unknown or already-discarded session ids."""


class SessionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


@dataclass
class PipelineSettings:
    geo_timeout: float = 20.0
    similarity_threshold: float = 0.55
    scan_interval: float = 0.5
    scan_timeout: float = 0.0
    liveness_required: bool = False
    smile_threshold: float = 0.8
    classroom_scoring: bool = False
    classroom_match_threshold: float = 0.5
    user_in_classroom_threshold: float = 0.45
    session_idle_timeout: float = 600.0
    finished_history: int = 50

    @classmethod
    def from_config(cls, config: Any) -> "PipelineSettings":
        return cls(
            geo_timeout=config.GEO_TIMEOUT_SECONDS,
            similarity_threshold=config.SIMILARITY_THRESHOLD,
            scan_interval=config.FACE_SCAN_INTERVAL,
            scan_timeout=config.FACE_SCAN_TIMEOUT,
            liveness_required=config.FACE_LIVENESS_REQUIRED,
            smile_threshold=config.SMILE_THRESHOLD,
            classroom_scoring=config.PRESENCE_CLASSROOM_SCORING,
            classroom_match_threshold=config.CLASSROOM_MATCH_THRESHOLD,
            user_in_classroom_threshold=config.USER_IN_CLASSROOM_THRESHOLD,
            session_idle_timeout=config.SESSION_IDLE_TIMEOUT,
            finished_history=config.FINISHED_SESSION_HISTORY,
        )


@dataclass
class VerificationSession:
    session_id: str
    mode: int
    department_id: str
    user_id: str
    steps: List[VerificationStep]
    created_at: datetime
    camera_factory: CameraFactory
    location_provider: LocationProvider
    current_step_index: int = 0
    state: SessionState = SessionState.PENDING
    result: Optional[RecordingResult] = None
    last_activity: Optional[datetime] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def current_step(self) -> VerificationStep:
        return self.steps[self.current_step_index]

    @property
    def step_status(self) -> StepStatus:
        return self.current_step.status

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "session_id": self.session_id,
                "mode": self.mode,
                "department_id": self.department_id,
                "user_id": self.user_id,
                "state": self.state.value,
                "current_step_index": self.current_step_index,
                "current_step": self.current_step.kind.value,
                "step_status": self.step_status.value,
                "message": self.current_step.message,
                "steps": [step.outcome().to_dict() for step in self.steps],
                "created_at": self.created_at.isoformat(),
                "result": self.result.to_dict() if self.result else None,
            }


class VerificationOrchestrator:
    """Owns live sessions and drives their steps in order."""

    def __init__(
        self,
        *,
        directory: Directory,
        store: DescriptorStore,
        codes: RotatingCodeRegistry,
        engine: InferenceEngine,
        recorder: AttendanceRecorder,
        settings: Optional[PipelineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        on_discard: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._directory = directory
        self._store = store
        self._codes = codes
        self._engine = engine
        self._recorder = recorder
        self._settings = settings or PipelineSettings()
        self._clock = clock or datetime.now
        self._on_discard = on_discard
        self._logger = logger or logging.getLogger(__name__)
        self._sessions: Dict[str, VerificationSession] = {}
        # completed sessions kept read-only so clients can fetch the final result
        self._finished: "OrderedDict[str, VerificationSession]" = OrderedDict()
        self._lock = threading.RLock()

        if self._settings.liveness_required and not engine.reads_expressions():
            self._logger.error(
                "[Verification] ❌ FACE_LIVENESS_REQUIRED is on but encoder %s cannot read facial expressions",
                self._engine_label(),
            )
            raise VerificationError(
                "Liveness check requires an encoder that reads facial expressions (install deepface)."
            )

    def _engine_label(self) -> str:
        try:
            return self._engine.model_name
        except InferenceError:
            return "<none>"

    # ------------------------------------------------------------------
    # Step construction
    # ------------------------------------------------------------------
    def _lease(self, session_id: str, camera_factory: CameraFactory, facing: str) -> CameraLease:
        return CameraLease(camera_factory, facing, logger=self._logger.getChild(session_id[:8]))

    def _build_steps(
        self,
        session_id: str,
        mode: int,
        department: Department,
        user: UserProfile,
        camera_factory: CameraFactory,
        location_provider: LocationProvider,
    ) -> List[VerificationStep]:
        settings = self._settings
        steps: List[VerificationStep] = []
        for kind in MODE_STEPS[mode]:
            if kind == StepKind.GEO:
                steps.append(
                    GeoStep(
                        fence=department.fence,
                        provider=location_provider,
                        verifier=GeoVerifier(),
                        timeout=settings.geo_timeout,
                    )
                )
            elif kind == StepKind.PRESENCE:
                scorer = None
                if settings.classroom_scoring:
                    scorer = ClassroomScorer(
                        self._engine,
                        match_threshold=settings.classroom_match_threshold,
                        user_threshold=settings.user_in_classroom_threshold,
                    )
                confirmer = PresenceConfirmer(
                    department_id=department.id,
                    user_id=user.uid,
                    lease=self._lease(session_id, camera_factory, FACING_ENVIRONMENT),
                    codes=self._codes,
                    scorer=scorer,
                    classroom_references=lambda: self._store.classroom_descriptors(department),
                    user_reference=lambda: self._store.profile_descriptor(user),
                )
                steps.append(PresenceStep(confirmer=confirmer))
            elif kind == StepKind.CODE:
                steps.append(
                    QrCodeStep(
                        department_id=department.id,
                        user_id=user.uid,
                        codes=self._codes,
                        lease=self._lease(session_id, camera_factory, FACING_ENVIRONMENT),
                    )
                )
            elif kind == StepKind.FACE:
                steps.append(
                    FaceStep(
                        reference=lambda: self._store.profile_descriptor(user),
                        task_factory=self._face_task_factory(session_id, camera_factory),
                    )
                )
        return steps

    def _face_task_factory(self, session_id: str, camera_factory: CameraFactory) -> Callable[[np.ndarray], FaceScanTask]:
        settings = self._settings

        def factory(reference: np.ndarray) -> FaceScanTask:
            return FaceScanTask(
                lease=self._lease(session_id, camera_factory, FACING_USER),
                reference=reference,
                engine=self._engine,
                matcher=FaceMatcher(settings.similarity_threshold),
                interval=settings.scan_interval,
                liveness_required=settings.liveness_required,
                smile_threshold=settings.smile_threshold,
                timeout=settings.scan_timeout,
            )

        return factory

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------
    def start_session(
        self,
        *,
        user_id: str,
        department_id: str,
        mode: int,
        camera_factory: CameraFactory,
        location_provider: LocationProvider,
    ) -> VerificationSession:
        self._reap_idle()
        if mode not in MODE_STEPS:
            raise VerificationError(f"Unknown verification mode {mode}")
        department = self._directory.get_department(department_id)
        if department is None:
            raise VerificationError("Department not found.")
        user = self._directory.get_user(user_id)
        if user is None:
            raise VerificationError("User not found.")

        now = self._clock()
        mode_config = department.mode_config(mode)
        if not mode_config.enabled:
            raise ModeUnavailableError(f"Mode {mode} is disabled for {department.name}.")
        if not mode_config.is_open(now):
            raise ModeUnavailableError(
                f"Mode {mode} is only available between {mode_config.start_time} and {mode_config.end_time}."
            )

        session_id = uuid.uuid4().hex
        session = VerificationSession(
            session_id=session_id,
            mode=mode,
            department_id=department.id,
            user_id=user.uid,
            steps=self._build_steps(session_id, mode, department, user, camera_factory, location_provider),
            created_at=now,
            camera_factory=camera_factory,
            location_provider=location_provider,
            last_activity=now,
        )
        with self._lock:
            self._sessions[session_id] = session

        self._logger.info(
            "[Verification] Session %s started (mode %s, user %s, dept %s)",
            session_id,
            mode,
            user.uid,
            department.id,
        )
        with session.lock:
            session.state = SessionState.ACTIVE
            self._enter_step(session)
        return session

    def get(self, session_id: str) -> VerificationSession:
        """Live session, or a recently completed one (read-only)."""
        self._reap_idle()
        with self._lock:
            session = self._sessions.get(session_id) or self._finished.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def sessions(self) -> List[VerificationSession]:
        """Sessions still in progress."""
        with self._lock:
            return list(self._sessions.values())

    def submit(self, session_id: str, kind: StepKind, **inputs: Any) -> VerificationSession:
        """Feed inputs to the current step; only an active current step accepts them."""
        session = self.get(session_id)
        with session.lock:
            self._require_active(session)
            session.last_activity = self._clock()
            step = session.current_step
            if step.kind != kind:
                raise StepOrderError(
                    f"Current step is {step.kind.value}, not {StepKind(kind).value}"
                )
            if step.status != StepStatus.ACTIVE:
                raise StepOrderError(f"Step {step.kind.value} is {step.status.value}; retry it first")

            status = step.run(**inputs)
            verification_logger.log_step(session.session_id, step.kind.value, status.value, step.message)
            if status == StepStatus.SUCCESS:
                self._advance(session)
        return session

    def retry(self, session_id: str) -> VerificationSession:
        session = self.get(session_id)
        with session.lock:
            self._require_active(session)
            session.last_activity = self._clock()
            step = session.current_step
            if step.status not in (StepStatus.FAILED, StepStatus.BLOCKED):
                raise StepOrderError(f"Step {step.kind.value} is {step.status.value}; nothing to retry")
            step.retry()
            verification_logger.log_step(session.session_id, step.kind.value, step.status.value, "retry")
            if step.status == StepStatus.SUCCESS:
                self._advance(session)
        return session

    def abandon(self, session_id: str) -> VerificationSession:
        session = self.get(session_id)
        self._discard(session)
        return session

    def shutdown(self) -> None:
        for session in self.sessions():
            self._discard(session)

    # ------------------------------------------------------------------
    # Registry housekeeping
    # ------------------------------------------------------------------
    def _discard(self, session: VerificationSession) -> None:
        with session.lock:
            for step in session.steps:
                step.cancel()
            if session.state != SessionState.COMPLETED:
                session.state = SessionState.ABANDONED
                verification_logger.log_abandoned(session.session_id, session.current_step.kind.value)
        with self._lock:
            self._sessions.pop(session.session_id, None)
        self._notify_discard(session.session_id)

    def _retire(self, session: VerificationSession) -> None:
        with self._lock:
            self._sessions.pop(session.session_id, None)
            self._finished[session.session_id] = session
            while len(self._finished) > max(self._settings.finished_history, 0):
                self._finished.popitem(last=False)
        self._notify_discard(session.session_id)

    def _notify_discard(self, session_id: str) -> None:
        if self._on_discard is None:
            return
        try:
            self._on_discard(session_id)
        except Exception as exc:
            self._logger.warning("[Verification] Discard hook failed for %s: %s", session_id, exc)

    def _reap_idle(self) -> None:
        timeout = self._settings.session_idle_timeout
        if not timeout:
            return
        cutoff = self._clock() - timedelta(seconds=timeout)
        with self._lock:
            idle = [
                session
                for session in self._sessions.values()
                if (session.last_activity or session.created_at) < cutoff
            ]
        for session in idle:
            self._logger.info(
                "[Verification] ⏱️ Session %s idle since %s, reclaiming",
                session.session_id,
                (session.last_activity or session.created_at).isoformat(),
            )
            self._discard(session)

    # ------------------------------------------------------------------
    # Internal transitions
    # ------------------------------------------------------------------
    def _require_active(self, session: VerificationSession) -> None:
        if session.state != SessionState.ACTIVE:
            raise StepOrderError(f"Session is {session.state.value}")

    def _enter_step(self, session: VerificationSession) -> None:
        step = session.current_step
        status = step.start()
        verification_logger.log_step(session.session_id, step.kind.value, status.value, step.message)
        if status == StepStatus.SUCCESS:
            self._advance(session)

    def _advance(self, session: VerificationSession) -> None:
        session.current_step.cancel()
        if session.current_step_index + 1 >= len(session.steps):
            self._complete(session)
            return
        session.current_step_index += 1
        self._enter_step(session)

    def _complete(self, session: VerificationSession) -> None:
        face_step = session.current_step
        evidence = getattr(face_step, "evidence", None)
        confidence = getattr(face_step, "similarity", 0.0)
        user = self._directory.get_user(session.user_id)
        submission = AttendanceSubmission(
            student_id=session.user_id,
            student_name=user.name if user else session.user_id,
            department_id=session.department_id,
            timestamp=self._clock(),
            mode=session.mode,
            evidence=evidence if evidence is not None else "Verified without a captured frame",
            confidence=float(confidence),
            session_id=session.session_id,
        )
        try:
            result = self._recorder.submit(submission)
        except Exception as exc:
            self._logger.error("[Verification] ❌ Recording failed for %s: %s", session.session_id, exc)
            face_step.fail(MSG_RECORDING_FAILED)
            verification_logger.log_step(session.session_id, face_step.kind.value, face_step.status.value, str(exc))
            return

        session.result = result
        session.state = SessionState.COMPLETED
        if isinstance(face_step, FaceStep):
            face_step.discard_evidence()
        verification_logger.log_completed(session.session_id, session.user_id, session.department_id, session.mode)
        self._retire(session)


__all__ = [
    "MODE_GPS_CLASSROOM_FACE",
    "MODE_QR_FACE",
    "MODE_STEPS",
    "ModeUnavailableError",
    "PipelineSettings",
    "SessionNotFoundError",
    "SessionState",
    "StepOrderError",
    "VerificationError",
    "VerificationOrchestrator",
    "VerificationSession",
]
