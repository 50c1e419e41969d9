from __future__ import annotations

from datetime import datetime, timedelta

import cv2
import numpy as np
import pytest

from conftest import GREEN, RED, solid_bgr
from core.attendance.recorder import STATUS_DUPLICATE, STATUS_PRESENT, InMemoryAttendanceRecorder
from core.inference.engine import FaceRecognitionStrategy, InferenceEngine
from core.verification.codes import MSG_CODE_EXPIRED, MSG_CODE_INVALID, MSG_QR_EXPIRED, MSG_QR_OK, render_qr_png
from core.verification.face_matcher import MSG_VERIFIED
from core.verification.geo import ReportedLocationProvider
from core.verification.orchestrator import (
    MODE_GPS_CLASSROOM_FACE,
    MODE_QR_FACE,
    MSG_RECORDING_FAILED,
    ModeUnavailableError,
    PipelineSettings,
    SessionNotFoundError,
    SessionState,
    StepOrderError,
    VerificationError,
    VerificationOrchestrator,
)
from core.verification.presence import MSG_NO_CLASSROOM_PHOTOS
from core.verification.steps import MSG_FACE_BLOCKED, MSG_GEO_SKIPPED, StepKind, StepStatus
from core.vision.camera_manager import FACING_ENVIRONMENT, FACING_USER, FrameBufferCameraPool

INSIDE = (10.7770, 106.7009)
FAR_NORTH = (10.7900, 106.7009)


class SessionHarness:
    """Browser stand-in: pushes frames and positions into one session."""

    def __init__(self, orchestrator, user_id="u1", department_id="cs", mode=MODE_GPS_CLASSROOM_FACE, camera_factory=None):
        self.orchestrator = orchestrator
        self.cameras = FrameBufferCameraPool()
        self.location = ReportedLocationProvider()
        self.session = orchestrator.start_session(
            user_id=user_id,
            department_id=department_id,
            mode=mode,
            camera_factory=camera_factory or self.cameras,
            location_provider=self.location,
        )

    @property
    def sid(self):
        return self.session.session_id

    @property
    def step(self):
        return self.session.current_step

    def geo(self, lat, lng):
        self.location.report(lat, lng)
        return self.orchestrator.submit(self.sid, StepKind.GEO)

    def presence_camera(self, frame=None):
        self.orchestrator.submit(self.sid, StepKind.PRESENCE, action="camera")
        if frame is not None:
            self.cameras.push(FACING_ENVIRONMENT, frame)
        return self.orchestrator.submit(self.sid, StepKind.PRESENCE, action="confirm")

    def face(self, color):
        self.cameras.push(FACING_USER, solid_bgr(color))
        return self.orchestrator.submit(self.sid, StepKind.FACE)


@pytest.fixture
def u1_cached(store, directory):
    store.refresh_profile(directory.get_user("u1"))
    return directory.get_user("u1")


def test_mode1_end_to_end(orchestrator, recorder, u1_cached):
    h = SessionHarness(orchestrator)
    assert h.session.state == SessionState.ACTIVE
    assert h.step.kind == StepKind.GEO
    assert h.step.status == StepStatus.ACTIVE

    h.geo(*INSIDE)
    assert h.step.kind == StepKind.PRESENCE

    h.presence_camera()
    assert h.step.kind == StepKind.FACE
    assert h.step.status == StepStatus.ACTIVE
    assert h.cameras.any_live()

    h.face(RED)

    assert h.session.state == SessionState.COMPLETED
    assert h.session.result.status == STATUS_PRESENT
    assert h.step.message == MSG_VERIFIED
    assert not h.cameras.any_live()

    submission = recorder.submissions[0]
    assert submission.student_id == "u1"
    assert submission.department_id == "cs"
    assert submission.mode == MODE_GPS_CLASSROOM_FACE
    assert submission.evidence.startswith(b"\xff\xd8")
    assert submission.confidence == pytest.approx(1.0, abs=0.01)


def test_mode2_end_to_end(orchestrator, codes, recorder, u1_cached):
    h = SessionHarness(orchestrator, mode=MODE_QR_FACE)
    assert h.step.kind == StepKind.CODE

    token = codes.current_qr_token("cs").encode()
    orchestrator.submit(h.sid, StepKind.CODE, token=token)
    assert h.session.steps[0].message == MSG_QR_OK
    assert h.step.kind == StepKind.FACE

    h.face(RED)
    assert h.session.state == SessionState.COMPLETED
    assert recorder.submissions[0].mode == MODE_QR_FACE


def test_mode2_qr_from_image(orchestrator, codes, u1_cached):
    h = SessionHarness(orchestrator, mode=MODE_QR_FACE)
    png = render_qr_png(codes.current_qr_token("cs").encode())
    frame = cv2.imdecode(np.frombuffer(png, dtype=np.uint8), cv2.IMREAD_COLOR)
    frame = cv2.copyMakeBorder(frame, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=(255, 255, 255))

    orchestrator.submit(h.sid, StepKind.CODE, image=frame)
    assert h.step.kind == StepKind.FACE


def test_qr_image_without_code_keeps_step_active(orchestrator, u1_cached):
    h = SessionHarness(orchestrator, mode=MODE_QR_FACE)
    orchestrator.submit(h.sid, StepKind.CODE, image=np.full((100, 100, 3), 255, dtype=np.uint8))
    assert h.step.kind == StepKind.CODE
    assert h.step.status == StepStatus.ACTIVE


def test_mode2_scan_action_reads_rear_camera(orchestrator, codes, u1_cached):
    png = render_qr_png(codes.current_qr_token("cs").encode())
    frame = cv2.imdecode(np.frombuffer(png, dtype=np.uint8), cv2.IMREAD_COLOR)
    frame = cv2.copyMakeBorder(frame, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=(255, 255, 255))

    pool = FrameBufferCameraPool()

    def factory(facing):
        camera = pool(facing)
        if facing == FACING_ENVIRONMENT:
            original_start = camera.start

            def start():
                original_start()
                camera.push(frame)
                return camera

            camera.start = start
        return camera

    h = SessionHarness(orchestrator, mode=MODE_QR_FACE, camera_factory=factory)
    orchestrator.submit(h.sid, StepKind.CODE, action="scan")
    assert h.step.kind == StepKind.FACE
    assert not pool(FACING_ENVIRONMENT).is_live()


def test_failed_step_never_advances(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*FAR_NORTH)

    assert h.session.current_step_index == 0
    assert h.step.status == StepStatus.FAILED
    assert "away (head S)" in h.step.message
    assert h.step.details["within_range"] is False

    with pytest.raises(StepOrderError):
        h.geo(*INSIDE)

    orchestrator.retry(h.sid)
    assert h.step.status == StepStatus.ACTIVE
    h.geo(*INSIDE)
    assert h.step.kind == StepKind.PRESENCE


def test_submit_to_wrong_step_is_rejected(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    with pytest.raises(StepOrderError):
        orchestrator.submit(h.sid, StepKind.FACE)
    with pytest.raises(StepOrderError):
        orchestrator.retry(h.sid)


def test_location_permission_denied(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    h.location.report_error(1, "User denied Geolocation")
    orchestrator.submit(h.sid, StepKind.GEO)
    assert h.step.status == StepStatus.FAILED
    assert "permission" in h.step.message.lower()


def test_location_timeout(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    orchestrator.submit(h.sid, StepKind.GEO)
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == "Could not get location: Timeout expired. Please enable location services."


def test_department_without_location_skips_geo(orchestrator):
    h = SessionHarness(orchestrator, department_id="math")
    assert h.session.steps[0].status == StepStatus.SUCCESS
    assert h.session.steps[0].message == MSG_GEO_SKIPPED
    assert h.step.kind == StepKind.PRESENCE


def test_presence_code_path(orchestrator, codes, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    code = codes.issue_classroom_code("cs").code

    orchestrator.submit(h.sid, StepKind.PRESENCE, action="camera")
    assert h.cameras.any_live()
    orchestrator.submit(h.sid, StepKind.PRESENCE, code=code)

    assert h.session.steps[1].status == StepStatus.SUCCESS
    assert h.session.steps[1].details["path"] == "code"
    assert not h.cameras(FACING_ENVIRONMENT).is_live()


def test_presence_wrong_code(orchestrator, codes, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    code = codes.issue_classroom_code("cs").code
    wrong = f"{(int(code) + 1) % 1_000_000:06d}"

    orchestrator.submit(h.sid, StepKind.PRESENCE, code=wrong)
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == MSG_CODE_INVALID


def test_presence_confirm_without_camera_fails(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    orchestrator.submit(h.sid, StepKind.PRESENCE, action="confirm")
    assert h.step.status == StepStatus.FAILED
    assert "Camera is not active" in h.step.message


def _scoring_orchestrator(directory, store, codes, engine, recorder, now):
    return VerificationOrchestrator(
        directory=directory,
        store=store,
        codes=codes,
        engine=engine,
        recorder=recorder,
        settings=PipelineSettings(geo_timeout=0.05, classroom_scoring=True),
        clock=lambda: now,
    )


def test_classroom_scoring_needs_cached_photos(directory, store, codes, engine, recorder, now, u1_cached):
    orchestrator = _scoring_orchestrator(directory, store, codes, engine, recorder, now)
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    h.presence_camera(solid_bgr(RED))
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == MSG_NO_CLASSROOM_PHOTOS
    assert not h.cameras.any_live()


def test_classroom_scoring(directory, store, codes, engine, recorder, now, u1_cached):
    store.refresh_classroom(directory.get_department("cs"))
    orchestrator = _scoring_orchestrator(directory, store, codes, engine, recorder, now)
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)

    # classroom matches but the user is not in the frame
    h.presence_camera(solid_bgr(GREEN))
    assert h.step.status == StepStatus.FAILED
    assert "Score: 50%" in h.step.message

    orchestrator.retry(h.sid)
    h.presence_camera(solid_bgr(RED))
    assert h.session.steps[1].status == StepStatus.SUCCESS
    assert h.session.steps[1].details["score"] == pytest.approx(1.0, abs=0.01)


def test_face_step_blocked_without_profile_descriptor(orchestrator, codes, store, directory):
    h = SessionHarness(orchestrator, mode=MODE_QR_FACE)
    orchestrator.submit(h.sid, StepKind.CODE, token=codes.current_qr_token("cs").encode())

    assert h.step.kind == StepKind.FACE
    assert h.step.status == StepStatus.BLOCKED
    assert h.step.message == MSG_FACE_BLOCKED
    assert not h.cameras.any_live()

    store.refresh_profile(directory.get_user("u1"))
    orchestrator.retry(h.sid)
    assert h.step.status == StepStatus.ACTIVE
    h.face(RED)
    assert h.session.state == SessionState.COMPLETED


def test_face_mismatch_keeps_scanning(orchestrator, u1_cached):
    h = SessionHarness(orchestrator, department_id="math")
    h.presence_camera()
    h.face(GREEN)
    assert h.step.kind == StepKind.FACE
    assert h.step.status == StepStatus.ACTIVE
    assert h.session.state == SessionState.ACTIVE
    h.face(RED)
    assert h.session.state == SessionState.COMPLETED


def test_abandon_releases_cameras_and_records_nothing(orchestrator, recorder, u1_cached):
    h = SessionHarness(orchestrator, department_id="math")
    h.presence_camera()
    assert h.step.kind == StepKind.FACE
    assert h.cameras.any_live()

    session = orchestrator.abandon(h.sid)

    assert session.state == SessionState.ABANDONED
    assert not h.cameras.any_live()
    assert recorder.submissions == []
    with pytest.raises(SessionNotFoundError):
        orchestrator.get(h.sid)


def test_recording_failure_keeps_session_open(directory, store, codes, engine, settings, now, u1_cached):
    class BrokenRecorder(InMemoryAttendanceRecorder):
        broken = True

        def submit(self, submission):
            if self.broken:
                raise RuntimeError("database is locked")
            return super().submit(submission)

    recorder = BrokenRecorder()
    orchestrator = VerificationOrchestrator(
        directory=directory, store=store, codes=codes, engine=engine,
        recorder=recorder, settings=settings, clock=lambda: now,
    )
    h = SessionHarness(orchestrator, department_id="math")
    h.presence_camera()
    h.face(RED)

    assert h.session.state == SessionState.ACTIVE
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == MSG_RECORDING_FAILED

    recorder.broken = False
    orchestrator.retry(h.sid)
    h.face(RED)
    assert h.session.state == SessionState.COMPLETED
    assert len(recorder.submissions) == 1


def test_second_session_same_day_is_duplicate(orchestrator, u1_cached):
    first = SessionHarness(orchestrator, department_id="math")
    first.presence_camera()
    first.face(RED)

    second = SessionHarness(orchestrator, department_id="math")
    second.presence_camera()
    second.face(RED)

    assert first.session.result.status == STATUS_PRESENT
    assert second.session.result.status == STATUS_DUPLICATE


def test_completed_session_rejects_input(orchestrator, u1_cached):
    h = SessionHarness(orchestrator, department_id="math")
    h.presence_camera()
    h.face(RED)
    with pytest.raises(StepOrderError):
        orchestrator.submit(h.sid, StepKind.FACE)


def test_start_session_validation(orchestrator):
    with pytest.raises(VerificationError):
        SessionHarness(orchestrator, mode=3)
    with pytest.raises(VerificationError):
        SessionHarness(orchestrator, department_id="history")
    with pytest.raises(VerificationError):
        SessionHarness(orchestrator, user_id="ghost")
    with pytest.raises(ModeUnavailableError):
        SessionHarness(orchestrator, department_id="math", mode=MODE_QR_FACE)


def test_mode_schedule(directory, store, codes, engine, recorder, settings):
    def build(hour):
        return VerificationOrchestrator(
            directory=directory, store=store, codes=codes, engine=engine, recorder=recorder,
            settings=settings, clock=lambda: datetime(2026, 3, 2, hour, 30),
        )

    SessionHarness(build(9), department_id="bio")
    with pytest.raises(ModeUnavailableError):
        SessionHarness(build(11), department_id="bio")


def test_snapshot_shape(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    snap = h.session.snapshot()
    assert snap["state"] == "active"
    assert snap["current_step"] == "geo"
    assert snap["step_status"] == "active"
    assert [s["kind"] for s in snap["steps"]] == ["geo", "presence", "face"]
    assert snap["result"] is None


def test_shutdown_abandons_everything(orchestrator, u1_cached):
    a = SessionHarness(orchestrator, department_id="math")
    a.presence_camera()
    SessionHarness(orchestrator)
    orchestrator.shutdown()
    assert orchestrator.sessions() == []
    assert not a.cameras.any_live()


def test_expired_qr_token_fails_without_advancing(orchestrator, codes, code_clock, u1_cached):
    h = SessionHarness(orchestrator, mode=MODE_QR_FACE)
    token = codes.current_qr_token("cs").encode()
    code_clock.advance(31)

    orchestrator.submit(h.sid, StepKind.CODE, token=token)

    assert h.session.current_step_index == 0
    assert h.step.kind == StepKind.CODE
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == MSG_QR_EXPIRED


def test_expired_classroom_code_fails_without_advancing(orchestrator, codes, code_clock, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    code = codes.issue_classroom_code("cs").code
    code_clock.advance(121)

    orchestrator.submit(h.sid, StepKind.PRESENCE, code=code)

    assert h.session.current_step_index == 1
    assert h.step.kind == StepKind.PRESENCE
    assert h.step.status == StepStatus.FAILED
    assert h.step.message == MSG_CODE_EXPIRED


def test_completed_session_leaves_live_registry(orchestrator, u1_cached):
    h = SessionHarness(orchestrator)
    h.geo(*INSIDE)
    h.presence_camera()
    h.face(RED)

    assert orchestrator.sessions() == []
    finished = orchestrator.get(h.sid)
    assert finished.state == SessionState.COMPLETED
    assert finished.snapshot()["result"]["status"] == STATUS_PRESENT
    assert finished.steps[-1].evidence is None


def _build(directory, store, codes, engine, recorder, clock, **settings):
    return VerificationOrchestrator(
        directory=directory,
        store=store,
        codes=codes,
        engine=engine,
        recorder=recorder,
        settings=PipelineSettings(geo_timeout=0.05, **settings),
        clock=clock,
    )


def test_finished_history_is_bounded(directory, store, codes, engine, recorder, now, u1_cached):
    orchestrator = _build(directory, store, codes, engine, recorder, lambda: now, finished_history=1)
    first = SessionHarness(orchestrator, department_id="math")
    first.presence_camera()
    first.face(RED)
    second = SessionHarness(orchestrator, department_id="math")
    second.presence_camera()
    second.face(RED)

    with pytest.raises(SessionNotFoundError):
        orchestrator.get(first.sid)
    assert orchestrator.get(second.sid).state == SessionState.COMPLETED


class MovableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_idle_session_is_reclaimed(directory, store, codes, engine, recorder, now, u1_cached):
    clock = MovableClock(now)
    discarded = []
    orchestrator = VerificationOrchestrator(
        directory=directory,
        store=store,
        codes=codes,
        engine=engine,
        recorder=recorder,
        settings=PipelineSettings(geo_timeout=0.05, session_idle_timeout=60),
        clock=clock,
        on_discard=discarded.append,
    )
    idle = SessionHarness(orchestrator, department_id="math")
    orchestrator.submit(idle.sid, StepKind.PRESENCE, action="camera")
    assert idle.cameras.any_live()
    busy = SessionHarness(orchestrator, department_id="math")

    clock.now = now + timedelta(seconds=45)
    orchestrator.submit(busy.sid, StepKind.PRESENCE, action="camera")
    clock.now = now + timedelta(seconds=90)

    with pytest.raises(SessionNotFoundError):
        orchestrator.get(idle.sid)
    assert idle.session.state == SessionState.ABANDONED
    assert not idle.cameras.any_live()
    assert discarded == [idle.sid]
    assert orchestrator.get(busy.sid).state == SessionState.ACTIVE
    assert orchestrator.sessions() == [busy.session]


def test_idle_timeout_zero_keeps_sessions(directory, store, codes, engine, recorder, now, u1_cached):
    clock = MovableClock(now)
    orchestrator = _build(directory, store, codes, engine, recorder, clock, session_idle_timeout=0)
    h = SessionHarness(orchestrator)
    clock.now = now + timedelta(days=1)
    assert orchestrator.get(h.sid).state == SessionState.ACTIVE


def test_liveness_needs_expression_capable_encoder(directory, store, codes, recorder):
    engine = InferenceEngine()
    engine.add_strategy(FaceRecognitionStrategy(face_recognition_module=object()))
    with pytest.raises(VerificationError):
        _build(directory, store, codes, engine, recorder, None, liveness_required=True)
