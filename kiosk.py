"""Console kiosk for the attendance verification pipeline.

Runs one verification session for one user on the local cameras: the front
camera for the face scan and the rear camera for the classroom and QR steps.
Ctrl+C abandons the session and releases every camera.

Usage:
  python kiosk.py --user u1 --department cs --mode 1 --lat 12.34 --lng 56.78
  python kiosk.py --user u1 --department cs --mode 2 --qr-out data/kiosk_qr.png

Dependencies: opencv-python, face_recognition or deepface
"""
import argparse
import logging
import threading
import time
from pathlib import Path

import config
from logging_config import setup_logging
from database import DatabaseManager
from core.attendance.recorder import InMemoryAttendanceRecorder, SqliteAttendanceRecorder
from core.inference.engine import build_default_engine
from core.verification.codes import RotatingCodeRegistry, render_qr_png
from core.verification.descriptor_store import (
    DescriptorExtractionError,
    DescriptorStore,
    JsonFileBackend,
    MemoryBackend,
)
from core.verification.directory import Directory
from core.verification.geo import LatLng, ReportedLocationProvider, StaticLocationProvider
from core.verification.orchestrator import (
    PipelineSettings,
    SessionState,
    VerificationError,
    VerificationOrchestrator,
)
from core.verification.steps import StepKind, StepStatus
from core.vision.camera_manager import local_camera_factory
from services.descriptor_builder import DescriptorBuilder

logger = logging.getLogger('kiosk')

QR_SCAN_INTERVAL = 0.3


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Attendance verification kiosk')
    parser.add_argument('--user', required=True, help='user uid from the directory')
    parser.add_argument('--department', required=True, help='department id from the directory')
    parser.add_argument('--mode', type=int, choices=(1, 2), default=1)
    parser.add_argument('--lat', type=float, help='kiosk latitude (mode 1)')
    parser.add_argument('--lng', type=float, help='kiosk longitude (mode 1)')
    parser.add_argument('--front-camera', type=int, default=config.FRONT_CAMERA_INDEX)
    parser.add_argument('--rear-camera', type=int, default=config.REAR_CAMERA_INDEX)
    parser.add_argument('--qr-out', default=str(config.DATA_DIR / 'kiosk_qr.png'),
                        help='where to write the QR code to display (mode 2)')
    parser.add_argument('--dry-run', action='store_true', help='do not write to the attendance database')
    return parser.parse_args(argv)


def build_orchestrator(args):
    engine = build_default_engine(preferred=config.FACE_ENCODER, deepface_model=config.DEEPFACE_MODEL)
    backend = JsonFileBackend(config.DESCRIPTOR_CACHE_PATH) if config.DESCRIPTOR_CACHE_PATH else MemoryBackend()
    store = DescriptorStore(DescriptorBuilder(engine, timeout=config.IMAGE_FETCH_TIMEOUT), backend=backend)
    directory = Directory.load(config.DIRECTORY_PATH)
    codes = RotatingCodeRegistry(classroom_ttl=config.CLASSROOM_CODE_TTL, qr_ttl=config.QR_REFRESH_INTERVAL)
    if args.dry_run:
        recorder = InMemoryAttendanceRecorder()
    else:
        recorder = SqliteAttendanceRecorder(db=DatabaseManager(config.DATABASE_PATH), evidence_dir=config.EVIDENCE_DIR)
    orchestrator = VerificationOrchestrator(
        directory=directory,
        store=store,
        codes=codes,
        engine=engine,
        recorder=recorder,
        settings=PipelineSettings.from_config(config),
    )
    return orchestrator, store, directory, codes


def location_provider(args):
    if args.lat is not None and args.lng is not None:
        return StaticLocationProvider(LatLng(args.lat, args.lng))
    provider = ReportedLocationProvider()
    provider.report_error(2, 'No kiosk position configured (use --lat/--lng)')
    return provider


def prepare_cache(store, directory, args):
    """Lazy refresh khi tải hồ sơ: phân tích ảnh hồ sơ (và ảnh lớp học nếu bật chấm điểm)."""
    user = directory.get_user(args.user)
    if user is not None:
        try:
            store.refresh_profile(user)
        except DescriptorExtractionError as exc:
            print(f'⚠️  Could not analyze the profile photo: {exc}')
    department = directory.get_department(args.department)
    if department is not None and config.PRESENCE_CLASSROOM_SCORING:
        try:
            store.refresh_classroom(department)
        except DescriptorExtractionError as exc:
            print(f'⚠️  Could not analyze classroom photos: {exc}')


def ask_retry(message):
    print(f'❌ {message}')
    answer = input('Retry this step? [Y/n] ').strip().lower()
    return answer in ('', 'y', 'yes')


def drive_step(orchestrator, session, codes, args, stop_event):
    step = session.current_step
    print(f'--- Step {session.current_step_index + 1}/{len(session.steps)}: {step.kind.value} ---')
    if step.message:
        print(step.message)

    if step.kind == StepKind.GEO:
        orchestrator.submit(session.session_id, StepKind.GEO)

    elif step.kind == StepKind.PRESENCE:
        orchestrator.submit(session.session_id, StepKind.PRESENCE, action='camera')
        if step.status != StepStatus.ACTIVE:
            return
        input("Rear camera is live. Press Enter when you're in the classroom... ")
        orchestrator.submit(session.session_id, StepKind.PRESENCE, action='confirm')

    elif step.kind == StepKind.CODE:
        token = codes.current_qr_token(args.department)
        qr_path = Path(args.qr_out)
        qr_path.parent.mkdir(parents=True, exist_ok=True)
        qr_path.write_bytes(render_qr_png(token.encode()))
        print(f'QR code written to {qr_path}. Show it to the rear camera.')
        while step.status == StepStatus.ACTIVE and not stop_event.is_set():
            orchestrator.submit(session.session_id, StepKind.CODE, action='scan')
            time.sleep(QR_SCAN_INTERVAL)

    elif step.kind == StepKind.FACE:
        print('Look at the front camera...')
        orchestrator.submit(session.session_id, StepKind.FACE, stop_event=stop_event)

    print(f'[{step.status.value}] {step.message}')


def main(argv=None):
    args = parse_args(argv)
    setup_logging(None, log_level=config.LOG_LEVEL, log_dir=config.LOG_DIR)

    try:
        orchestrator, store, directory, codes = build_orchestrator(args)
    except VerificationError as exc:
        print(f'❌ Invalid configuration: {exc}')
        return 1
    prepare_cache(store, directory, args)

    cameras = local_camera_factory(
        front_index=args.front_camera,
        rear_index=args.rear_camera,
        width=config.CAMERA_WIDTH,
        height=config.CAMERA_HEIGHT,
        warmup_frames=config.CAMERA_WARMUP_FRAMES,
        buffer_size=config.CAMERA_BUFFER_SIZE,
    )

    try:
        session = orchestrator.start_session(
            user_id=args.user,
            department_id=args.department,
            mode=args.mode,
            camera_factory=cameras,
            location_provider=location_provider(args),
        )
    except VerificationError as exc:
        print(f'❌ Cannot start verification: {exc}')
        return 1

    stop_event = threading.Event()
    try:
        while session.state == SessionState.ACTIVE:
            step = session.current_step
            if step.status in (StepStatus.FAILED, StepStatus.BLOCKED):
                if not ask_retry(step.message):
                    orchestrator.abandon(session.session_id)
                    break
                orchestrator.retry(session.session_id)
                continue
            drive_step(orchestrator, session, codes, args, stop_event)
    except KeyboardInterrupt:
        stop_event.set()
        orchestrator.abandon(session.session_id)
        print('\nVerification abandoned; cameras released.')
        return 130

    if session.state == SessionState.COMPLETED:
        result = session.result
        print(f'✅ Attendance recorded: {result.status} (confidence {result.confidence:.2f})')
        return 0
    print('Verification abandoned.')
    return 1


if __name__ == '__main__':
    raise SystemExit(main())
