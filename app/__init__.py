"""
App package initialization
Khởi tạo Flask application và các dịch vụ xác minh điểm danh
"""
from flask import Flask, jsonify
import os

import config
from logging_config import setup_logging, api_logger
from database import DatabaseManager
from app import globals as app_globals
from core.attendance.recorder import SqliteAttendanceRecorder
from core.inference.engine import InferenceError, build_default_engine
from core.verification.codes import RotatingCodeRegistry
from core.verification.descriptor_store import (
    DescriptorExtractionError,
    DescriptorStore,
    JsonFileBackend,
    MemoryBackend,
)
from core.verification.directory import Directory
from core.verification.orchestrator import (
    ModeUnavailableError,
    PipelineSettings,
    SessionNotFoundError,
    StepOrderError,
    VerificationError,
    VerificationOrchestrator,
)
from core.vision.camera_manager import CameraError
from services.descriptor_builder import DescriptorBuilder


def _init_inference_engine(app, overrides):
    """Khởi tạo inference engine (face_recognition / DeepFace)"""
    engine = overrides.get('engine')
    if engine is None:
        engine = build_default_engine(
            preferred=config.FACE_ENCODER,
            deepface_model=config.DEEPFACE_MODEL,
            logger=app.logger,
        )
    if engine.ready():
        app.logger.info(f"[STARTUP] ✅ Inference engine ready ({engine.model_name})")
    else:
        app.logger.warning("[STARTUP] ⚠️ No face encoder available; face steps will fail until one is installed")
    return engine


def _init_descriptor_store(app, engine, overrides):
    """Khởi tạo cache descriptor (bộ nhớ hoặc file JSON)"""
    builder = DescriptorBuilder(
        engine,
        fetch=overrides.get('image_fetcher'),
        timeout=config.IMAGE_FETCH_TIMEOUT,
        logger=app.logger,
    )
    cache_path = overrides.get('descriptor_cache_path', config.DESCRIPTOR_CACHE_PATH)
    backend = JsonFileBackend(cache_path) if cache_path else MemoryBackend()
    app.logger.info(f"[STARTUP] ✅ Descriptor cache: {cache_path or 'in-memory'}")
    return DescriptorStore(builder, backend=backend, logger=app.logger)


def _register_error_handlers(app):
    """Chuyển lỗi miền thành JSON {success: false, message}"""

    def _json_error(message, status_code):
        api_logger.log_error('-', message, status_code)
        return jsonify({'success': False, 'message': message}), status_code

    @app.errorhandler(SessionNotFoundError)
    def _session_not_found(exc):
        return _json_error(str(exc), 404)

    @app.errorhandler(StepOrderError)
    def _step_order(exc):
        return _json_error(str(exc), 409)

    @app.errorhandler(ModeUnavailableError)
    def _mode_unavailable(exc):
        return _json_error(str(exc), 409)

    @app.errorhandler(VerificationError)
    def _verification_error(exc):
        return _json_error(str(exc), 400)

    @app.errorhandler(CameraError)
    def _camera_error(exc):
        return _json_error(str(exc), 409)

    @app.errorhandler(DescriptorExtractionError)
    def _extraction_error(exc):
        return _json_error(str(exc), 502)

    @app.errorhandler(InferenceError)
    def _inference_error(exc):
        return _json_error(str(exc), 503)


def create_app(test_config=None, services=None):
    """Factory function để tạo Flask application

    Args:
        test_config: dict cấu hình Flask bổ sung (TESTING, ...)
        services: dict thay thế dịch vụ (engine, directory, recorder, image_fetcher,
                  settings, clock, descriptor_cache_path) dùng cho test / kiosk
    """
    overrides = services or {}
    app = Flask(__name__)

    # Cấu hình cơ bản
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['MAX_CONTENT_LENGTH'] = config.MAX_CONTENT_LENGTH
    if test_config:
        app.config.update(test_config)

    # Thiết lập logging
    setup_logging(app, log_level=config.LOG_LEVEL, log_dir=config.LOG_DIR)

    app.logger.info(f"[STARTUP] Working directory: {os.getcwd()}")

    # =============================================================================
    # INITIALIZE SERVICES
    # =============================================================================

    # 1. Inference engine
    engine = _init_inference_engine(app, overrides)
    app_globals.inference_engine = engine

    # 2. Descriptor cache
    app_globals.descriptor_store = _init_descriptor_store(app, engine, overrides)

    # 3. Department / user directory
    directory = overrides.get('directory')
    if directory is None:
        directory = Directory.load(config.DIRECTORY_PATH)
    app_globals.directory = directory
    app.logger.info(f"[STARTUP] ✅ Directory loaded ({len(directory.departments())} departments)")

    # 4. Rotating codes
    app_globals.code_registry = RotatingCodeRegistry(
        classroom_ttl=config.CLASSROOM_CODE_TTL,
        qr_ttl=config.QR_REFRESH_INTERVAL,
        clock=overrides.get('code_clock'),
    )
    app.logger.info("[STARTUP] ✅ RotatingCodeRegistry initialized")

    # 5. Attendance recorder
    recorder = overrides.get('recorder')
    if recorder is None:
        app_globals.database = DatabaseManager(config.DATABASE_PATH)
        recorder = SqliteAttendanceRecorder(
            db=app_globals.database,
            evidence_dir=config.EVIDENCE_DIR,
            logger=app.logger,
        )
        app.logger.info(f"[STARTUP] Database path: {os.path.abspath(config.DATABASE_PATH)}")

    # 6. Orchestrator
    app_globals.orchestrator = VerificationOrchestrator(
        directory=directory,
        store=app_globals.descriptor_store,
        codes=app_globals.code_registry,
        engine=engine,
        recorder=recorder,
        settings=overrides.get('settings') or PipelineSettings.from_config(config),
        clock=overrides.get('clock'),
        on_discard=app_globals.drop_session_io,
        logger=app.logger,
    )
    app.logger.info("[STARTUP] ✅ All services initialized successfully")

    _register_error_handlers(app)

    # Đăng ký blueprints
    from app.routes import register_blueprints
    register_blueprints(app)

    @app.route('/api/status')
    def api_status():
        """API trạng thái hệ thống"""
        return jsonify({
            'success': True,
            'encoder': engine.model_name if engine.ready() else None,
            'active_sessions': len(app_globals.orchestrator.sessions()),
            'cache': app_globals.descriptor_store.describe(),
        })

    return app
