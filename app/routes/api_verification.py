"""
API routes for verification sessions
Các API điều khiển phiên xác minh điểm danh (GPS, lớp học, QR, khuôn mặt)
"""
from flask import Blueprint, jsonify, request

from app import globals as app_globals
from app.utils import error_response, get_request_data, parse_float, parse_int
from core.verification.orchestrator import SessionState
from core.verification.steps import StepKind
from core.vision.camera_manager import FACING_ENVIRONMENT, FACING_USER
from core.vision.pipeline import decode_base64_image
from logging_config import log_request_info

verification_api_bp = Blueprint('verification_api', __name__, url_prefix='/api/verification')


@verification_api_bp.before_request
def _log_request():
    data = request.get_json(silent=True) if request.is_json else None
    log_request_info(request, user_id=(data or {}).get('user_id'))


def _session_io(session_id):
    io = app_globals.get_session_io(session_id)
    if io is None:
        # Phiên có thể đã hoàn tất hoặc bị hủy
        app_globals.orchestrator.get(session_id)
    return io


def _respond(session, status_code=200):
    if session.state in (SessionState.COMPLETED, SessionState.ABANDONED):
        app_globals.drop_session_io(session.session_id)
    payload = session.snapshot()
    payload['success'] = True
    return jsonify(payload), status_code


@verification_api_bp.route('/sessions', methods=['POST'])
def api_start_session():
    """Bắt đầu phiên xác minh mới"""
    data = get_request_data()
    user_id = (data.get('user_id') or '').strip()
    department_id = (data.get('department_id') or '').strip()
    mode = parse_int(data.get('mode'))
    if not user_id or not department_id or mode is None:
        return error_response('user_id, department_id and mode are required', 400)

    io = app_globals.open_session_io()
    session = app_globals.orchestrator.start_session(
        user_id=user_id,
        department_id=department_id,
        mode=mode,
        camera_factory=io.cameras,
        location_provider=io.location,
    )
    app_globals.register_session_io(session.session_id, io)
    return _respond(session, 201)


@verification_api_bp.route('/sessions/<session_id>', methods=['GET'])
def api_get_session(session_id):
    """Trạng thái hiện tại của phiên"""
    return _respond(app_globals.orchestrator.get(session_id))


@verification_api_bp.route('/sessions/<session_id>/geo', methods=['POST'])
def api_submit_geo(session_id):
    """Nhận vị trí (hoặc lỗi định vị) từ trình duyệt"""
    data = get_request_data()
    io = _session_io(session_id)
    if io is None:
        return error_response('Session is no longer active', 409)

    if data.get('error_code') is not None:
        code = parse_int(data.get('error_code'), 2)
        io.location.report_error(code, data.get('error_message') or '')
    else:
        lat = parse_float(data.get('lat'))
        lng = parse_float(data.get('lng'))
        if lat is None or lng is None:
            return error_response('lat and lng are required', 400)
        io.location.report(lat, lng)

    session = app_globals.orchestrator.submit(session_id, StepKind.GEO)
    return _respond(session)


@verification_api_bp.route('/sessions/<session_id>/presence', methods=['POST'])
def api_submit_presence(session_id):
    """Xác nhận có mặt trong lớp: camera sau hoặc mã 6 số"""
    data = get_request_data()
    io = _session_io(session_id)
    if io is None:
        return error_response('Session is no longer active', 409)

    code = data.get('code')
    if code is not None:
        session = app_globals.orchestrator.submit(session_id, StepKind.PRESENCE, code=str(code))
        return _respond(session)

    action = (data.get('action') or '').strip().lower()
    if action not in ('camera', 'confirm'):
        return error_response("action must be 'camera' or 'confirm', or send a code", 400)

    if action == 'confirm' and data.get('image'):
        # Ảnh lớp học dùng cho chấm điểm tự động (nếu bật)
        io.cameras.push(FACING_ENVIRONMENT, decode_base64_image(data['image']))

    session = app_globals.orchestrator.submit(session_id, StepKind.PRESENCE, action=action)
    return _respond(session)


@verification_api_bp.route('/sessions/<session_id>/qr', methods=['POST'])
def api_submit_qr(session_id):
    """Nhận token QR đã giải mã hoặc ảnh chứa mã QR"""
    data = get_request_data()
    if _session_io(session_id) is None:
        return error_response('Session is no longer active', 409)

    token = data.get('token')
    if token:
        session = app_globals.orchestrator.submit(session_id, StepKind.CODE, token=str(token))
        return _respond(session)

    image = data.get('image')
    if not image:
        return error_response('token or image is required', 400)
    session = app_globals.orchestrator.submit(session_id, StepKind.CODE, image=decode_base64_image(image))
    return _respond(session)


@verification_api_bp.route('/sessions/<session_id>/face/frame', methods=['POST'])
def api_submit_face_frame(session_id):
    """Một lần quét khuôn mặt với khung hình từ camera trước"""
    data = get_request_data()
    io = _session_io(session_id)
    if io is None:
        return error_response('Session is no longer active', 409)

    image = data.get('image')
    if not image:
        return error_response('image is required', 400)

    session = app_globals.orchestrator.get(session_id)
    if session.current_step.kind != StepKind.FACE:
        return error_response(f'Current step is {session.current_step.kind.value}, not face', 409)
    if session.step_status.value != 'active':
        return error_response(session.current_step.message or 'Face step is not active', 409)

    io.cameras.push(FACING_USER, decode_base64_image(image))
    session = app_globals.orchestrator.submit(session_id, StepKind.FACE)
    return _respond(session)


@verification_api_bp.route('/sessions/<session_id>/retry', methods=['POST'])
def api_retry_step(session_id):
    """Thử lại bước hiện tại (sau khi thất bại hoặc bị chặn)"""
    return _respond(app_globals.orchestrator.retry(session_id))


@verification_api_bp.route('/sessions/<session_id>', methods=['DELETE'])
def api_abandon_session(session_id):
    """Hủy phiên: giải phóng camera và không ghi điểm danh"""
    session = app_globals.orchestrator.abandon(session_id)
    return _respond(session)
