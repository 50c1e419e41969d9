"""
API routes for the face descriptor cache
Kiểm tra và làm mới cache descriptor (ảnh hồ sơ, ảnh lớp học)
"""
from flask import Blueprint, jsonify

from app import globals as app_globals
from app.utils import error_response, get_request_data, parse_bool
from core.verification.descriptor_store import profile_key

cache_api_bp = Blueprint('cache_api', __name__, url_prefix='/api/cache')


def _entry_summary(entry):
    if entry is None:
        return None
    return {
        'key': entry.key,
        'descriptors': len(entry.descriptors()),
        'source_fingerprint': entry.source_fingerprint,
        'created_at': entry.created_at,
        'model': entry.model,
    }


@cache_api_bp.route('', methods=['GET'])
def api_cache_overview():
    """Thông tin tổng quan về cache"""
    return jsonify({'success': True, **app_globals.descriptor_store.describe()})


@cache_api_bp.route('/profile/<uid>', methods=['GET'])
def api_profile_cache_status(uid):
    """Trạng thái cache ảnh hồ sơ của người dùng"""
    user = app_globals.directory.get_user(uid)
    if user is None:
        return error_response('User not found.', 404)
    store = app_globals.descriptor_store
    status = store.profile_status(user)
    return jsonify({
        'success': True,
        'uid': uid,
        'has_profile_image': bool(user.profile_image),
        'status': status.to_dict(),
        'entry': _entry_summary(store.get_entry(profile_key(uid))),
    })


@cache_api_bp.route('/profile/<uid>', methods=['POST'])
def api_profile_cache_refresh(uid):
    """Phân tích lại ảnh hồ sơ (force=true để bỏ qua kiểm tra fingerprint)"""
    user = app_globals.directory.get_user(uid)
    if user is None:
        return error_response('User not found.', 404)
    force = parse_bool(get_request_data().get('force'), False)
    entry = app_globals.descriptor_store.refresh_profile(user, force=force)
    message = 'Profile descriptor updated.' if entry else 'No face found in the profile photo; cache cleared.'
    if not user.profile_image:
        message = 'No profile photo to analyze.'
    return jsonify({'success': True, 'message': message, 'entry': _entry_summary(entry)})


@cache_api_bp.route('/classroom/<department_id>', methods=['GET'])
def api_classroom_cache_status(department_id):
    """Trạng thái cache ảnh lớp học của khoa"""
    department = app_globals.directory.get_department(department_id)
    if department is None:
        return error_response('Department not found.', 404)
    statuses = app_globals.descriptor_store.classroom_status(department)
    return jsonify({
        'success': True,
        'department_id': department_id,
        'status': {key: status.to_dict() for key, status in statuses.items()},
    })


@cache_api_bp.route('/classroom/<department_id>', methods=['POST'])
def api_classroom_cache_refresh(department_id):
    """Phân tích lại bộ ảnh lớp học đã được nhúng"""
    department = app_globals.directory.get_department(department_id)
    if department is None:
        return error_response('Department not found.', 404)
    force = parse_bool(get_request_data().get('force'), False)
    results = app_globals.descriptor_store.refresh_classroom(department, force=force)
    return jsonify({
        'success': True,
        'department_id': department_id,
        'entries': {key: _entry_summary(entry) for key, entry in results.items()},
    })
