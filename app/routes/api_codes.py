"""
API routes for rotating codes (staff tooling)
Phát hành / thu hồi mã lớp học 6 số và mã QR xoay vòng
"""
from flask import Blueprint, Response, jsonify

from app import globals as app_globals
from app.utils import error_response
from core.verification.codes import render_qr_png

codes_api_bp = Blueprint('codes_api', __name__, url_prefix='/api/codes')


def _require_department(department_id):
    return app_globals.directory.get_department(department_id)


@codes_api_bp.route('/<department_id>/classroom', methods=['POST'])
def api_issue_classroom_code(department_id):
    """Phát hành mã lớp học mới (thay thế mã cũ)"""
    if _require_department(department_id) is None:
        return error_response('Department not found.', 404)
    code = app_globals.code_registry.issue_classroom_code(department_id)
    return jsonify({'success': True, **code.to_dict()}), 201


@codes_api_bp.route('/<department_id>/classroom', methods=['DELETE'])
def api_clear_classroom_code(department_id):
    """Thu hồi mã lớp học hiện tại"""
    cleared = app_globals.code_registry.clear_classroom_code(department_id)
    return jsonify({'success': True, 'cleared': cleared})


@codes_api_bp.route('/<department_id>/qr', methods=['POST'])
def api_issue_qr_token(department_id):
    """Phát hành token QR mới"""
    if _require_department(department_id) is None:
        return error_response('Department not found.', 404)
    token = app_globals.code_registry.issue_qr_token(department_id)
    return jsonify({'success': True, 'token': token.encode(), 'issued_at': token.issued_at}), 201


@codes_api_bp.route('/<department_id>/qr.png', methods=['GET'])
def api_qr_image(department_id):
    """Ảnh PNG của token QR đang hiển thị (tự làm mới khi hết hạn)"""
    if _require_department(department_id) is None:
        return error_response('Department not found.', 404)
    token = app_globals.code_registry.current_qr_token(department_id)
    response = Response(render_qr_png(token.encode()), mimetype='image/png')
    response.headers['Cache-Control'] = 'no-store'
    return response
