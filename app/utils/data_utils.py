"""
Data utilities
Helper functions cho data transformation và validation
"""
from flask import request


def get_request_data():
    """Lấy request data từ JSON hoặc form."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def parse_bool(value, default=None):
    """
    Phân tích giá trị boolean từ string, int, hoặc bool.
    Returns: True, False, hoặc default nếu không xác định được.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in ('true', '1', 'yes', 'on'):
            return True
        if lower in ('false', '0', 'no', 'off'):
            return False
    return default


def parse_float(value, default=None):
    """Phân tích số thực, trả về default nếu không hợp lệ."""
    if value is None or value == '':
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_int(value, default=None):
    """Phân tích số nguyên, trả về default nếu không hợp lệ."""
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def error_response(message, status_code=400):
    """Trả về JSON lỗi thống nhất."""
    from flask import jsonify
    from logging_config import api_logger

    api_logger.log_error(request.path, message, status_code)
    return jsonify({'success': False, 'message': message}), status_code
