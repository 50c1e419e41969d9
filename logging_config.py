"""
Cấu hình logging cho pipeline xác minh điểm danh

Log chung và log lỗi gắn vào root logger; hai logger miền có file riêng:
'security' (mã lớp học, QR token) và 'verification' (chuyển trạng thái các bước).
"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s'
DOMAIN_LOG_FILES = {
    'security': 'security.log',
    'verification': 'verification.log',
}


def _rotating_handler(path, level, formatter, max_log_size, backup_count):
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_log_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _replace_handlers(logger, handlers):
    """Gỡ handler cũ (gọi setup nhiều lần, ví dụ trong test) rồi gắn handler mới"""
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def setup_logging(app=None, log_level='INFO', log_dir='logs', max_log_size=10*1024*1024, backup_count=5):
    """
    Thiết lập logging cho ứng dụng (Flask hoặc kiosk console)

    Args:
        app: Flask app instance (None khi chạy kiosk)
        log_level: Mức độ log (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Thư mục chứa file log
        max_log_size: Kích thước tối đa của file log (bytes)
        backup_count: Số lượng file log backup
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, str(log_level).upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    _replace_handlers(root_logger, [
        _rotating_handler(log_dir / 'attendance_system.log', level, formatter, max_log_size, backup_count),
        console_handler,
        _rotating_handler(log_dir / 'errors.log', logging.ERROR, formatter, max_log_size, backup_count),
    ])

    # Logger miền: vẫn lan truyền lên root, thêm file riêng để tra cứu
    for name, filename in DOMAIN_LOG_FILES.items():
        domain_logger = logging.getLogger(name)
        domain_logger.setLevel(logging.INFO)
        _replace_handlers(domain_logger, [
            _rotating_handler(log_dir / filename, logging.INFO, formatter, max_log_size, backup_count),
        ])

    startup_logger = app.logger if app is not None else logging.getLogger('verification')
    if app is not None:
        app.logger.setLevel(level)

    startup_logger.info("=" * 50)
    startup_logger.info("ATTENDANCE VERIFICATION STARTUP")
    startup_logger.info(f"Timestamp: {datetime.now().isoformat()}")
    startup_logger.info(f"Log Level: {logging.getLevelName(level)}")
    startup_logger.info(f"Log Directory: {log_dir.absolute()}")
    startup_logger.info("=" * 50)


class SecurityLogger:
    """Logger chuyên dụng cho các sự kiện bảo mật (mã lớp học, QR token)"""

    def __init__(self):
        self.logger = logging.getLogger('security')

    def log_code_validation(self, department_id, user_id, success, reason):
        """Log kiểm tra mã 6 số"""
        status = "ACCEPTED" if success else "REJECTED"
        self.logger.info(f"CLASSROOM CODE {status} - Dept: {department_id}, User: {user_id}, Reason: {reason}")

    def log_qr_validation(self, department_id, user_id, success, reason):
        """Log kiểm tra QR token"""
        status = "ACCEPTED" if success else "REJECTED"
        self.logger.info(f"QR TOKEN {status} - Dept: {department_id}, User: {user_id}, Reason: {reason}")

    def log_code_issued(self, department_id, kind, expires_at):
        """Log phát hành mã mới"""
        self.logger.info(f"CODE ISSUED - Dept: {department_id}, Kind: {kind}, Expires: {expires_at.isoformat()}")


class VerificationLogger:
    """Logger chuyên dụng cho các bước xác minh"""

    def __init__(self):
        self.logger = logging.getLogger('verification')

    def log_step(self, session_id, step, status, message=None):
        """Log chuyển trạng thái của một bước"""
        message_info = f", Message: {message}" if message else ""
        self.logger.info(f"Step {step} -> {status} - Session: {session_id}{message_info}")

    def log_completed(self, session_id, user_id, department_id, mode):
        """Log phiên hoàn tất"""
        self.logger.info(
            f"Verification completed - Session: {session_id}, User: {user_id}, Dept: {department_id}, Mode: {mode}"
        )

    def log_abandoned(self, session_id, step):
        """Log phiên bị hủy"""
        self.logger.info(f"Verification abandoned - Session: {session_id}, At step: {step}")


class APILogger:
    """Logger chuyên dụng cho API calls"""

    def __init__(self):
        self.logger = logging.getLogger('api')

    def log_request(self, method, endpoint, user_id=None, ip_address=None):
        """Log yêu cầu API"""
        user_info = f", User: {user_id}" if user_id else ""
        ip_info = f", IP: {ip_address}" if ip_address else ""
        self.logger.info(f"API Request - {method} {endpoint}{user_info}{ip_info}")

    def log_error(self, endpoint, error_message, status_code=500):
        """Log lỗi API"""
        self.logger.error(f"API Error - {endpoint}, Status: {status_code}, Error: {error_message}")


# Các instance logger toàn cục
security_logger = SecurityLogger()
verification_logger = VerificationLogger()
api_logger = APILogger()


def get_client_ip(request):
    """Lấy IP address của client"""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    elif request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    else:
        return request.remote_addr


def log_request_info(request, user_id=None):
    """Log thông tin request"""
    ip_address = get_client_ip(request)
    api_logger.log_request(
        request.method,
        request.endpoint,
        user_id=user_id,
        ip_address=ip_address
    )
    return ip_address
