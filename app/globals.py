"""
Global state module
Các singleton dịch vụ được khởi tạo trong app/__init__.py
"""
import threading
from dataclasses import dataclass, field

from core.verification.geo import ReportedLocationProvider
from core.vision.camera_manager import FrameBufferCameraPool

# =============================================================================
# SERVICES: Sẽ được khởi tạo trong create_app()
# =============================================================================

directory = None
descriptor_store = None
code_registry = None
inference_engine = None
orchestrator = None
database = None


# =============================================================================
# WEB SESSION I/O: camera + vị trí do trình duyệt gửi lên cho từng phiên
# =============================================================================

@dataclass
class SessionIO:
    cameras: FrameBufferCameraPool = field(default_factory=FrameBufferCameraPool)
    location: ReportedLocationProvider = field(default_factory=ReportedLocationProvider)


session_io = {}
session_io_lock = threading.Lock()


def open_session_io():
    """Tạo bộ camera/vị trí mới cho một phiên web."""
    return SessionIO()


def register_session_io(session_id, io):
    with session_io_lock:
        session_io[session_id] = io


def get_session_io(session_id):
    with session_io_lock:
        return session_io.get(session_id)


def drop_session_io(session_id):
    with session_io_lock:
        return session_io.pop(session_id, None)
