# config.py - Configuration and constants for the attendance verification pipeline

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Flask app configuration
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB

# Data locations
DATA_DIR = Path(os.getenv('DATA_DIR', 'data'))
DIRECTORY_PATH = Path(os.getenv('DIRECTORY_PATH', str(DATA_DIR / 'directory.json')))
EVIDENCE_DIR = Path(os.getenv('EVIDENCE_DIR', str(DATA_DIR / 'evidence')))
DATABASE_PATH = os.getenv('DATABASE_PATH', 'attendance_system.db')
# Empty -> descriptors live only in process memory (session scope)
DESCRIPTOR_CACHE_PATH = os.getenv('DESCRIPTOR_CACHE_PATH', '')

# Camera configuration (front camera for face, rear camera for classroom/QR)
FRONT_CAMERA_INDEX = int(os.getenv('FRONT_CAMERA_INDEX', os.getenv('CAMERA_INDEX', '0')))
REAR_CAMERA_INDEX = int(os.getenv('REAR_CAMERA_INDEX', os.getenv('CAMERA_INDEX', '0')))
CAMERA_WIDTH = int(os.getenv('CAMERA_WIDTH', '640'))
CAMERA_HEIGHT = int(os.getenv('CAMERA_HEIGHT', '480'))
CAMERA_WARMUP_FRAMES = int(os.getenv('CAMERA_WARMUP_FRAMES', '3'))
CAMERA_BUFFER_SIZE = int(os.getenv('CAMERA_BUFFER_SIZE', '2'))

# Face descriptor extraction
FACE_ENCODER = os.getenv('FACE_ENCODER', 'face_recognition')
DEEPFACE_MODEL = os.getenv('DEEPFACE_MODEL', 'Facenet')
IMAGE_FETCH_TIMEOUT = float(os.getenv('IMAGE_FETCH_TIMEOUT', '10'))

# Face matching
SIMILARITY_THRESHOLD = float(os.getenv('SIMILARITY_THRESHOLD', '0.55'))
FACE_SCAN_INTERVAL = float(os.getenv('FACE_SCAN_INTERVAL', '0.5'))
FACE_SCAN_TIMEOUT = float(os.getenv('FACE_SCAN_TIMEOUT', '0'))  # 0 = không giới hạn
FACE_LIVENESS_REQUIRED = os.getenv('FACE_LIVENESS_REQUIRED', '0') == '1'
SMILE_THRESHOLD = float(os.getenv('SMILE_THRESHOLD', '0.8'))

# Geolocation
GEO_TIMEOUT_SECONDS = float(os.getenv('GEO_TIMEOUT_SECONDS', '20'))

# Classroom presence
PRESENCE_CLASSROOM_SCORING = os.getenv('PRESENCE_CLASSROOM_SCORING', '0') == '1'
CLASSROOM_MATCH_THRESHOLD = float(os.getenv('CLASSROOM_MATCH_THRESHOLD', '0.5'))
USER_IN_CLASSROOM_THRESHOLD = float(os.getenv('USER_IN_CLASSROOM_THRESHOLD', '0.45'))

# Verification sessions
SESSION_IDLE_TIMEOUT = float(os.getenv('SESSION_IDLE_TIMEOUT', '600'))  # seconds, 0 = giữ mãi
FINISHED_SESSION_HISTORY = int(os.getenv('FINISHED_SESSION_HISTORY', '50'))

# Rotating codes
CLASSROOM_CODE_TTL = int(os.getenv('CLASSROOM_CODE_TTL', '120'))  # seconds
QR_REFRESH_INTERVAL = int(os.getenv('QR_REFRESH_INTERVAL', '30'))  # seconds

# Logging
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
LOG_DIR = Path(os.getenv('LOG_DIR', 'logs'))
