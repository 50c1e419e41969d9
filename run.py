"""
Application entry point
File khởi chạy API xác minh điểm danh (Flask)
"""
import atexit
import os

from dotenv import load_dotenv

load_dotenv()

from app import create_app
from app import globals as app_globals

app = create_app()

# Hủy các phiên còn mở khi tiến trình dừng để trả lại camera
atexit.register(app_globals.orchestrator.shutdown)

if __name__ == '__main__':
    host = os.getenv('FLASK_HOST', '0.0.0.0')
    port = int(os.getenv('FLASK_PORT', 5000))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() in ('true', '1', 'yes')

    app.logger.info(f"🚀 Verification API listening on {host}:{port} (debug={debug})")
    app.run(host=host, port=port, debug=debug, threaded=True)
