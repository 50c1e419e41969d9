"""
Database module for the attendance verification pipeline
Lưu bản ghi điểm danh (SQLite) sau khi phiên xác minh hoàn tất
"""

import sqlite3
from datetime import datetime
from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class DatabaseManager:
    def __init__(self, db_path="attendance_system.db"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def get_connection(self):
        """Tạo kết nối database"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row  # Cho phép truy cập theo tên cột
        return conn

    def init_database(self):
        """Khởi tạo database và các bảng"""
        with self.get_connection() as conn:
            cursor = conn.cursor()

            # Bảng điểm danh
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS attendance (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    student_id VARCHAR(50) NOT NULL,
                    student_name VARCHAR(100) NOT NULL,
                    department_id VARCHAR(50) NOT NULL,
                    attendance_date DATE NOT NULL,
                    check_in_time TIMESTAMP NOT NULL,
                    status VARCHAR(20) DEFAULT 'Present',
                    mode INTEGER NOT NULL,
                    confidence_score REAL,
                    verification_photo_path VARCHAR(255),
                    notes TEXT,
                    marked_by VARCHAR(20) DEFAULT 'student',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_attendance_student_day
                ON attendance (student_id, department_id, attendance_date)
            ''')

            self._ensure_column(cursor, 'attendance', 'session_id', 'VARCHAR(64)')
            conn.commit()
            logger.info("Database initialized at %s", self.db_path)

    def _ensure_column(self, cursor, table_name, column_name, column_def):
        """Thêm cột nếu bảng cũ chưa có"""
        cursor.execute(f"PRAGMA table_info({table_name})")
        columns = {row['name'] for row in cursor.fetchall()}
        if column_name not in columns:
            cursor.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_def}")

    def mark_attendance(self, student_id, student_name, department_id, mode, status='Present',
                        confidence_score=None, verification_photo_path=None, notes=None,
                        marked_by='student', session_id=None, when=None):
        """Điểm danh sinh viên cho một khoa

        Returns:
            (record_id, created): created=False nếu sinh viên đã điểm danh hôm nay
        """
        when = when or datetime.now()
        day = when.date().isoformat()

        with self.get_connection() as conn:
            cursor = conn.cursor()

            # Kiểm tra xem đã điểm danh chưa
            cursor.execute('''
                SELECT id FROM attendance
                WHERE student_id = ? AND department_id = ? AND attendance_date = ?
            ''', (student_id, department_id, day))

            existing = cursor.fetchone()
            if existing:
                logger.info(f"Student {student_name} already marked present today in {department_id}")
                return existing['id'], False

            cursor.execute('''
                INSERT INTO attendance (
                    student_id, student_name, department_id, attendance_date, check_in_time,
                    status, mode, confidence_score, verification_photo_path, notes, marked_by, session_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (student_id, student_name, department_id, day, when.isoformat(), status, mode,
                  confidence_score, verification_photo_path, notes, marked_by, session_id))

            conn.commit()
            logger.info(f"Marked attendance for {student_name} ({student_id}) in {department_id}")
            return cursor.lastrowid, True

    def get_attendance_by_date(self, attendance_date, department_id=None):
        """Lấy điểm danh theo ngày (có thể lọc theo khoa)"""
        query = 'SELECT * FROM attendance WHERE attendance_date = ?'
        params = [attendance_date.isoformat() if hasattr(attendance_date, 'isoformat') else attendance_date]
        if department_id:
            query += ' AND department_id = ?'
            params.append(department_id)
        query += ' ORDER BY check_in_time DESC'

        with self.get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]
