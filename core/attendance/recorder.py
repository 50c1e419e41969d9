"""Attendance hand-off once a verification session completes."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

from werkzeug.utils import secure_filename

STATUS_PRESENT = "Present"
STATUS_DUPLICATE = "AlreadyMarked"


class RecordingError(RuntimeError):
    """Raised when an attendance record could not be written."""


@dataclass(frozen=True)
class AttendanceSubmission:
    student_id: str
    student_name: str
    department_id: str
    timestamp: datetime
    mode: int
    # JPEG bytes of the verified frame, or an approval reason string
    evidence: Union[bytes, str, None]
    confidence: float = 0.0
    session_id: Optional[str] = None
    marked_by: str = "student"


@dataclass(frozen=True)
class RecordingResult:
    status: str
    confidence: float
    record_id: Optional[int] = None
    evidence_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "confidence": round(self.confidence, 3),
            "record_id": self.record_id,
            "evidence_path": self.evidence_path,
        }


class AttendanceRecorder(Protocol):
    def submit(self, submission: AttendanceSubmission) -> RecordingResult:
        ...


class SqliteAttendanceRecorder:
    """Writes the verified frame to disk and the attendance row to SQLite."""

    def __init__(self, *, db: Any, evidence_dir: Path, logger: Optional[logging.Logger] = None) -> None:
        self._db = db
        self._evidence_dir = Path(evidence_dir)
        self._logger = logger or logging.getLogger(__name__)

    def _save_evidence(self, submission: AttendanceSubmission) -> Optional[str]:
        if not isinstance(submission.evidence, (bytes, bytearray)):
            return None
        stamp = submission.timestamp.strftime("%Y%m%d_%H%M%S")
        suffix = f"_{submission.session_id[:8]}" if submission.session_id else ""
        filename = secure_filename(f"{submission.student_id}_{submission.department_id}_{stamp}{suffix}.jpg")
        target_dir = self._evidence_dir / submission.timestamp.strftime("%Y-%m-%d")
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / filename
        path.write_bytes(bytes(submission.evidence))
        return str(path)

    def _drop_evidence(self, evidence_path: Optional[str]) -> None:
        if evidence_path is None:
            return
        try:
            Path(evidence_path).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._logger.warning("[Attendance] Không xóa được ảnh minh chứng %s: %s", evidence_path, exc)

    def submit(self, submission: AttendanceSubmission) -> RecordingResult:
        evidence_path = None
        try:
            evidence_path = self._save_evidence(submission)
            notes = submission.evidence if isinstance(submission.evidence, str) else None
            record_id, created = self._db.mark_attendance(
                submission.student_id,
                submission.student_name,
                submission.department_id,
                submission.mode,
                confidence_score=submission.confidence,
                verification_photo_path=evidence_path,
                notes=notes,
                marked_by=submission.marked_by,
                session_id=submission.session_id,
                when=submission.timestamp,
            )
        except Exception as exc:
            self._logger.error("[Attendance] ❌ Không thể lưu điểm danh %s: %s", submission.student_id, exc)
            self._drop_evidence(evidence_path)
            raise RecordingError(str(exc)) from exc

        if not created:
            # bản ghi đã có từ trước giữ ảnh minh chứng của nó
            self._drop_evidence(evidence_path)
            evidence_path = None

        status = STATUS_PRESENT if created else STATUS_DUPLICATE
        self._logger.info(
            "[Attendance] %s %s -> %s (record %s)",
            submission.student_id,
            submission.department_id,
            status,
            record_id,
        )
        return RecordingResult(
            status=status,
            confidence=submission.confidence,
            record_id=record_id,
            evidence_path=evidence_path,
        )


class InMemoryAttendanceRecorder:
    """Keeps submissions in a list; used by the kiosk dry-run and tests."""

    def __init__(self) -> None:
        self.submissions: List[AttendanceSubmission] = []
        self._lock = threading.Lock()

    def submit(self, submission: AttendanceSubmission) -> RecordingResult:
        with self._lock:
            duplicate = any(
                s.student_id == submission.student_id
                and s.department_id == submission.department_id
                and s.timestamp.date() == submission.timestamp.date()
                for s in self.submissions
            )
            if not duplicate:
                self.submissions.append(submission)
            return RecordingResult(
                status=STATUS_DUPLICATE if duplicate else STATUS_PRESENT,
                confidence=submission.confidence,
                record_id=None if duplicate else len(self.submissions),
            )


__all__ = [
    "AttendanceRecorder",
    "AttendanceSubmission",
    "InMemoryAttendanceRecorder",
    "RecordingError",
    "RecordingResult",
    "STATUS_DUPLICATE",
    "STATUS_PRESENT",
    "SqliteAttendanceRecorder",
]
