from __future__ import annotations

from datetime import datetime

import pytest

from core.attendance.recorder import (
    STATUS_DUPLICATE,
    STATUS_PRESENT,
    AttendanceSubmission,
    RecordingError,
    SqliteAttendanceRecorder,
)
from database import DatabaseManager

WHEN = datetime(2026, 3, 2, 9, 15, 0)


def _submission(**overrides):
    data = dict(
        student_id="u1",
        student_name="Lan",
        department_id="cs",
        timestamp=WHEN,
        mode=1,
        evidence=b"\xff\xd8fake-jpeg",
        confidence=0.93,
        session_id="abc123",
    )
    data.update(overrides)
    return AttendanceSubmission(**data)


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(tmp_path / "attendance.db")


def test_sqlite_recorder_writes_row_and_evidence(db, tmp_path):
    recorder = SqliteAttendanceRecorder(db=db, evidence_dir=tmp_path / "evidence")
    result = recorder.submit(_submission())

    assert result.status == STATUS_PRESENT
    assert result.record_id is not None
    assert result.evidence_path.endswith(".jpg")
    assert (tmp_path / "evidence" / "2026-03-02").is_dir()
    with open(result.evidence_path, "rb") as fh:
        assert fh.read().startswith(b"\xff\xd8")

    rows = db.get_attendance_by_date(WHEN.date(), "cs")
    assert len(rows) == 1
    assert rows[0]["student_id"] == "u1"
    assert rows[0]["mode"] == 1
    assert rows[0]["session_id"] == "abc123"
    assert rows[0]["confidence_score"] == pytest.approx(0.93)


def test_sqlite_recorder_duplicate_same_day(db, tmp_path):
    recorder = SqliteAttendanceRecorder(db=db, evidence_dir=tmp_path / "evidence")
    first = recorder.submit(_submission())
    second = recorder.submit(_submission(timestamp=WHEN.replace(hour=11), session_id="def456"))

    assert second.status == STATUS_DUPLICATE
    assert second.record_id == first.record_id
    assert len(db.get_attendance_by_date(WHEN.date())) == 1


def test_text_evidence_goes_to_notes(db, tmp_path):
    recorder = SqliteAttendanceRecorder(db=db, evidence_dir=tmp_path / "evidence")
    result = recorder.submit(_submission(evidence="Approved by staff"))

    assert result.evidence_path is None
    row = db.get_attendance_by_date(WHEN.date())[0]
    assert row["notes"] == "Approved by staff"


def test_database_errors_become_recording_errors(tmp_path):
    class BrokenDb:
        def mark_attendance(self, *args, **kwargs):
            raise RuntimeError("disk I/O error")

    recorder = SqliteAttendanceRecorder(db=BrokenDb(), evidence_dir=tmp_path / "evidence")
    with pytest.raises(RecordingError):
        recorder.submit(_submission())


def _evidence_files(root):
    return sorted(p for p in root.rglob("*.jpg"))


def test_duplicate_does_not_leave_evidence_behind(db, tmp_path):
    evidence = tmp_path / "evidence"
    recorder = SqliteAttendanceRecorder(db=db, evidence_dir=evidence)
    first = recorder.submit(_submission())
    second = recorder.submit(_submission(session_id="def456"))

    assert second.status == STATUS_DUPLICATE
    assert second.evidence_path is None
    assert [str(p) for p in _evidence_files(evidence)] == [first.evidence_path]


def test_failed_write_removes_evidence(tmp_path):
    class BrokenDb:
        def mark_attendance(self, *args, **kwargs):
            raise RuntimeError("database is locked")

    evidence = tmp_path / "evidence"
    recorder = SqliteAttendanceRecorder(db=BrokenDb(), evidence_dir=evidence)
    with pytest.raises(RecordingError):
        recorder.submit(_submission())
    assert _evidence_files(evidence) == []
