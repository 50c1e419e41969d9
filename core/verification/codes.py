"""Rotating classroom codes and QR tokens.

Staff tooling issues codes; verification steps only validate them. Both kinds
are short-lived and bound to one department. Classroom codes are accepted
once per user until they expire; QR tokens are accepted once in total and
the department's token rotates immediately after a successful scan.
"""
from __future__ import annotations

import hmac
import io
import logging
import re
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

import cv2
import numpy as np
import qrcode

from logging_config import security_logger

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

QR_PREFIX = "tracein-qr"
CODE_LENGTH = 6

MSG_CODE_FORMAT = "Enter the 6-digit code provided by your teacher."
MSG_CODE_NONE = "No active code for this department."
MSG_CODE_INVALID = "Invalid code."
MSG_CODE_EXPIRED = "This code has expired. Ask your teacher for a new one."
MSG_CODE_REUSED = "You have already used this code."
MSG_CODE_OK = "Classroom code verified."

MSG_QR_MALFORMED = "This is not an attendance QR code."
MSG_QR_WRONG_DEPT = "This QR code belongs to a different department."
MSG_QR_NONE = "No active QR code for this department."
MSG_QR_STALE = "This QR code is no longer valid. Scan the code currently displayed."
MSG_QR_EXPIRED = "This QR code has expired. Scan the code currently displayed."
MSG_QR_OK = "QR Code Validated!"


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class CodeValidation:
    success: bool
    message: str


@dataclass
class ClassroomCode:
    department_id: str
    code: str
    issued_at: float
    expires_at: float
    used_by: Set[str] = field(default_factory=set)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "department_id": self.department_id,
            "code": self.code,
            "issued_at": _utc(self.issued_at).isoformat(),
            "expires_at": _utc(self.expires_at).isoformat(),
        }


@dataclass(frozen=True)
class RotatingCodeToken:
    department_id: str
    issued_at: float
    nonce: str

    def encode(self) -> str:
        return f"{QR_PREFIX};dept:{self.department_id};ts:{int(self.issued_at * 1000)};rand:{self.nonce}"


_QR_PATTERN = re.compile(r"^tracein-qr;dept:(?P<dept>[^;]+);ts:(?P<ts>\d+);rand:(?P<rand>[^;]+)$")


def parse_qr_token(text: str) -> Optional[RotatingCodeToken]:
    """Parse the wire form ``tracein-qr;dept:<id>;ts:<ms>;rand:<nonce>``."""
    if not text:
        return None
    match = _QR_PATTERN.match(text.strip())
    if not match:
        return None
    return RotatingCodeToken(
        department_id=match.group("dept"),
        issued_at=int(match.group("ts")) / 1000.0,
        nonce=match.group("rand"),
    )


def decode_qr_from_frame(bgr: np.ndarray) -> Optional[str]:
    """Decoded QR payload from a camera frame, or None when nothing readable is visible."""
    detector = cv2.QRCodeDetector()
    try:
        text, points, _ = detector.detectAndDecode(bgr)
    except cv2.error as exc:
        logger.debug("[QR] detectAndDecode failed: %s", exc)
        return None
    if points is None or not text:
        return None
    return text


def render_qr_png(data: str, box_size: int = 10, border: int = 2) -> bytes:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class RotatingCodeRegistry:
    """Thread-safe store of the active classroom code and QR token per department."""

    def __init__(
        self,
        *,
        classroom_ttl: float = 120.0,
        qr_ttl: float = 30.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._classroom_ttl = classroom_ttl
        self._qr_ttl = qr_ttl
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._classroom: Dict[str, ClassroomCode] = {}
        self._qr: Dict[str, RotatingCodeToken] = {}

    # ------------------------------------------------------------------
    # Classroom codes
    # ------------------------------------------------------------------
    def issue_classroom_code(self, department_id: str) -> ClassroomCode:
        now = self._clock()
        code = ClassroomCode(
            department_id=department_id,
            code=f"{secrets.randbelow(10 ** CODE_LENGTH):0{CODE_LENGTH}d}",
            issued_at=now,
            expires_at=now + self._classroom_ttl,
        )
        with self._lock:
            self._classroom[department_id] = code
        security_logger.log_code_issued(department_id, "classroom", _utc(code.expires_at))
        return code

    def clear_classroom_code(self, department_id: str) -> bool:
        with self._lock:
            return self._classroom.pop(department_id, None) is not None

    def active_classroom_code(self, department_id: str) -> Optional[ClassroomCode]:
        with self._lock:
            code = self._classroom.get(department_id)
            if code is None or code.is_expired(self._clock()):
                return None
            return code

    def validate_classroom_code(
        self, department_id: str, code: str, user_id: Optional[str] = None
    ) -> CodeValidation:
        result = self._validate_classroom_locked(department_id, (code or "").strip(), user_id)
        security_logger.log_code_validation(department_id, user_id, result.success, result.message)
        return result

    def _validate_classroom_locked(self, department_id: str, code: str, user_id: Optional[str]) -> CodeValidation:
        if len(code) != CODE_LENGTH or not code.isdigit():
            return CodeValidation(False, MSG_CODE_FORMAT)
        with self._lock:
            active = self._classroom.get(department_id)
            if active is None:
                return CodeValidation(False, MSG_CODE_NONE)
            if not hmac.compare_digest(active.code, code):
                return CodeValidation(False, MSG_CODE_INVALID)
            if active.is_expired(self._clock()):
                return CodeValidation(False, MSG_CODE_EXPIRED)
            if user_id is not None:
                if user_id in active.used_by:
                    return CodeValidation(False, MSG_CODE_REUSED)
                active.used_by.add(user_id)
            return CodeValidation(True, MSG_CODE_OK)

    # ------------------------------------------------------------------
    # QR tokens
    # ------------------------------------------------------------------
    def issue_qr_token(self, department_id: str) -> RotatingCodeToken:
        token = RotatingCodeToken(
            department_id=department_id,
            issued_at=self._clock(),
            nonce=secrets.token_hex(8),
        )
        with self._lock:
            self._qr[department_id] = token
        logger.debug("[QR] Issued token for %s", department_id)
        return token

    def current_qr_token(self, department_id: str, *, refresh: bool = True) -> Optional[RotatingCodeToken]:
        """Token currently on display; a missing or expired one is replaced when ``refresh``."""
        with self._lock:
            token = self._qr.get(department_id)
            if token is not None and self._clock() < token.issued_at + self._qr_ttl:
                return token
            if not refresh:
                return None
            return self.issue_qr_token(department_id)

    def validate_qr_token(self, department_id: str, text: str, user_id: Optional[str] = None) -> CodeValidation:
        result = self._validate_qr_locked(department_id, text)
        security_logger.log_qr_validation(department_id, user_id, result.success, result.message)
        return result

    def _validate_qr_locked(self, department_id: str, text: str) -> CodeValidation:
        token = parse_qr_token(text)
        if token is None:
            return CodeValidation(False, MSG_QR_MALFORMED)
        if token.department_id != department_id:
            return CodeValidation(False, MSG_QR_WRONG_DEPT)
        with self._lock:
            active = self._qr.get(department_id)
            if active is None:
                return CodeValidation(False, MSG_QR_NONE)
            if not hmac.compare_digest(active.encode(), token.encode()):
                return CodeValidation(False, MSG_QR_STALE)
            if self._clock() >= active.issued_at + self._qr_ttl:
                return CodeValidation(False, MSG_QR_EXPIRED)
            # single use: the next scan needs the freshly displayed token
            self.issue_qr_token(department_id)
            return CodeValidation(True, MSG_QR_OK)


__all__ = [
    "ClassroomCode",
    "CodeValidation",
    "MSG_CODE_EXPIRED",
    "MSG_CODE_INVALID",
    "MSG_CODE_NONE",
    "RotatingCodeRegistry",
    "RotatingCodeToken",
    "decode_qr_from_frame",
    "parse_qr_token",
    "render_qr_png",
]
