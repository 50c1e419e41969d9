from __future__ import annotations

import cv2
import numpy as np
import pytest

from core.verification.codes import (
    MSG_CODE_EXPIRED,
    MSG_CODE_FORMAT,
    MSG_CODE_INVALID,
    MSG_CODE_NONE,
    MSG_CODE_OK,
    MSG_CODE_REUSED,
    MSG_QR_EXPIRED,
    MSG_QR_MALFORMED,
    MSG_QR_NONE,
    MSG_QR_OK,
    MSG_QR_STALE,
    MSG_QR_WRONG_DEPT,
    decode_qr_from_frame,
    parse_qr_token,
    render_qr_png,
)


def _other_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


def test_issue_classroom_code_is_six_digits(codes):
    code = codes.issue_classroom_code("cs")
    assert len(code.code) == 6 and code.code.isdigit()
    assert code.expires_at - code.issued_at == 120
    assert codes.active_classroom_code("cs") is code


def test_validate_classroom_code_happy_path(codes):
    code = codes.issue_classroom_code("cs")
    result = codes.validate_classroom_code("cs", code.code, "u1")
    assert result.success is True
    assert result.message == MSG_CODE_OK


def test_validate_classroom_code_messages(codes, code_clock):
    assert codes.validate_classroom_code("cs", "123456").message == MSG_CODE_NONE
    assert codes.validate_classroom_code("cs", "12ab").message == MSG_CODE_FORMAT

    code = codes.issue_classroom_code("cs")
    wrong = codes.validate_classroom_code("cs", _other_code(code.code))
    assert wrong.success is False
    assert wrong.message == MSG_CODE_INVALID

    code_clock.advance(120)
    expired = codes.validate_classroom_code("cs", code.code)
    assert expired.success is False
    assert expired.message == MSG_CODE_EXPIRED
    assert codes.active_classroom_code("cs") is None


def test_classroom_code_is_bound_to_department(codes):
    code = codes.issue_classroom_code("cs")
    codes.issue_classroom_code("math")
    assert codes.validate_classroom_code("bio", code.code).message == MSG_CODE_NONE


def test_classroom_code_single_use_per_user(codes):
    code = codes.issue_classroom_code("cs")
    assert codes.validate_classroom_code("cs", code.code, "u1").success
    again = codes.validate_classroom_code("cs", code.code, "u1")
    assert again.success is False
    assert again.message == MSG_CODE_REUSED
    assert codes.validate_classroom_code("cs", code.code, "u2").success


def test_reissue_replaces_previous_code(codes):
    first = codes.issue_classroom_code("cs")
    second = codes.issue_classroom_code("cs")
    if first.code != second.code:
        assert codes.validate_classroom_code("cs", first.code).message == MSG_CODE_INVALID
    assert codes.clear_classroom_code("cs") is True
    assert codes.validate_classroom_code("cs", second.code).message == MSG_CODE_NONE


def test_qr_token_wire_format_round_trip(codes):
    token = codes.issue_qr_token("cs")
    text = token.encode()
    assert text.startswith("tracein-qr;dept:cs;ts:")
    parsed = parse_qr_token(text)
    assert parsed.department_id == "cs"
    assert parsed.nonce == token.nonce
    assert parse_qr_token("https://example.com") is None
    assert parse_qr_token("") is None


def test_qr_token_validation(codes, code_clock):
    assert codes.validate_qr_token("cs", "garbage").message == MSG_QR_MALFORMED

    token = codes.current_qr_token("cs")
    assert codes.validate_qr_token("math", token.encode()).message == MSG_QR_WRONG_DEPT
    assert codes.validate_qr_token("bio", token.encode().replace("dept:cs", "dept:bio")).message == MSG_QR_NONE

    result = codes.validate_qr_token("cs", token.encode(), "u1")
    assert result.success is True
    assert result.message == MSG_QR_OK

    # rotated after a successful scan
    replay = codes.validate_qr_token("cs", token.encode(), "u2")
    assert replay.success is False
    assert replay.message == MSG_QR_STALE


def test_qr_token_expires_and_refreshes(codes, code_clock):
    token = codes.current_qr_token("cs")
    code_clock.advance(30)
    assert codes.validate_qr_token("cs", token.encode()).message == MSG_QR_EXPIRED
    assert codes.current_qr_token("cs", refresh=False) is None

    fresh = codes.current_qr_token("cs")
    assert fresh.encode() != token.encode()
    assert codes.validate_qr_token("cs", fresh.encode()).success


def test_current_qr_token_is_stable_within_interval(codes, code_clock):
    first = codes.current_qr_token("cs")
    code_clock.advance(10)
    assert codes.current_qr_token("cs") is first


def test_rendered_qr_decodes_from_frame(codes):
    text = codes.current_qr_token("cs").encode()
    png = render_qr_png(text)
    assert png.startswith(b"\x89PNG")

    frame = cv2.imdecode(np.frombuffer(png, dtype=np.uint8), cv2.IMREAD_COLOR)
    frame = cv2.copyMakeBorder(frame, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=(255, 255, 255))
    assert decode_qr_from_frame(frame) == text


def test_decode_qr_from_blank_frame_returns_none():
    blank = np.full((120, 120, 3), 255, dtype=np.uint8)
    assert decode_qr_from_frame(blank) is None


@pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef"])
def test_malformed_codes_rejected_before_lookup(codes, code):
    codes.issue_classroom_code("cs")
    assert codes.validate_classroom_code("cs", code).message == MSG_CODE_FORMAT
