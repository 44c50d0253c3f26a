import uuid

import pytest

from otcauth.logging import (
    _add_correlation_id,
    _add_service,
    _env_flag,
    _redact_pii,
    correlation_id_var,
    mask_phone_number,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def clear_correlation_id():
    token = correlation_id_var.set(None)
    yield
    correlation_id_var.reset(token)


def test_mask_phone_number():
    assert mask_phone_number("+1234567890") == "+12***90"
    assert mask_phone_number("+123") == "***"


def test_redaction_masks_codes_tokens_and_phones():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "otp_delivered",
            "phone_number": "+1234567890",
            "code": "123456",
            "session_handle": "abcdef0123456789",
            "token": "eyJhbGciOi.payload.sig",
            "user_id": "user-1",
            "attempts": 3,
        },
    )

    assert event["phone_number"] == "+12***90"
    assert event["code"] == "***"
    assert event["session_handle"] == "ab***89"
    assert event["token"] == "ey***ig"
    assert event["user_id"] == "user-1"
    assert event["attempts"] == 3
    assert event["event"] == "otp_delivered"


def test_error_code_fields_are_fully_masked():
    event = _redact_pii(None, "warning", {"otp_code": "987654"})
    assert event["otp_code"] == "***"


def test_correlation_id_is_generated_and_attached():
    cid = set_correlation_id()
    uuid.UUID(cid)
    assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid


def test_explicit_correlation_id_is_kept():
    assert set_correlation_id("req-1") == "req-1"


def test_no_correlation_id_outside_requests():
    assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})


def test_error_code_label_is_not_masked():
    event = _redact_pii(None, "warning", {"error_code": "rate_limited", "event": "service_error"})
    assert event["error_code"] == "rate_limited"


def test_service_name_is_attached():
    assert _add_service(None, "info", {"event": "x"})["service"] == "otcauth"


@pytest.mark.parametrize(
    "raw, expected",
    [("true", True), ("1", True), (" YES ", True), ("false", False), ("off", False)],
)
def test_env_flag(monkeypatch, raw, expected):
    monkeypatch.setenv("LOG_JSON", raw)
    assert _env_flag("LOG_JSON", not expected) is expected


def test_env_flag_default(monkeypatch):
    monkeypatch.delenv("LOG_DEV_MODE", raising=False)
    assert _env_flag("LOG_DEV_MODE", False) is False
