"""Tests for sensitive data filtering and JSON output in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from serviplay.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    hash_for_log,
    set_request_id,
)


@pytest.fixture
def capture() -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger("test_serviplay_logging")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    return logger, stream


def test_redacts_tokens_and_passwords(capture):
    logger, stream = capture

    logger.info(
        "auth.login",
        extra={
            "password": "hunter2",
            "refresh_token": "eyJhbGciOi.refresh",
            "user_type": "as",
        },
    )

    output = stream.getvalue()
    assert "hunter2" not in output
    assert "eyJhbGciOi" not in output
    assert "[REDACTED]" in output
    assert '"user_type": "as"' in output


def test_redacts_redis_url_in_nested_payload(capture):
    logger, stream = capture

    logger.info(
        "cache.configured",
        extra={"redis": {"url": "redis://:s3cret@cache:6379/0", "db": 0}},
    )

    payload = json.loads(stream.getvalue())
    assert payload["redis"] == {"url": "[REDACTED]", "db": 0}


def test_rate_limit_fields_pass_through(capture):
    logger, stream = capture

    logger.warning(
        "rate_limit.exceeded",
        extra={"key_hash": hash_for_log("rate_limit:10.0.0.1"), "limit": 5, "retry_after_s": 900},
    )

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "rate_limit.exceeded"
    assert payload["level"] == "warning"
    assert payload["limit"] == 5
    assert payload["retry_after_s"] == 900
    assert "10.0.0.1" not in stream.getvalue()


def test_request_id_from_context(capture):
    logger, stream = capture

    set_request_id("req-123")
    try:
        logger.info("http.request", extra={"status_code": 200})
    finally:
        clear_request_id()

    assert json.loads(stream.getvalue())["request_id"] == "req-123"


def test_hash_for_log_is_stable_and_short():
    assert hash_for_log("abc") == hash_for_log("abc")
    assert hash_for_log("abc") != hash_for_log("abd")
    assert len(hash_for_log("abc")) == 16
