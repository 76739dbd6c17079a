"""Tests for sensitive data filtering and request correlation in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

from freelance_throttle.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    set_request_id,
)


def _capture(name: str) -> tuple[logging.Logger, StringIO]:
    logger = logging.getLogger(name)
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


def test_sensitive_filter_redacts_credentials():
    logger, stream = _capture("test_redaction")

    logger.info(
        "cache.initialized",
        extra={
            "password": "hunter2",
            "redis_url": "redis://:hunter2@cache:6379/0",
            "backend": "cache:6379/0",
        },
    )

    output = stream.getvalue()
    assert "hunter2" not in output
    assert "[REDACTED]" in output
    assert "cache:6379/0" in output


def test_sensitive_filter_allows_rate_limit_fields():
    logger, stream = _capture("test_safe_fields")

    logger.info(
        "rate_limit.exceeded",
        extra={
            "policy": "auth",
            "requester": "ip:1.2.3.4",
            "limit": 5,
            "retry_after_s": 60,
        },
    )

    record = json.loads(stream.getvalue())
    assert record["message"] == "rate_limit.exceeded"
    assert record["policy"] == "auth"
    assert record["requester"] == "ip:1.2.3.4"
    assert record["retry_after_s"] == 60
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts():
    logger, stream = _capture("test_nested")

    logger.info(
        "nested_event",
        extra={
            "headers": {
                "authorization": "Bearer secret-token",
                "user-agent": "pytest",
            },
        },
    )

    output = stream.getvalue()
    assert "secret-token" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output


def test_request_id_is_attached_to_records():
    logger, stream = _capture("test_request_id")

    set_request_id("req-123")
    try:
        logger.info("cache.hit")
    finally:
        clear_request_id()

    assert json.loads(stream.getvalue())["request_id"] == "req-123"
