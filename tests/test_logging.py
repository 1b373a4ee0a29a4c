from __future__ import annotations

import json
import logging

import pytest

from sunrise.core.logging import (
    REDACTED,
    DevFormatter,
    JSONFormatter,
    StructuredLogger,
    build_entry,
    create_logger,
    parse_level,
    sanitize,
    serialize_error,
)


def _record(msg: str = "hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    rec = logging.LogRecord("sunrise", level, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_sanitize_redacts_nested_sensitive_keys():
    out = sanitize(
        {
            "email": "a@example.com",
            "password": "hunter2",
            "nested": {"apiKey": "abc", "items": [{"refreshToken": "x", "ok": 1}]},
        }
    )
    assert out["email"] == "a@example.com"
    assert out["password"] == REDACTED
    assert out["nested"]["apiKey"] == REDACTED
    assert out["nested"]["items"][0] == {"refreshToken": REDACTED, "ok": 1}


def test_parse_level_defaults_by_environment():
    assert parse_level("", production=True) == logging.INFO
    assert parse_level(None, production=False) == logging.DEBUG
    assert parse_level("warning", production=False) == logging.WARNING
    assert parse_level("ERROR", production=False) == logging.ERROR
    assert parse_level("bogus", production=True) == logging.INFO


def test_serialize_error_from_exception_and_values():
    try:
        raise ValueError("boom")
    except ValueError as e:
        out = serialize_error(e)
    assert out["name"] == "ValueError"
    assert out["message"] == "boom"
    assert "stack" in out

    assert serialize_error("plain") == {"name": "UnknownError", "message": "plain"}
    assert serialize_error({"a": 1}) == {"name": "UnknownError", "message": '{"a": 1}'}


def test_build_entry_includes_context_meta_and_error():
    rec = _record(context={"requestId": "r1"}, meta={"k": "v"}, error=RuntimeError("bad"))
    entry = build_entry(rec)
    assert entry["level"] == "info"
    assert entry["message"] == "hello"
    assert entry["context"] == {"requestId": "r1"}
    assert entry["meta"] == {"k": "v"}
    assert entry["error"]["name"] == "RuntimeError"
    assert entry["timestamp"].endswith("+00:00")


def test_json_formatter_emits_one_redacted_object():
    line = JSONFormatter().format(_record(meta={"token": "secret-value"}))
    data = json.loads(line)
    assert data["meta"]["token"] == REDACTED
    assert "\n" not in line


def test_dev_formatter_is_human_readable():
    out = DevFormatter().format(_record("started", logging.WARNING, meta={"port": 8000}))
    first = out.splitlines()[0]
    assert "WARN" in first
    assert "started" in first
    assert "Meta:" in out


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture()
def captured():
    base = logging.getLogger("sunrise")
    handler = _Capture()
    old_level = base.level
    base.addHandler(handler)
    base.setLevel(logging.DEBUG)
    try:
        yield handler.records
    finally:
        base.removeHandler(handler)
        base.setLevel(old_level)


def test_child_logger_merges_context(captured):
    log = create_logger({"requestId": "abc"}).child({"userId": 7})
    assert isinstance(log, StructuredLogger)
    log.info("User action", {"action": "x"})
    rec = captured[-1]
    assert rec.context == {"requestId": "abc", "userId": 7}
    assert rec.meta == {"action": "x"}


def test_with_context_is_child(captured):
    create_logger({"requestId": "r1"}).with_context({"endpoint": "/api/health"}).debug("ping")
    assert captured[-1].context == {"requestId": "r1", "endpoint": "/api/health"}


def test_error_carries_exception(captured):
    err = KeyError("missing")
    create_logger().error("Lookup failed", err, {"key": "missing"})
    rec = captured[-1]
    assert rec.levelno == logging.ERROR
    assert rec.error is err
    assert build_entry(rec)["error"]["name"] == "KeyError"


def test_set_level_filters_messages(captured):
    log = create_logger()
    log.set_level("warn")
    assert log.get_level() == "warn"
    log.info("hidden")
    log.warn("shown")
    assert [r.getMessage() for r in captured] == ["shown"]
    with pytest.raises(ValueError):
        log.set_level("verbose")
