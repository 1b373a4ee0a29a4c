from __future__ import annotations

import logging

from sunrise.services.log_buffer import LogBuffer, LogBufferHandler


def _entry(i: int, level: str = "info", message: str = "", **extra) -> dict:
    return {
        "timestamp": f"2026-01-01T00:00:{i:02d}+00:00",
        "level": level,
        "message": message or f"message {i}",
        **extra,
    }


def test_ring_buffer_keeps_most_recent_entries():
    buf = LogBuffer(max_size=3)
    for i in range(5):
        buf.add(_entry(i))
    assert buf.size() == 3
    entries, total = buf.get_log_entries()
    assert total == 3
    assert [e["message"] for e in entries] == ["message 4", "message 3", "message 2"]


def test_entries_get_unique_ids():
    buf = LogBuffer()
    a = buf.add(_entry(1))
    b = buf.add(_entry(2))
    assert a["id"] != b["id"]
    assert a["id"].startswith("log_")


def test_filter_by_level_and_search():
    buf = LogBuffer()
    buf.add(_entry(1, "info", "User logged in", context={"userId": 42}))
    buf.add(_entry(2, "error", "Database down"))
    buf.add(_entry(3, "warn", "Slow query", meta={"table": "users"}))

    entries, total = buf.get_log_entries(level="error")
    assert total == 1
    assert entries[0]["message"] == "Database down"

    entries, total = buf.get_log_entries(search="USERS")
    assert total == 1
    assert entries[0]["message"] == "Slow query"

    entries, total = buf.get_log_entries(search="42")
    assert [e["message"] for e in entries] == ["User logged in"]


def test_pagination():
    buf = LogBuffer()
    for i in range(7):
        buf.add(_entry(i))
    page, total = buf.get_log_entries(page=2, limit=3)
    assert total == 7
    assert [e["message"] for e in page] == ["message 3", "message 2", "message 1"]
    page, _ = buf.get_log_entries(page=5, limit=3)
    assert page == []


def test_clear():
    buf = LogBuffer()
    buf.add(_entry(1))
    buf.clear()
    assert buf.size() == 0


def test_handler_copies_redacted_records():
    buf = LogBuffer()
    log = logging.getLogger("sunrise.tests.buffer")
    handler = LogBufferHandler(buf)
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    try:
        log.warning("Login failed", extra={"meta": {"email": "a@example.com", "password": "x"}})
    finally:
        log.removeHandler(handler)

    entries, _ = buf.get_log_entries()
    assert entries[0]["level"] == "warn"
    assert entries[0]["message"] == "Login failed"
    assert entries[0]["meta"]["password"] == "[REDACTED]"
    assert entries[0]["meta"]["email"] == "a@example.com"
