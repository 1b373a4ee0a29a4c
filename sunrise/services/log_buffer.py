from __future__ import annotations

import itertools
import json
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from sunrise.core.logging import build_entry, sanitize

MAX_BUFFER_SIZE = 1000


class LogBuffer:
    """In-memory ring of recent log entries for the admin log viewer.

    Process-local; entries are lost on restart.
    """

    def __init__(self, max_size: int = MAX_BUFFER_SIZE) -> None:
        self._max_size = max(1, int(max_size))
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=self._max_size)
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def max_size(self) -> int:
        return self._max_size

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def add(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            stored = {"id": f"log_{next(self._ids)}", **entry}
            self._entries.append(stored)
            return stored

    def get_log_entries(
        self,
        *,
        level: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            # newest first; sorted() is stable so equal timestamps keep that order
            entries = list(reversed(self._entries))

        if level:
            entries = [e for e in entries if e.get("level") == level]

        if search:
            needle = search.lower()

            def _matches(e: Dict[str, Any]) -> bool:
                if needle in str(e.get("message", "")).lower():
                    return True
                if e.get("context") and needle in json.dumps(e["context"], default=str).lower():
                    return True
                if e.get("meta") and needle in json.dumps(e["meta"], default=str).lower():
                    return True
                return False

            entries = [e for e in entries if _matches(e)]

        entries = sorted(entries, key=lambda e: e.get("timestamp", ""), reverse=True)
        total = len(entries)
        page = max(1, int(page))
        limit = max(1, int(limit))
        start = (page - 1) * limit
        return entries[start : start + limit], total


class LogBufferHandler(logging.Handler):
    """Copies app log records into a LogBuffer (redacted)."""

    def __init__(self, buffer: LogBuffer, *, level: int = logging.DEBUG) -> None:
        super().__init__(level=level)
        self._buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._buffer.add(sanitize(build_entry(record)))
        except Exception:
            # Never raise from logging
            return
