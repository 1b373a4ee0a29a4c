from __future__ import annotations

import datetime as dt
import json
import logging
import sys
import traceback
from typing import Any, Dict, Mapping, Optional

APP_LOGGER_NAME = "sunrise"

# Public level names used in log entries and the admin log viewer.
LEVELS: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

SENSITIVE_FIELDS = (
    "password",
    "token",
    "apikey",
    "secret",
    "creditcard",
    "ssn",
    "authorization",
)

REDACTED = "[REDACTED]"

_handler_marker = "_sunrise_handler"


def level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


def parse_level(raw: Optional[str], *, production: bool) -> int:
    """Resolve a configured level name, falling back to the environment default."""
    key = (raw or "").strip().lower()
    if key == "warning":
        key = "warn"
    if key in LEVELS:
        return LEVELS[key]
    return logging.INFO if production else logging.DEBUG


def is_sensitive_key(key: Any) -> bool:
    k = str(key).lower()
    return any(field in k for field in SENSITIVE_FIELDS)


def sanitize(value: Any) -> Any:
    """Recursively replace values stored under sensitive keys."""
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            out[str(k)] = REDACTED if is_sensitive_key(k) else sanitize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    return value


def serialize_error(error: Any) -> Dict[str, Any]:
    if isinstance(error, BaseException):
        out: Dict[str, Any] = {
            "name": type(error).__name__,
            "message": str(error),
        }
        if error.__traceback__ is not None:
            out["stack"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        code = getattr(error, "code", None)
        if code is not None:
            out["code"] = code
        return out

    if isinstance(error, str):
        message = error
    else:
        try:
            message = json.dumps(error, default=str)
        except Exception:
            message = str(error)
    return {"name": "UnknownError", "message": message}


def build_entry(record: logging.LogRecord) -> Dict[str, Any]:
    """Turn a LogRecord into the structured entry shape."""
    entry: Dict[str, Any] = {
        "timestamp": dt.datetime.fromtimestamp(record.created, tz=dt.timezone.utc).isoformat(),
        "level": level_name(record.levelno),
        "message": record.getMessage(),
    }
    context = getattr(record, "context", None)
    if context:
        entry["context"] = dict(context)
    meta = getattr(record, "meta", None)
    if meta:
        entry["meta"] = dict(meta) if isinstance(meta, Mapping) else {"value": meta}

    error = getattr(record, "error", None)
    if error is None and record.exc_info and record.exc_info[1] is not None:
        error = record.exc_info[1]
    if error is not None:
        entry["error"] = serialize_error(error)
    return entry


def _dumps(value: Any, **kwargs: Any) -> str:
    return json.dumps(value, default=str, **kwargs)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with sensitive fields redacted."""

    def format(self, record: logging.LogRecord) -> str:
        return _dumps(sanitize(build_entry(record)))


class DevFormatter(logging.Formatter):
    """Human readable output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        entry = sanitize(build_entry(record))
        ts = dt.datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        lines = [f"{ts} {entry['level'].upper():<5} {entry['message']}"]
        if entry.get("context"):
            lines.append("  Context: " + _dumps(entry["context"], indent=2))
        if entry.get("meta"):
            lines.append("  Meta: " + _dumps(entry["meta"], indent=2))
        err = entry.get("error")
        if err:
            lines.append(f"  Error: {err.get('name')}: {err.get('message')}")
            stack = [ln for ln in (err.get("stack") or "").splitlines() if ln.strip().startswith("File ")]
            for ln in stack[:3]:
                lines.append("    " + ln.strip())
        return "\n".join(lines)


class StructuredLogger(logging.LoggerAdapter):
    """Logger carrying a request/user context.

    Methods take a message plus an optional ``meta`` dict; ``error`` also accepts
    the exception (or any value) being reported.
    """

    def __init__(self, logger: logging.Logger, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(logger, dict(context or {}))

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.extra or {})

    def _emit(self, level: int, message: str, meta: Any = None, error: Any = None) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra: Dict[str, Any] = {"context": self.context}
        if meta is not None:
            extra["meta"] = meta
        if error is not None:
            extra["error"] = error
        self.logger.log(level, message, extra=extra)

    def debug(self, message: str, meta: Any = None) -> None:  # type: ignore[override]
        self._emit(logging.DEBUG, message, meta)

    def info(self, message: str, meta: Any = None) -> None:  # type: ignore[override]
        self._emit(logging.INFO, message, meta)

    def warn(self, message: str, meta: Any = None) -> None:  # type: ignore[override]
        self._emit(logging.WARNING, message, meta)

    warning = warn

    def error(self, message: str, error: Any = None, meta: Any = None) -> None:  # type: ignore[override]
        self._emit(logging.ERROR, message, meta, error)

    def child(self, context: Mapping[str, Any]) -> "StructuredLogger":
        merged = {**self.context, **dict(context or {})}
        return StructuredLogger(self.logger, merged)

    with_context = child

    def get_level(self) -> str:
        return level_name(self.logger.getEffectiveLevel())

    def set_level(self, level: str) -> None:
        key = "warn" if level == "warning" else level
        if key not in LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        self.logger.setLevel(LEVELS[key])


def create_logger(context: Optional[Mapping[str, Any]] = None) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(APP_LOGGER_NAME), context)


logger = create_logger()


def configure_logging(settings, *extra_handlers: logging.Handler) -> logging.Logger:
    """Install the console handler (plus any extra handlers) on the app logger.

    Safe to call repeatedly; handlers installed by a previous call are replaced.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    for h in list(app_logger.handlers):
        if getattr(h, _handler_marker, False):
            app_logger.removeHandler(h)

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(JSONFormatter() if settings.is_production else DevFormatter())
    setattr(console, _handler_marker, True)
    app_logger.addHandler(console)

    for h in extra_handlers:
        setattr(h, _handler_marker, True)
        app_logger.addHandler(h)

    app_logger.setLevel(parse_level(settings.log_level, production=settings.is_production))
    return app_logger
