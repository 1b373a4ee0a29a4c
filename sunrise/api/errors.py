from __future__ import annotations

import logging
import re
import traceback
from typing import Any, Dict, List, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sunrise.api.responses import error_response

logger = logging.getLogger(__name__)


class ErrorCodes:
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMAIL_TAKEN = "EMAIL_TAKEN"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    STORAGE_NOT_CONFIGURED = "STORAGE_NOT_CONFIGURED"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    CONFLICT = "CONFLICT"
    SELF_ROLE_CHANGE = "SELF_ROLE_CHANGE"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"


class APIError(Exception):
    """Error that maps directly onto the JSON error envelope."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: int = 500,
        details: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        self.headers = dict(headers or {})


class ValidationError(APIError):
    def __init__(self, message: str = "Validation failed", details: Any = None, code: str = ErrorCodes.VALIDATION_ERROR):
        super().__init__(message, code, 400, details)


class UnauthorizedError(APIError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, ErrorCodes.UNAUTHORIZED, 401)


class ForbiddenError(APIError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, ErrorCodes.FORBIDDEN, 403)


class NotFoundError(APIError):
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, ErrorCodes.NOT_FOUND, 404)


class ConflictError(APIError):
    def __init__(self, message: str, details: Any = None):
        super().__init__(message, ErrorCodes.CONFLICT, 409, details)


class RateLimitExceededError(APIError):
    def __init__(self, result, message: str = "Too many requests. Please try again later."):
        headers = dict(result.headers())
        headers["Retry-After"] = str(result.retry_after())
        super().__init__(message, ErrorCodes.RATE_LIMIT_EXCEEDED, 429, headers=headers)
        self.result = result


# Compared against lowercased keys.
SCRUB_FIELDS = frozenset(
    {
        "password",
        "token",
        "apikey",
        "secret",
        "creditcard",
        "ssn",
        "authorization",
        "sessiontoken",
        "refreshtoken",
        "accesstoken",
    }
)


def scrub(value: Any) -> Any:
    """Drop sensitive keys from nested dicts/lists before they are logged."""
    if isinstance(value, Mapping):
        return {k: scrub(v) for k, v in value.items() if str(k).lower() not in SCRUB_FIELDS}
    if isinstance(value, (list, tuple)):
        return [scrub(v) for v in value]
    return value


_STATUS_CODES = {
    400: ErrorCodes.VALIDATION_ERROR,
    401: ErrorCodes.UNAUTHORIZED,
    403: ErrorCodes.FORBIDDEN,
    404: ErrorCodes.NOT_FOUND,
    409: ErrorCodes.CONFLICT,
    422: ErrorCodes.VALIDATION_ERROR,
    429: ErrorCodes.RATE_LIMIT_EXCEEDED,
}

_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?:\w+\.)?(\w+)")
_PG_UNIQUE_KEY = re.compile(r"Key \((\w+)\)=")


def _request_meta(request: Request) -> Dict[str, Any]:
    return {
        "method": request.method,
        "endpoint": request.url.path,
        "requestId": getattr(request.state, "request_id", None),
    }


def _validation_issues(exc: RequestValidationError) -> List[Dict[str, str]]:
    issues: List[Dict[str, str]] = []
    for err in exc.errors():
        loc = list(err.get("loc") or ())
        path = ".".join(str(p) for p in loc[1:])
        msg = str(err.get("msg") or "Invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        issues.append({"path": path, "message": msg})
    return issues


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        return "Invalid JSON in request body"
    if any((e.get("loc") or ("",))[0] == "body" for e in errors):
        return "Invalid request body"
    return "Invalid query parameters"


def unique_violation_field(exc: IntegrityError) -> Optional[str]:
    """Return the offending column for a unique violation, ``None`` otherwise."""
    text = str(getattr(exc, "orig", None) or exc)
    m = _SQLITE_UNIQUE.search(text)
    if m:
        return m.group(1)
    if "duplicate key value" in text or "unique constraint" in text.lower():
        m = _PG_UNIQUE_KEY.search(text)
        return m.group(1) if m else "field"
    return None


def _is_foreign_key_violation(exc: IntegrityError) -> bool:
    text = str(getattr(exc, "orig", None) or exc).lower()
    return "foreign key" in text


def register_error_handlers(app: FastAPI, *, development: bool = False) -> None:
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        meta = {**_request_meta(request), "code": exc.code, "status": exc.status_code}
        if exc.details is not None:
            meta["details"] = scrub(exc.details)
        if exc.status_code >= 500:
            logger.error(exc.message, extra={"meta": meta, "error": exc})
        else:
            logger.warning(exc.message, extra={"meta": meta})
        return error_response(
            exc.message,
            code=exc.code,
            details=exc.details,
            status_code=exc.status_code,
            headers=exc.headers,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return error_response(
            message,
            code=_STATUS_CODES.get(exc.status_code, ErrorCodes.INTERNAL_ERROR if exc.status_code >= 500 else None),
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        message = _validation_message(exc)
        issues = _validation_issues(exc)
        logger.info(message, extra={"meta": {**_request_meta(request), "errors": issues}})
        return error_response(
            message,
            code=ErrorCodes.VALIDATION_ERROR,
            details={"errors": issues},
            status_code=400,
        )

    @app.exception_handler(NoResultFound)
    async def no_result_handler(request: Request, exc: NoResultFound):
        return error_response("Record not found", code=ErrorCodes.NOT_FOUND, status_code=404)

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        field = unique_violation_field(exc)
        if field:
            logger.warning("Unique constraint violation", extra={"meta": {**_request_meta(request), "field": field}})
            return error_response(
                f"{field[:1].upper()}{field[1:]} already exists",
                code=ErrorCodes.EMAIL_TAKEN,
                details={"field": field, "constraint": "unique"},
                status_code=400,
            )
        if _is_foreign_key_violation(exc):
            logger.warning("Foreign key violation", extra={"meta": _request_meta(request)})
            return error_response(
                "Invalid reference",
                code=ErrorCodes.VALIDATION_ERROR,
                details={"constraint": "foreign_key"},
                status_code=400,
            )
        logger.error("Database integrity error", extra={"meta": _request_meta(request), "error": exc})
        return error_response("Database error", code=ErrorCodes.INTERNAL_ERROR, status_code=500)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Database error", extra={"meta": _request_meta(request), "error": exc})
        return error_response("Database error", code=ErrorCodes.INTERNAL_ERROR, status_code=500)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", extra={"meta": _request_meta(request), "error": exc})
        details = None
        if development:
            details = {"stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))}
        return error_response(
            "Internal server error",
            code=ErrorCodes.INTERNAL_ERROR,
            details=details,
            status_code=500,
        )
