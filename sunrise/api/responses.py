from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def success_response(
    data: Any = None,
    meta: Optional[Mapping[str, Any]] = None,
    *,
    status_code: int = 200,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body: Dict[str, Any] = {"success": True, "data": data}
    if meta:
        body["meta"] = dict(meta)
    return JSONResponse(jsonable_encoder(body), status_code=status_code, headers=dict(headers or {}))


def error_response(
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    status_code: int = 500,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"message": message}
    if code:
        error["code"] = code
    if details is not None:
        error["details"] = details
    return JSONResponse(
        jsonable_encoder({"success": False, "error": error}),
        status_code=status_code,
        headers=dict(headers or {}),
    )


def paginated_response(
    items: Any,
    *,
    page: int,
    limit: int,
    total: int,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    meta = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
    return success_response(items, meta, headers=headers)


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def parse_pagination_params(page: Any = None, limit: Any = None) -> Pagination:
    """Lenient page/limit parsing: page >= 1, 1 <= limit <= 100."""
    try:
        p = int(page) if page is not None else 1
    except (TypeError, ValueError):
        p = 1
    try:
        lim = int(limit) if limit is not None else DEFAULT_PAGE_SIZE
    except (TypeError, ValueError):
        lim = DEFAULT_PAGE_SIZE
    return Pagination(page=max(1, p), limit=min(MAX_PAGE_SIZE, max(1, lim)))
