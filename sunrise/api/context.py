from __future__ import annotations

import secrets
import string
from typing import Any, Dict, Mapping, Optional

from fastapi import Request

from sunrise.core.logging import StructuredLogger, create_logger

REQUEST_ID_HEADER = "x-request-id"
REQUEST_ID_LENGTH = 16

_ID_ALPHABET = string.ascii_letters + string.digits + "-_"

# Checked in order; the first present wins.
CLIENT_IP_HEADERS = (
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "x-client-ip",
    "x-cluster-client-ip",
)


def generate_request_id(length: int = REQUEST_ID_LENGTH) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def get_request_id(request: Request) -> str:
    rid = getattr(request.state, "request_id", None)
    if rid:
        return rid
    rid = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    request.state.request_id = rid
    return rid


def get_log_client_ip(headers: Mapping[str, str]) -> Optional[str]:
    for name in CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            return value.split(",")[0].strip() or None
    return None


def get_request_context(request: Request) -> Dict[str, Any]:
    ctx: Dict[str, Any] = {
        "requestId": get_request_id(request),
        "method": request.method,
        "endpoint": request.url.path,
    }
    ip = get_log_client_ip(request.headers)
    if ip:
        ctx["ip"] = ip
    ua = request.headers.get("user-agent")
    if ua:
        ctx["userAgent"] = ua
    return ctx


def get_route_logger(request: Request) -> StructuredLogger:
    """Logger bound to the current request (and user, once authenticated)."""
    ctx = get_request_context(request)
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        ctx["userId"] = principal.user_id
    return create_logger(ctx)
