from __future__ import annotations

from typing import Callable, List, Optional, Sequence, Union

DEV_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
)

ALLOWED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
ALLOWED_HEADERS = ["Content-Type", "Authorization", "X-Request-ID"]
EXPOSED_HEADERS = [
    "X-Request-ID",
    "X-RateLimit-Limit",
    "X-RateLimit-Remaining",
    "X-RateLimit-Reset",
]
MAX_AGE_S = 86400

AllowedOrigins = Union[str, Sequence[str], Callable[[str], bool], None]


def get_allowed_origins(settings) -> List[str]:
    origins = list(settings.allowed_origins or [])
    if settings.is_development:
        origins.extend(o for o in DEV_ORIGINS if o not in origins)
    return origins


def is_origin_allowed(origin: Optional[str], allowed: AllowedOrigins) -> bool:
    if not origin or not allowed:
        return False
    if callable(allowed):
        return bool(allowed(origin))
    if isinstance(allowed, str):
        return origin == allowed
    return origin in allowed
