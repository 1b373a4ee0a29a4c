from __future__ import annotations

import re
from typing import Mapping, Optional

IPV4_PATTERN = re.compile(r"^(\d{1,3}\.){3}\d{1,3}$")
IPV6_PATTERN = re.compile(r"^[0-9a-fA-F:]+$")

DEFAULT_IP = "127.0.0.1"


def is_valid_ip(value: Optional[str]) -> bool:
    """Format check only; keeps header garbage out of rate-limit bucket keys."""
    if not value:
        return False
    return bool(IPV4_PATTERN.match(value) or IPV6_PATTERN.match(value))


def get_client_ip(headers: Mapping[str, str]) -> str:
    """Client IP for rate limiting: first X-Forwarded-For hop, then X-Real-IP."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if is_valid_ip(first):
            return first

    real_ip = (headers.get("x-real-ip") or "").strip()
    if is_valid_ip(real_ip):
        return real_ip

    return DEFAULT_IP
