from __future__ import annotations

import copy
import secrets
from typing import Any, Dict, List, Mapping, MutableMapping, Optional, Tuple
from urllib.parse import urlsplit

CSPConfig = Dict[str, Any]

NONCE_LENGTH = 16

# Rendered in this order; report-uri (a single value) goes last when present.
LIST_DIRECTIVES = (
    "default-src",
    "script-src",
    "style-src",
    "img-src",
    "font-src",
    "connect-src",
    "frame-ancestors",
    "form-action",
    "base-uri",
    "object-src",
)

DEVELOPMENT_CSP: CSPConfig = {
    "default-src": ["'self'"],
    "script-src": ["'self'", "'unsafe-eval'", "'unsafe-inline'"],
    "style-src": ["'self'", "'unsafe-inline'"],
    "img-src": ["'self'", "data:", "https:", "blob:"],
    "font-src": ["'self'", "data:"],
    "connect-src": ["'self'", "ws://localhost:*", "wss://localhost:*"],
    "frame-ancestors": ["'none'"],
    "form-action": ["'self'"],
    "base-uri": ["'self'"],
    "object-src": ["'none'"],
}

PRODUCTION_CSP: CSPConfig = {
    "default-src": ["'self'"],
    "script-src": ["'self'"],
    "style-src": ["'self'", "'unsafe-inline'"],
    "img-src": ["'self'", "data:", "https:"],
    "font-src": ["'self'", "data:"],
    "connect-src": ["'self'"],
    "frame-ancestors": ["'none'"],
    "form-action": ["'self'"],
    "base-uri": ["'self'"],
    "object-src": ["'none'"],
    "report-uri": "/api/csp-report",
}


def generate_nonce(length: int = NONCE_LENGTH) -> str:
    return secrets.token_urlsafe(length)[:length]


def build_csp(config: Mapping[str, Any]) -> str:
    directives = [f"{name} {' '.join(config.get(name) or [])}" for name in LIST_DIRECTIVES]
    if config.get("report-uri"):
        directives.append(f"report-uri {config['report-uri']}")
    return "; ".join(directives)


def analytics_sources(settings) -> Tuple[List[str], List[str]]:
    """(script-src, connect-src) additions for the configured analytics providers."""
    script_src: List[str] = []
    connect_src: List[str] = []

    if settings.posthog_key:
        host = settings.posthog_host or "https://us.i.posthog.com"
        script_src.append(host)
        connect_src.append(host)
        parts = (urlsplit(host).hostname or "").split(".")
        if len(parts) >= 3:
            parts[0] = f"{parts[0]}-assets"
            assets = f"{urlsplit(host).scheme}://{'.'.join(parts)}"
            script_src.append(assets)
            connect_src.append(assets)

    if settings.ga4_measurement_id:
        script_src.append("https://www.googletagmanager.com")
        connect_src.extend(
            [
                "https://www.google-analytics.com",
                "https://*.google-analytics.com",
                "https://www.googletagmanager.com",
            ]
        )

    if settings.plausible_domain:
        host = settings.plausible_host or "https://plausible.io"
        script_src.append(host)
        connect_src.append(host)

    return script_src, connect_src


def get_csp_config(settings, nonce: Optional[str] = None) -> CSPConfig:
    base = copy.deepcopy(PRODUCTION_CSP if settings.is_production else DEVELOPMENT_CSP)
    if nonce and settings.is_production:
        base["script-src"].append(f"'nonce-{nonce}'")

    script_src, connect_src = analytics_sources(settings)
    base["script-src"].extend(script_src)
    base["connect-src"].extend(connect_src)
    return base


def get_csp(settings, nonce: Optional[str] = None) -> str:
    return build_csp(get_csp_config(settings, nonce))


def extend_csp(settings, additions: Mapping[str, Any]) -> str:
    """Union ``additions`` into the current policy (order kept, no duplicates)."""
    extended = get_csp_config(settings)
    for name in LIST_DIRECTIVES:
        values = additions.get(name)
        if isinstance(values, (list, tuple)):
            extended[name] = list(dict.fromkeys([*extended.get(name, []), *values]))
    if "report-uri" in additions:
        extended["report-uri"] = additions["report-uri"]
    return build_csp(extended)


def set_security_headers(headers: MutableMapping[str, str], settings, nonce: Optional[str] = None) -> None:
    headers["Content-Security-Policy"] = get_csp(settings, nonce)
    headers["X-Frame-Options"] = "DENY"
    headers["X-Content-Type-Options"] = "nosniff"
    headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
    if settings.is_production:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
