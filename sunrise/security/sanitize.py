from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urljoin, urlsplit

HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
    "`": "&#x60;",
    "=": "&#x3D;",
}

_HTML_ESCAPE_RE = re.compile(r"[&<>\"'`=/]")
_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

BLOCKED_SCHEMES = ("javascript:", "data:", "vbscript:", "file:")


def escape_html(value: Any) -> str:
    if not value or not isinstance(value, str):
        return ""
    return _HTML_ESCAPE_RE.sub(lambda m: HTML_ESCAPES[m.group(0)], value)


def strip_html(value: Any) -> str:
    if not value or not isinstance(value, str):
        return ""
    return _TAG_RE.sub("", value)


def sanitize_url(value: Any) -> str:
    if not value or not isinstance(value, str):
        return ""
    url = value.strip()
    if url.lower().startswith(BLOCKED_SCHEMES):
        return ""
    return url


def sanitize_redirect_url(url: Any, base_url: str, allowed_hosts: Optional[Iterable[str]] = None) -> str:
    """Return a redirect target that cannot leave the site.

    Same-origin URLs collapse to path+query+fragment, hosts in ``allowed_hosts``
    pass through unchanged, anything else becomes "/".
    """
    if not url or not isinstance(url, str):
        return "/"
    try:
        base = urlsplit(base_url)
        target = urlsplit(urljoin(base_url, url.strip()))
        if target.scheme not in ("http", "https"):
            return "/"
        if target.scheme == base.scheme and target.netloc == base.netloc:
            out = target.path or "/"
            if target.query:
                out += "?" + target.query
            if target.fragment:
                out += "#" + target.fragment
            return out
        if allowed_hosts and target.netloc in set(allowed_hosts):
            return url
    except Exception:
        return "/"
    return "/"


def sanitize_object(value: Any, sanitizer: Callable[[str], str] = escape_html) -> Any:
    """Apply ``sanitizer`` to every string found in nested dicts/lists."""
    if isinstance(value, str):
        return sanitizer(value)
    if isinstance(value, list):
        return [sanitize_object(v, sanitizer) for v in value]
    if isinstance(value, dict):
        return {k: sanitize_object(v, sanitizer) for k, v in value.items()}
    return value


def sanitize_filename(name: Any) -> str:
    if not name or not isinstance(name, str):
        return ""
    out = name.replace("\0", "")
    out = out.replace("../", "").replace("..\\", "")
    if out[:1] in ("/", "\\"):
        out = out[1:]
    out = out.replace("/", "_").replace("\\", "_")
    out = _CONTROL_RE.sub("", out)
    return out[:255]
