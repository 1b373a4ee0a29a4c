from __future__ import annotations

from sunrise.security.sanitize import (
    escape_html,
    sanitize_filename,
    sanitize_object,
    sanitize_redirect_url,
    sanitize_url,
    strip_html,
)

BASE = "https://app.example.com"


def test_escape_html():
    assert escape_html('<a href="x">it\'s</a>') == "&lt;a href&#x3D;&quot;x&quot;&gt;it&#x27;s&lt;&#x2F;a&gt;"
    assert escape_html("") == ""
    assert escape_html(None) == ""
    assert escape_html(5) == ""


def test_strip_html():
    assert strip_html("<b>bold</b> text") == "bold text"
    assert strip_html(None) == ""


def test_sanitize_url_blocks_dangerous_schemes():
    assert sanitize_url("javascript:alert(1)") == ""
    assert sanitize_url("  DATA:text/html,x") == ""
    assert sanitize_url("vbscript:msgbox") == ""
    assert sanitize_url("https://example.com/a") == "https://example.com/a"
    assert sanitize_url("/relative") == "/relative"


def test_redirect_same_origin_collapses_to_path():
    assert sanitize_redirect_url("/dashboard?tab=1#top", BASE) == "/dashboard?tab=1#top"
    assert sanitize_redirect_url("https://app.example.com/settings", BASE) == "/settings"


def test_redirect_rejects_foreign_hosts():
    assert sanitize_redirect_url("https://evil.com/phish", BASE) == "/"
    assert sanitize_redirect_url("//evil.com/phish", BASE) == "/"
    assert sanitize_redirect_url("javascript:alert(1)", BASE) == "/"
    assert sanitize_redirect_url("", BASE) == "/"
    assert sanitize_redirect_url(None, BASE) == "/"


def test_redirect_allows_listed_hosts():
    url = "https://docs.example.com/guide"
    assert sanitize_redirect_url(url, BASE, ["docs.example.com"]) == url


def test_sanitize_object_recurses():
    out = sanitize_object({"a": "<x>", "b": ["<y>", 1], "c": {"d": None}})
    assert out == {"a": "&lt;x&gt;", "b": ["&lt;y&gt;", 1], "c": {"d": None}}


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "etc_passwd"
    assert sanitize_filename("/abs/path.txt") == "abs_path.txt"
    assert sanitize_filename("a\0b\x07c.png") == "abc.png"
    assert len(sanitize_filename("x" * 400)) == 255
    assert sanitize_filename(None) == ""
