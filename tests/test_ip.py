from __future__ import annotations

from sunrise.security.ip import DEFAULT_IP, get_client_ip, is_valid_ip


def test_is_valid_ip():
    assert is_valid_ip("203.0.113.9")
    assert is_valid_ip("2001:db8::1")
    assert not is_valid_ip("")
    assert not is_valid_ip(None)
    assert not is_valid_ip("not-an-ip")
    assert not is_valid_ip("1.2.3")


def test_forwarded_for_first_hop_wins():
    headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1", "x-real-ip": "198.51.100.2"}
    assert get_client_ip(headers) == "203.0.113.9"


def test_invalid_forwarded_for_falls_back_to_real_ip():
    headers = {"x-forwarded-for": "garbage", "x-real-ip": "198.51.100.2"}
    assert get_client_ip(headers) == "198.51.100.2"


def test_default_when_no_headers():
    assert get_client_ip({}) == DEFAULT_IP
    assert get_client_ip({"x-real-ip": "<script>"}) == DEFAULT_IP
