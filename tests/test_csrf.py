import pytest
from starlette.requests import Request

from marketplace_bff.config import get_settings
from marketplace_bff.csrf import CSRFGuard, constant_time_equals
from marketplace_bff.errors import AuthError, AuthErrorKind


def _request(header_token=None, cookie_token=None, method="POST") -> Request:
    headers = []
    if header_token is not None:
        headers.append((b"x-csrf-token", header_token.encode()))
    if cookie_token is not None:
        headers.append((b"cookie", f"csrf-token={cookie_token}".encode()))
    return Request({"type": "http", "method": method, "path": "/", "headers": headers, "query_string": b""})


def test_generated_tokens_are_64_hex_chars_and_unique() -> None:
    tokens = {CSRFGuard.generate_token() for _ in range(50)}
    assert len(tokens) == 50
    for t in tokens:
        assert len(t) == 64
        int(t, 16)


def test_cookie_attributes_development() -> None:
    guard = CSRFGuard(secure=False)
    cookie = guard.create_cookie("abc")
    assert cookie.startswith("csrf-token=abc; ")
    assert "HttpOnly" in cookie
    assert "Path=/" in cookie
    assert "SameSite=Lax" in cookie
    assert "Max-Age=3600" in cookie
    assert "Secure" not in cookie


def test_cookie_is_secure_in_production(monkeypatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "production")
    get_settings.cache_clear()
    guard = CSRFGuard.from_settings(get_settings())
    assert "Secure" in guard.create_cookie("abc")


def test_matching_tokens_validate() -> None:
    guard = CSRFGuard(secure=False)
    token = guard.generate_token()
    assert guard.validate_token(_request(token, token)) is True
    guard.check(_request(token, token))


def test_mismatched_tokens_fail() -> None:
    guard = CSRFGuard(secure=False)
    a, b = guard.generate_token(), guard.generate_token()
    assert guard.validate_token(_request(a, b)) is False
    with pytest.raises(AuthError) as exc:
        guard.check(_request(a, b))
    assert exc.value.kind == AuthErrorKind.CSRF_MISMATCH
    assert exc.value.status_code == 403


@pytest.mark.parametrize("header,cookie", [(None, "t"), ("t", None), (None, None), ("", "")])
def test_missing_token_fails(header, cookie) -> None:
    guard = CSRFGuard(secure=False)
    assert guard.validate_token(_request(header, cookie)) is False
    with pytest.raises(AuthError) as exc:
        guard.check(_request(header, cookie))
    assert exc.value.kind == AuthErrorKind.CSRF_MISSING


def test_dev_bypass_covers_missing_tokens_only() -> None:
    guard = CSRFGuard(secure=False, bypass_missing=True)
    assert guard.validate_token(_request(None, None)) is True
    assert guard.validate_token(_request("a" * 64, "b" * 64)) is False


def test_dev_bypass_requires_development_environment(monkeypatch) -> None:
    monkeypatch.setenv("CSRF_DEV_BYPASS", "true")
    monkeypatch.setenv("ENVIRONMENT", "production")
    get_settings.cache_clear()
    assert get_settings().csrf_bypass_active is False

    monkeypatch.setenv("ENVIRONMENT", "development")
    get_settings.cache_clear()
    assert get_settings().csrf_bypass_active is True


def test_bypass_is_off_by_default(monkeypatch) -> None:
    monkeypatch.delenv("CSRF_DEV_BYPASS", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    get_settings.cache_clear()
    assert get_settings().csrf_bypass_active is False


@pytest.mark.parametrize("method,expected", [
    ("POST", True), ("put", True), ("PATCH", True), ("delete", True),
    ("GET", False), ("head", False), ("OPTIONS", False),
])
def test_requires_protection(method, expected) -> None:
    assert CSRFGuard.requires_protection(method) is expected


def test_constant_time_equals() -> None:
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
    assert not constant_time_equals("abc", "abcd")
