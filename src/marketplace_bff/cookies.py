# src/marketplace_bff/cookies.py

from typing import Iterable, List, Optional

SESSION_COOKIE_NAME = "sid"
CSRF_COOKIE_NAME = "csrf-token"
ACCESS_TOKEN_COOKIE_NAME = "kc-token"

AUTH_COOKIE_NAMES = (SESSION_COOKIE_NAME, CSRF_COOKIE_NAME, ACCESS_TOKEN_COOKIE_NAME)


def cookie_attributes(
    max_age: int,
    *,
    secure: bool,
    path: str = "/",
    same_site: str = "Lax",
    domain: Optional[str] = None,
) -> List[str]:
    attrs = [
        "HttpOnly",
        f"Path={path}",
        f"SameSite={same_site}",
        f"Max-Age={int(max_age)}",
    ]
    if secure:
        attrs.append("Secure")
    if domain:
        attrs.append(f"Domain={domain}")
    return attrs


def build_cookie(
    name: str,
    value: str,
    max_age: int,
    *,
    secure: bool,
    path: str = "/",
    same_site: str = "Lax",
    domain: Optional[str] = None,
) -> str:
    """Set-Cookie directive string for an HttpOnly auth cookie."""
    attrs = cookie_attributes(max_age, secure=secure, path=path, same_site=same_site, domain=domain)
    return "; ".join([f"{name}={value}", *attrs])


def expired_cookies(
    names: Iterable[str] = AUTH_COOKIE_NAMES,
    *,
    secure: bool,
    domain: Optional[str] = None,
) -> List[str]:
    """Immediate-expiry directives (Max-Age=-1) for every named cookie."""
    return [build_cookie(name, "", -1, secure=secure, domain=domain) for name in names]
