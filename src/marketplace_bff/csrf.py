# src/marketplace_bff/csrf.py

import hmac
import secrets
from typing import Optional

import structlog
from starlette.requests import HTTPConnection

from .config import Settings
from .cookies import CSRF_COOKIE_NAME, build_cookie
from .errors import AuthError, AuthErrorKind

logger = structlog.get_logger("marketplace_bff.csrf")

CSRF_TOKEN_BYTES = 32
CSRF_HEADER_NAME = "X-CSRF-Token"
PROTECTED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def constant_time_equals(a: str, b: str) -> bool:
    """Equality whose running time does not depend on where the inputs differ."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class CSRFGuard:
    """
    Double-submit cookie CSRF protection.

    The token is sent to the browser twice: in the JSON body of the issuing
    endpoint and in an HttpOnly cookie. State-changing requests must echo it in
    the X-CSRF-Token header; a cross-site page cannot read the body, so it
    cannot forge the header.
    """

    def __init__(
        self,
        *,
        secure: bool,
        ttl_seconds: int = 3600,
        bypass_missing: bool = False,
        domain: Optional[str] = None,
    ) -> None:
        self.secure = secure
        self.ttl_seconds = ttl_seconds
        self.bypass_missing = bypass_missing
        self.domain = domain

    @classmethod
    def from_settings(cls, settings: Settings) -> "CSRFGuard":
        return cls(
            secure=settings.is_production,
            ttl_seconds=settings.CSRF_TOKEN_TTL_SECONDS,
            bypass_missing=settings.csrf_bypass_active,
            domain=settings.COOKIE_DOMAIN,
        )

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(CSRF_TOKEN_BYTES)

    def create_cookie(self, token: str) -> str:
        return build_cookie(
            CSRF_COOKIE_NAME,
            token,
            self.ttl_seconds,
            secure=self.secure,
            domain=self.domain,
        )

    @staticmethod
    def requires_protection(method: str) -> bool:
        return (method or "").upper() in PROTECTED_METHODS

    def check(self, request: HTTPConnection) -> None:
        """Raise CSRF_MISSING / CSRF_MISMATCH unless the double submit matches."""
        header_token = request.headers.get(CSRF_HEADER_NAME)
        cookie_token = request.cookies.get(CSRF_COOKIE_NAME)

        if not header_token or not cookie_token:
            if self.bypass_missing:
                logger.warning(
                    "csrf_dev_bypass",
                    has_header_token=bool(header_token),
                    has_cookie_token=bool(cookie_token),
                )
                return
            raise AuthError(
                AuthErrorKind.CSRF_MISSING,
                f"header_token={'present' if header_token else 'missing'} "
                f"cookie_token={'present' if cookie_token else 'missing'}",
            )

        if not constant_time_equals(header_token, cookie_token):
            raise AuthError(
                AuthErrorKind.CSRF_MISMATCH,
                f"header_len={len(header_token)} cookie_len={len(cookie_token)}",
            )

    def validate_token(self, request: HTTPConnection) -> bool:
        try:
            self.check(request)
        except AuthError as e:
            logger.info("csrf_validation_failed", kind=e.kind.value, detail=e.detail)
            return False
        return True
