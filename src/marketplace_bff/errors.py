# src/marketplace_bff/errors.py

"""
Tagged authentication errors and the handlers that turn them into responses.

Every failure the auth layer can produce is an AuthErrorKind. The kind decides
the HTTP status and the (generic) message the browser sees; the optional
detail is for server-side logs only.
"""
from enum import Enum
from typing import Any, Dict, NamedTuple, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger("marketplace_bff.errors")


class AuthErrorKind(str, Enum):
    CSRF_MISSING = "csrf_missing"
    CSRF_MISMATCH = "csrf_mismatch"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    SIGNATURE_INVALID = "signature_invalid"
    SESSION_NOT_FOUND = "session_not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    PROVIDER_ERROR = "provider_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    INVALID_SECOND_FACTOR = "invalid_second_factor"
    BAD_REQUEST = "bad_request"
    RATE_LIMITED = "rate_limited"


class ErrorPresentation(NamedTuple):
    status_code: int
    message: str


ERROR_PRESENTATION: Dict[AuthErrorKind, ErrorPresentation] = {
    AuthErrorKind.CSRF_MISSING: ErrorPresentation(status.HTTP_403_FORBIDDEN, "CSRF token validation failed"),
    AuthErrorKind.CSRF_MISMATCH: ErrorPresentation(status.HTTP_403_FORBIDDEN, "CSRF token validation failed"),
    AuthErrorKind.TOKEN_INVALID: ErrorPresentation(status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    AuthErrorKind.TOKEN_EXPIRED: ErrorPresentation(status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    AuthErrorKind.SIGNATURE_INVALID: ErrorPresentation(status.HTTP_401_UNAUTHORIZED, "Unauthorized"),
    AuthErrorKind.SESSION_NOT_FOUND: ErrorPresentation(status.HTTP_401_UNAUTHORIZED, "No active session"),
    AuthErrorKind.STORE_UNAVAILABLE: ErrorPresentation(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error"
    ),
    AuthErrorKind.PROVIDER_ERROR: ErrorPresentation(status.HTTP_500_INTERNAL_SERVER_ERROR, "Authentication failed"),
    AuthErrorKind.INVALID_CREDENTIALS: ErrorPresentation(status.HTTP_401_UNAUTHORIZED, "Invalid credentials"),
    AuthErrorKind.SECOND_FACTOR_REQUIRED: ErrorPresentation(
        status.HTTP_401_UNAUTHORIZED, "Two-factor authentication code required"
    ),
    AuthErrorKind.INVALID_SECOND_FACTOR: ErrorPresentation(
        status.HTTP_401_UNAUTHORIZED, "Invalid two-factor authentication code"
    ),
    AuthErrorKind.BAD_REQUEST: ErrorPresentation(status.HTTP_400_BAD_REQUEST, "Invalid request"),
    AuthErrorKind.RATE_LIMITED: ErrorPresentation(status.HTTP_429_TOO_MANY_REQUESTS, "Too many attempts"),
}


class AuthError(Exception):
    def __init__(self, kind: AuthErrorKind, detail: Optional[str] = None, retry_after: Optional[int] = None):
        self.kind = AuthErrorKind(kind)
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(detail or self.kind.value)

    @property
    def status_code(self) -> int:
        return ERROR_PRESENTATION[self.kind].status_code

    @property
    def client_message(self) -> str:
        return ERROR_PRESENTATION[self.kind].message

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == status.HTTP_401_UNAUTHORIZED


def error_body(kind: AuthErrorKind, request: Optional[Request] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": ERROR_PRESENTATION[kind].message, "code": kind.value}
    if kind == AuthErrorKind.SECOND_FACTOR_REQUIRED:
        # The sign-in page switches to the OTP prompt on this flag.
        body["totpRequired"] = True
    rid = _req_id(request) if request is not None else None
    if rid:
        body["request_id"] = rid
    return body


def _req_id(request: Request) -> Optional[str]:
    return getattr(getattr(request, "state", object()), "request_id", None)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def _auth_error_handler(request: Request, exc: AuthError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "auth_error",
            kind=exc.kind.value,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
        )
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(int(exc.retry_after))
        if exc.is_unauthorized and exc.kind in (
            AuthErrorKind.TOKEN_INVALID,
            AuthErrorKind.TOKEN_EXPIRED,
            AuthErrorKind.SIGNATURE_INVALID,
        ):
            headers["WWW-Authenticate"] = "Bearer"
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.kind, request), headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def _http_exc_handler(request: Request, exc: StarletteHTTPException):
        body: Dict[str, Any] = {"error": exc.detail or "HTTP error"}
        rid = _req_id(request)
        if rid:
            body["request_id"] = rid
        return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError):
        logger.info("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(AuthErrorKind.BAD_REQUEST, request),
        )

    @app.exception_handler(Exception)
    async def _generic_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, method=request.method)
        body: Dict[str, Any] = {"error": "Internal server error"}
        rid = _req_id(request)
        if rid:
            body["request_id"] = rid
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
