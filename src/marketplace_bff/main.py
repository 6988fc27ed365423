# src/marketplace_bff/main.py

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth_utils import KeycloakClient
from .config import Settings, get_settings
from .cookies import (
    ACCESS_TOKEN_COOKIE_NAME,
    SESSION_COOKIE_NAME,
    build_cookie,
    expired_cookies,
)
from .csrf import CSRF_HEADER_NAME, CSRFGuard
from .errors import AuthError, AuthErrorKind, error_body, register_exception_handlers
from .log import configure_logging, session_hint
from .login_throttle import LoginThrottle
from .middleware import REQUEST_ID_HEADER, RequestContextMiddleware
from .orchestrator import AuthOrchestrator, ClientInfo, LoginRequest
from .session_store import SessionStore
from .token_verifier import TokenVerifier

logger = structlog.get_logger("marketplace_bff.main")


# --- Dependencies ---

def get_orchestrator(request: Request) -> AuthOrchestrator:
    return request.app.state.orchestrator


def get_csrf_guard(request: Request) -> CSRFGuard:
    return request.app.state.csrf_guard


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


async def require_csrf(request: Request, guard: CSRFGuard = Depends(get_csrf_guard)) -> None:
    guard.check(request)


def client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(ip_address=ip, user_agent=request.headers.get("user-agent"))


def bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.cookies.get(ACCESS_TOKEN_COOKIE_NAME)


def _with_cookies(response: JSONResponse, *directives: str) -> JSONResponse:
    for directive in directives:
        response.headers.append("set-cookie", directive)
    return response


# --- Routes ---

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.get("/csrf-token")
async def csrf_token(guard: CSRFGuard = Depends(get_csrf_guard)):
    token = guard.generate_token()
    response = JSONResponse({"csrfToken": token, "message": "CSRF token generated"})
    return _with_cookies(response, guard.create_cookie(token))


@router.post("/login", dependencies=[Depends(require_csrf)])
async def login(
        payload: LoginRequest,
        request: Request,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
        settings: Settings = Depends(get_app_settings),
):
    outcome = await orchestrator.login(payload, client_info(request))
    secure = settings.is_production
    response = JSONResponse({
        "message": "Login successful",
        "authType": outcome.auth_type.value,
        "state": outcome.state.value,
        "token": outcome.access_token,
        "expiresIn": outcome.expires_in,
        # The csrf-token cookie is rotated below; the browser cannot read it.
        "csrfToken": outcome.csrf_token,
    })
    return _with_cookies(
        response,
        build_cookie(
            SESSION_COOKIE_NAME,
            outcome.session_id,
            settings.SESSION_MAX_AGE_SECONDS,
            secure=secure,
            domain=settings.COOKIE_DOMAIN,
        ),
        build_cookie(
            ACCESS_TOKEN_COOKIE_NAME,
            outcome.access_token,
            outcome.expires_in,
            secure=secure,
            domain=settings.COOKIE_DOMAIN,
        ),
        orchestrator.csrf_guard.create_cookie(outcome.csrf_token),
    )


@router.post("/refresh", dependencies=[Depends(require_csrf)])
async def refresh(
        request: Request,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
        settings: Settings = Depends(get_app_settings),
):
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    try:
        outcome = await orchestrator.refresh(session_id)
    except AuthError as e:
        if e.kind != AuthErrorKind.SESSION_NOT_FOUND:
            raise
        logger.info("refresh_without_session", session=session_hint(session_id), detail=e.detail)
        response = JSONResponse(status_code=e.status_code, content=error_body(e.kind, request))
        return _with_cookies(
            response,
            *expired_cookies((SESSION_COOKIE_NAME, ACCESS_TOKEN_COOKIE_NAME),
                             secure=settings.is_production, domain=settings.COOKIE_DOMAIN),
        )

    response = JSONResponse({
        "token": outcome.access_token,
        "expiresIn": outcome.expires_in,
        "tokenType": outcome.token_type,
        "authType": outcome.auth_type.value,
    })
    return _with_cookies(
        response,
        build_cookie(
            ACCESS_TOKEN_COOKIE_NAME,
            outcome.access_token,
            outcome.expires_in,
            secure=settings.is_production,
            domain=settings.COOKIE_DOMAIN,
        ),
    )


@router.post("/logout")
async def logout(
        request: Request,
        orchestrator: AuthOrchestrator = Depends(get_orchestrator),
        guard: CSRFGuard = Depends(get_csrf_guard),
        settings: Settings = Depends(get_app_settings),
):
    # CSRF failure is logged but does not stop the cookies from being cleared.
    if not guard.validate_token(request):
        logger.warning("logout_csrf_failed")
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    cleared = expired_cookies(secure=settings.is_production, domain=settings.COOKIE_DOMAIN)
    try:
        had_session = await orchestrator.logout(session_id)
    except AuthError as e:
        # The server-side record may survive, but the browser still loses its cookies.
        response = JSONResponse(status_code=e.status_code, content=error_body(e.kind, request))
        return _with_cookies(response, *cleared)
    response = JSONResponse({"message": "Logged out successfully", "hadSession": had_session})
    return _with_cookies(response, *cleared)


@router.get("/session")
async def session_info(request: Request, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.inspect(request.cookies.get(SESSION_COOKIE_NAME))


@router.get("/me")
async def me(request: Request, orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    verified = await orchestrator.verify_bearer(bearer_token(request))
    claims = verified.claims
    return {
        "sub": verified.subject,
        "username": claims.get("preferred_username"),
        "email": claims.get("email"),
        "authType": verified.auth_type.value,
        "roles": verified.roles,
        "exp": verified.expires_at,
    }


# --- App factory ---

async def _sweep_expired_sessions(store: SessionStore, interval_s: int) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            removed = await asyncio.to_thread(store.purge_expired)
            logger.info("session_sweep", removed=removed)
        except AuthError as e:
            logger.error("session_sweep_failed", detail=e.detail)
        except Exception:
            logger.exception("session_sweep_crashed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    orchestrator: AuthOrchestrator = app.state.orchestrator
    logger.info(
        "startup",
        environment=settings.ENVIRONMENT,
        keycloak_url=settings.KEYCLOAK_URL,
        trusted_issuers=sorted(settings.trusted_issuers),
        session_db=str(settings.SESSION_DB_PATH),
        csrf_dev_bypass=settings.csrf_bypass_active,
        cors_origins=settings.CORS_ALLOWED_ORIGINS,
    )
    if settings.csrf_bypass_active:
        logger.warning("csrf_dev_bypass_enabled")

    sweeper = asyncio.create_task(
        _sweep_expired_sessions(orchestrator.store, settings.SESSION_SWEEP_INTERVAL_SECONDS)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        logger.info("shutdown")


def create_app(
        settings: Optional[Settings] = None,
        *,
        store: Optional[SessionStore] = None,
        verifier: Optional[TokenVerifier] = None,
        keycloak: Optional[KeycloakClient] = None,
        throttle: Optional[LoginThrottle] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, settings=settings)

    app = FastAPI(
        title="Marketplace BFF Auth API",
        description="Backend-For-Frontend authentication core for the marketplace UI (Keycloak).",
        version="0.1.0",
        lifespan=lifespan,
    )

    csrf_guard = CSRFGuard.from_settings(settings)
    app.state.settings = settings
    app.state.csrf_guard = csrf_guard
    app.state.orchestrator = AuthOrchestrator.from_settings(
        settings,
        store=store,
        verifier=verifier,
        keycloak=keycloak,
        throttle=throttle,
        csrf_guard=csrf_guard,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", CSRF_HEADER_NAME, REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health():
        body: Dict[str, Any] = {"status": "ok"}
        try:
            body["sessions"] = (await asyncio.to_thread(app.state.orchestrator.store.session_stats))["count"]
        except AuthError:
            body["status"] = "degraded"
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
        return body

    return app


app = create_app()
