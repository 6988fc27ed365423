# src/marketplace_bff/orchestrator.py

"""
Login, refresh, logout and session inspection.

The orchestrator composes the identity provider client, the session store, the
login throttle and the token verifier. Blocking store work runs in a worker
thread and every await is bounded by a timeout; a provider call that times out
never leaves a session behind.
"""
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import structlog
from jose import JWTError, jwt
from pydantic import BaseModel, Field, field_validator

from .auth_utils import KeycloakClient, TokenSet
from .config import RealmConfig, Settings
from .csrf import CSRFGuard
from .errors import AuthError, AuthErrorKind
from .log import session_hint
from .login_throttle import LoginThrottle, attempt_key
from .session_data import AuthType, SessionMetadata
from .session_store import SessionStore
from .token_verifier import TokenVerifier, VerifiedToken

logger = structlog.get_logger("marketplace_bff.orchestrator")

T = TypeVar("T")


# --- Login state machine ---

class LoginState(str, Enum):
    IDLE = "idle"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_TRANSITIONS: Dict[LoginState, frozenset] = {
    LoginState.IDLE: frozenset({LoginState.CREDENTIALS_SUBMITTED, LoginState.FAILED}),
    LoginState.CREDENTIALS_SUBMITTED: frozenset({
        LoginState.AWAITING_SECOND_FACTOR,
        LoginState.AUTHENTICATED,
        LoginState.FAILED,
    }),
    LoginState.AWAITING_SECOND_FACTOR: frozenset({LoginState.AUTHENTICATED, LoginState.FAILED}),
    LoginState.AUTHENTICATED: frozenset({LoginState.IDLE}),
    LoginState.FAILED: frozenset({LoginState.IDLE}),
}


class LoginAttempt:
    """Tracks one login attempt; illegal transitions raise ValueError."""

    def __init__(self, state: LoginState = LoginState.IDLE) -> None:
        self.state = LoginState(state)
        self.history: List[LoginState] = [self.state]

    def can_transition(self, to: LoginState) -> bool:
        return LoginState(to) in _TRANSITIONS[self.state]

    def transition(self, to: LoginState) -> LoginState:
        to = LoginState(to)
        if not self.can_transition(to):
            raise ValueError(f"illegal login transition {self.state.value} -> {to.value}")
        self.state = to
        self.history.append(to)
        return to

    def fail(self) -> None:
        if self.can_transition(LoginState.FAILED):
            self.transition(LoginState.FAILED)


# --- Request / outcome models ---

class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=1, max_length=1024)
    authType: AuthType = AuthType.CUSTOMERS
    otp: Optional[str] = Field(default=None, max_length=16)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username must not be blank")
        return v

    @field_validator("otp", mode="before")
    @classmethod
    def empty_otp_is_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ClientInfo(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class LoginOutcome(BaseModel):
    state: LoginState
    auth_type: AuthType
    session_id: str = Field(repr=False)
    access_token: str = Field(repr=False)
    expires_in: int
    user_id: Optional[str] = None
    csrf_token: str = Field(repr=False)


class RefreshOutcome(BaseModel):
    auth_type: AuthType
    access_token: str = Field(repr=False)
    expires_in: int
    token_type: str = "Bearer"
    rotated: bool


def token_subject(access_token: str) -> Optional[str]:
    """`sub` of a token just received from the provider's token endpoint."""
    try:
        return jwt.get_unverified_claims(access_token).get("sub")
    except JWTError:
        return None


class AuthOrchestrator:
    def __init__(
        self,
        *,
        store: SessionStore,
        keycloak: KeycloakClient,
        verifier: TokenVerifier,
        throttle: LoginThrottle,
        csrf_guard: CSRFGuard,
        realms: Dict[AuthType, RealmConfig],
        store_timeout_s: float = 5.0,
        provider_timeout_s: float = 10.0,
    ) -> None:
        self.store = store
        self.keycloak = keycloak
        self.verifier = verifier
        self.throttle = throttle
        self.csrf_guard = csrf_guard
        self.realms = dict(realms)
        self.store_timeout_s = store_timeout_s
        self.provider_timeout_s = provider_timeout_s

    @classmethod
    def from_settings(cls, settings: Settings, **components: Any) -> "AuthOrchestrator":
        return cls(
            store=components.get("store") or SessionStore(
                settings.SESSION_DB_PATH,
                max_age_seconds=settings.SESSION_MAX_AGE_SECONDS,
                lock_timeout_s=settings.STORE_TIMEOUT_SECONDS,
            ),
            keycloak=components.get("keycloak") or KeycloakClient.from_settings(settings),
            verifier=components.get("verifier") or TokenVerifier.from_settings(settings),
            throttle=components.get("throttle") or LoginThrottle.from_settings(settings),
            csrf_guard=components.get("csrf_guard") or CSRFGuard.from_settings(settings),
            realms=settings.realms,
            store_timeout_s=settings.STORE_TIMEOUT_SECONDS,
            provider_timeout_s=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    # --- Bounded suspension points ---

    async def _in_store(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.store_timeout_s)
        except asyncio.TimeoutError as e:
            raise AuthError(AuthErrorKind.STORE_UNAVAILABLE, f"{getattr(fn, '__name__', fn)} timed out") from e

    async def _at_provider(self, call: Awaitable[T], action: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self.provider_timeout_s)
        except asyncio.TimeoutError as e:
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"{action} timed out") from e

    # --- Flows ---

    async def login(self, request_data: LoginRequest, client: Optional[ClientInfo] = None) -> LoginOutcome:
        """
        Password login with optional TOTP.

        Raises SECOND_FACTOR_REQUIRED (attempt parked in AWAITING_SECOND_FACTOR)
        when the realm wants an OTP and none was sent; the browser then repeats
        the request with `otp` filled in.
        """
        client = client or ClientInfo()
        auth_type = AuthType(request_data.authType)
        realm = self.realms[auth_type]
        key = attempt_key(client.ip_address, auth_type, request_data.username)
        attempt = LoginAttempt()

        await self._in_store(self.throttle.check, key)
        attempt.transition(LoginState.CREDENTIALS_SUBMITTED)
        logger.info("login_started", auth_type=auth_type.value, with_otp=bool(request_data.otp))

        try:
            tokens: TokenSet = await self._at_provider(
                self.keycloak.password_grant(realm, request_data.username, request_data.password, request_data.otp),
                "password_grant",
            )
        except AuthError as e:
            if e.kind == AuthErrorKind.SECOND_FACTOR_REQUIRED:
                attempt.transition(LoginState.AWAITING_SECOND_FACTOR)
                logger.info("login_second_factor_required", auth_type=auth_type.value)
                raise
            attempt.fail()
            if e.kind in (AuthErrorKind.INVALID_CREDENTIALS, AuthErrorKind.INVALID_SECOND_FACTOR):
                await self._in_store(self.throttle.record_failure, key)
            logger.info("login_failed", auth_type=auth_type.value, kind=e.kind.value)
            raise

        if request_data.otp:
            attempt.transition(LoginState.AWAITING_SECOND_FACTOR)

        if not tokens.refresh_token:
            attempt.fail()
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, "provider issued no refresh token")

        user_id = token_subject(tokens.access_token)
        metadata = SessionMetadata(user_id=user_id, ip_address=client.ip_address, user_agent=client.user_agent)
        try:
            session_id = await self._in_store(self.store.create_session, tokens.refresh_token, auth_type, metadata)
        except AuthError:
            attempt.fail()
            raise
        await self._in_store(self.throttle.record_success, key)

        attempt.transition(LoginState.AUTHENTICATED)
        logger.info("login_succeeded", auth_type=auth_type.value, session=session_hint(session_id))
        return LoginOutcome(
            state=attempt.state,
            auth_type=auth_type,
            session_id=session_id,
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            user_id=user_id,
            csrf_token=self.csrf_guard.generate_token(),
        )

    async def refresh(self, session_id: Optional[str]) -> RefreshOutcome:
        if not session_id:
            raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, "no session cookie")
        record = await self._in_store(self.store.get_session, session_id)
        realm = self.realms[record.auth_type]

        try:
            tokens: TokenSet = await self._at_provider(
                self.keycloak.refresh_grant(realm, record.refresh_token),
                "refresh_grant",
            )
        except AuthError as e:
            if e.kind == AuthErrorKind.PROVIDER_ERROR:
                raise
            # The provider no longer honors this refresh token; the session is dead.
            logger.info("refresh_rejected", session=session_hint(session_id), kind=e.kind.value)
            await self._in_store(self.store.delete_session, session_id)
            raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, f"refresh rejected: {e.detail}") from e

        rotated = bool(tokens.refresh_token) and tokens.refresh_token != record.refresh_token
        if rotated:
            await self._in_store(self.store.rotate_session, session_id, tokens.refresh_token)

        return RefreshOutcome(
            auth_type=record.auth_type,
            access_token=tokens.access_token,
            expires_in=tokens.expires_in,
            token_type=tokens.token_type or "Bearer",
            rotated=rotated,
        )

    async def logout(self, session_id: Optional[str]) -> bool:
        """
        Ends the session if there is one and returns whether one was found.

        STORE_UNAVAILABLE from the lookup or the delete propagates (after the
        provider-side revocation, when the record could be read); the caller
        still clears the browser cookies.
        """
        if not session_id:
            return False
        try:
            record = await self._in_store(self.store.get_session, session_id)
        except AuthError as e:
            if e.kind == AuthErrorKind.SESSION_NOT_FOUND:
                return False
            logger.error("logout_lookup_failed", session=session_hint(session_id), kind=e.kind.value)
            raise

        delete_error: Optional[AuthError] = None
        try:
            await self._in_store(self.store.delete_session, session_id)
        except AuthError as e:
            logger.error("logout_delete_failed", session=session_hint(session_id), kind=e.kind.value)
            delete_error = e

        realm = self.realms[record.auth_type]
        revoked = await self.keycloak.revoke(realm, record.refresh_token)
        if delete_error is not None:
            raise delete_error
        logger.info("logout_completed", session=session_hint(session_id), provider_revoked=revoked)
        return True

    async def inspect(self, session_id: Optional[str]) -> Dict[str, Any]:
        """Public session facts; STORE_UNAVAILABLE propagates rather than reading as logged out."""
        if not session_id:
            return {"authenticated": False}
        try:
            record = await self._in_store(self.store.get_session, session_id)
        except AuthError as e:
            if e.kind == AuthErrorKind.SESSION_NOT_FOUND:
                return {"authenticated": False}
            raise
        return {"authenticated": True, **record.public_view()}

    async def verify_bearer(self, token: Optional[str]) -> VerifiedToken:
        if not token:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, "no bearer token supplied")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.verifier.verify, token),
                timeout=self.provider_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, "token verification timed out") from e
