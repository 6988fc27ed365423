# src/marketplace_bff/auth_utils.py

from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from .config import RealmConfig, Settings
from .errors import AuthError, AuthErrorKind

logger = structlog.get_logger("marketplace_bff.auth_utils")

# Keycloak error codes that mean "the user got something wrong", as opposed to
# a misconfigured client or an unhealthy server.
_CREDENTIAL_ERRORS = {
    "invalid_grant",
    "invalid_user_credentials",
    "user_not_found",
    "account_disabled",
    "account_locked",
    "user_temporarily_disabled",
    "password_expired",
}


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 300
    refresh_expires_in: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None


def classify_token_error(status_code: int, body: Dict[str, Any], *, otp_supplied: bool) -> AuthError:
    """
    Map a failed token-endpoint response to an AuthError.

    Keycloak reports TOTP problems through error_description text on an
    invalid_grant error, so the description is inspected first.
    """
    error = str(body.get("error") or "")
    description = str(body.get("error_description") or "")
    lower_desc = description.lower()
    detail = f"keycloak status={status_code} error={error or 'unknown'} description={description or '-'}"

    mentions_otp = "totp" in lower_desc or "otp" in lower_desc
    if mentions_otp and status_code in (400, 401):
        if not otp_supplied and ("required" in lower_desc or "missing" in lower_desc):
            return AuthError(AuthErrorKind.SECOND_FACTOR_REQUIRED, detail)
        if otp_supplied and ("invalid" in lower_desc or "incorrect" in lower_desc):
            return AuthError(AuthErrorKind.INVALID_SECOND_FACTOR, detail)

    if status_code in (400, 401) and (error in _CREDENTIAL_ERRORS or status_code == 401):
        return AuthError(AuthErrorKind.INVALID_CREDENTIALS, detail)

    return AuthError(AuthErrorKind.PROVIDER_ERROR, detail)


class KeycloakClient:
    """
    Direct calls to a realm's OpenID Connect token endpoint.

    Every request gets its own short-lived AsyncClient with an explicit
    timeout; network and protocol failures become PROVIDER_ERROR.
    """

    def __init__(
        self,
        *,
        timeout_s: float = 10.0,
        verify_tls: bool = True,
        client_secret: Optional[str] = None,
        scope: str = "openid profile email offline_access",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.verify_tls = verify_tls
        self.client_secret = client_secret
        self.scope = scope
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "KeycloakClient":
        return cls(
            timeout_s=settings.PROVIDER_TIMEOUT_SECONDS,
            verify_tls=settings.KEYCLOAK_VERIFY_TLS,
            client_secret=settings.KEYCLOAK_CLIENT_SECRET,
            scope=settings.KEYCLOAK_SCOPE,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": self.timeout_s, "verify": self.verify_tls}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    def _client_form(self, realm: RealmConfig) -> Dict[str, str]:
        form = {"client_id": realm.client_id}
        if self.client_secret:
            form["client_secret"] = self.client_secret
        return form

    async def _post_form(self, url: str, form: Dict[str, str], *, action: str) -> httpx.Response:
        async with self._client() as client:
            try:
                return await client.post(
                    url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
            except httpx.TimeoutException as e:
                logger.error("keycloak_timeout", action=action, url=url)
                raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"{action}: timed out calling {url}") from e
            except httpx.RequestError as e:
                logger.error("keycloak_unreachable", action=action, url=url, error=str(e))
                raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"{action}: could not reach {url}: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _token_set(self, response: httpx.Response, *, action: str, otp_supplied: bool = False) -> TokenSet:
        body = self._json(response)
        if response.status_code != 200:
            err = classify_token_error(response.status_code, body, otp_supplied=otp_supplied)
            logger.info("keycloak_token_rejected", action=action, kind=err.kind.value, status=response.status_code)
            raise err
        if not body.get("access_token"):
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"{action}: token response missing access_token")
        return TokenSet.model_validate(body)

    # --- Grants ---

    async def password_grant(
        self,
        realm: RealmConfig,
        username: str,
        password: str,
        otp: Optional[str] = None,
    ) -> TokenSet:
        """Resource-owner password grant; includes the TOTP code when supplied."""
        form = self._client_form(realm)
        form.update({
            "grant_type": "password",
            "username": username,
            "password": password,
            "scope": self.scope,
        })
        if otp:
            form["totp"] = otp
        response = await self._post_form(realm.token_url, form, action="password_grant")
        return self._token_set(response, action="password_grant", otp_supplied=bool(otp))

    async def refresh_grant(self, realm: RealmConfig, refresh_token: str) -> TokenSet:
        form = self._client_form(realm)
        form.update({"grant_type": "refresh_token", "refresh_token": refresh_token})
        response = await self._post_form(realm.token_url, form, action="refresh_grant")
        return self._token_set(response, action="refresh_grant")

    async def revoke(self, realm: RealmConfig, refresh_token: str) -> bool:
        """
        Ends the provider-side session for a refresh token.
        Best-effort: returns False instead of raising, logout must not depend on it.
        """
        form = self._client_form(realm)
        form["refresh_token"] = refresh_token
        try:
            response = await self._post_form(realm.logout_url, form, action="logout")
        except AuthError as e:
            logger.warning("keycloak_logout_failed", detail=e.detail)
            return False
        ok = response.status_code in (200, 204)
        if not ok:
            logger.warning("keycloak_logout_rejected", status=response.status_code)
        return ok
