# src/marketplace_bff/token_verifier.py

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
import structlog
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import BaseModel

from .backoff import retry_call
from .config import RealmConfig, Settings
from .errors import AuthError, AuthErrorKind
from .session_data import AuthType

logger = structlog.get_logger("marketplace_bff.token_verifier")

JwksFetcher = Callable[[str, float], Dict[str, Any]]

_JWK_FIELDS = ("kty", "kid", "use", "alg", "n", "e", "crv", "x", "y", "x5c")


class VerifiedToken(BaseModel):
    header: Dict[str, Any]
    claims: Dict[str, Any]
    issuer: str
    auth_type: AuthType
    roles: List[str] = []

    @property
    def subject(self) -> Optional[str]:
        return self.claims.get("sub")

    @property
    def expires_at(self) -> Optional[int]:
        exp = self.claims.get("exp")
        return int(exp) if exp is not None else None


def fetch_jwks(jwks_uri: str, timeout: float) -> Dict[str, Any]:
    """Fetches the key set published by the identity provider."""
    response = requests.get(jwks_uri, timeout=timeout)
    response.raise_for_status()
    return response.json()


def extract_roles(claims: Dict[str, Any]) -> List[str]:
    roles = (claims.get("realm_access") or {}).get("roles") or []
    return [str(r) for r in roles if isinstance(r, str)]


class TokenVerifier:
    """
    Verifies Keycloak-issued bearer tokens against the issuing realm's JWKS.

    Only issuers derived from configuration are trusted; the key set for each
    is cached for cache_ttl_seconds and refetched once when a token names a
    key id the cached set does not contain. That refetch happens at most once
    per min_refresh_seconds per issuer, and not while the cached set is younger
    than that.
    """

    def __init__(
        self,
        trusted_issuers: Dict[str, RealmConfig],
        *,
        algorithms: List[str],
        audience: Optional[str] = None,
        cache_ttl_seconds: int = 600,
        min_refresh_seconds: float = 30,
        fetch_timeout_s: float = 10.0,
        fetch_retries: int = 2,
        fetch_backoff_ms: float = 200,
        fetcher: JwksFetcher = fetch_jwks,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.trusted_issuers = dict(trusted_issuers)
        self.algorithms = list(algorithms)
        self.audience = audience
        self.cache_ttl_seconds = cache_ttl_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self.fetch_timeout_s = fetch_timeout_s
        self.fetch_retries = fetch_retries
        self.fetch_backoff_ms = fetch_backoff_ms
        self._fetcher = fetcher
        self._clock = clock
        self._sleep = sleep
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._cache_lock = threading.Lock()
        self._last_forced: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenVerifier":
        return cls(
            settings.trusted_issuers,
            algorithms=settings.TOKEN_ALGORITHMS,
            audience=settings.TOKEN_AUDIENCE,
            cache_ttl_seconds=settings.JWKS_CACHE_TTL_SECONDS,
            min_refresh_seconds=settings.JWKS_MIN_REFRESH_SECONDS,
            fetch_timeout_s=settings.PROVIDER_TIMEOUT_SECONDS,
            fetch_retries=settings.JWKS_FETCH_RETRIES,
            fetch_backoff_ms=settings.JWKS_FETCH_BACKOFF_MS,
            **kwargs,
        )

    # --- Key set cache ---

    def _load_jwks(self, realm: RealmConfig) -> Dict[str, Any]:
        def _attempt() -> Dict[str, Any]:
            return self._fetcher(realm.jwks_uri, self.fetch_timeout_s)

        def _log_retry(attempt: int, delay_ms: float, ex: BaseException) -> None:
            logger.warning("jwks_fetch_retry", issuer=realm.issuer, attempt=attempt, delay_ms=delay_ms, error=str(ex))

        try:
            jwks = retry_call(
                _attempt,
                retries=self.fetch_retries,
                base_delay_ms=self.fetch_backoff_ms,
                retry_on=(requests.RequestException, ValueError),
                on_retry=_log_retry,
                sleep=self._sleep,
            )
        except (requests.RequestException, ValueError) as e:
            logger.error("jwks_fetch_failed", issuer=realm.issuer, error=str(e))
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"could not fetch signing keys for {realm.issuer}") from e

        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise AuthError(AuthErrorKind.PROVIDER_ERROR, f"malformed key set from {realm.issuer}")
        return jwks

    def get_jwks(self, realm: RealmConfig, *, force_refresh: bool = False) -> Dict[str, Any]:
        with self._cache_lock:
            cached = self._cache.get(realm.issuer)
            if cached and not force_refresh and self._clock() - cached[0] < self.cache_ttl_seconds:
                return cached[1]
        jwks = self._load_jwks(realm)
        with self._cache_lock:
            self._cache[realm.issuer] = (self._clock(), jwks)
        return jwks

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
            self._last_forced.clear()

    @staticmethod
    def _find_key(jwks: Dict[str, Any], kid: str) -> Optional[Dict[str, Any]]:
        for key in jwks.get("keys", []):
            if key.get("kid") == kid and key.get("use", "sig") == "sig":
                return {k: key[k] for k in _JWK_FIELDS if k in key}
        return None

    def _may_force_refresh(self, realm: RealmConfig) -> bool:
        now = self._clock()
        with self._cache_lock:
            cached = self._cache.get(realm.issuer)
            last = self._last_forced.get(realm.issuer)
            if cached and now - cached[0] < self.min_refresh_seconds:
                recent = True
            else:
                recent = last is not None and now - last < self.min_refresh_seconds
            if not recent:
                self._last_forced[realm.issuer] = now
        if recent:
            logger.info("jwks_refresh_suppressed", issuer=realm.issuer)
        return not recent

    def get_signing_key(self, realm: RealmConfig, kid: str) -> Dict[str, Any]:
        key = self._find_key(self.get_jwks(realm), kid)
        if key is None and self._may_force_refresh(realm):
            # Unknown kid: the realm may have rotated keys since the last fetch.
            key = self._find_key(self.get_jwks(realm, force_refresh=True), kid)
        if key is None:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"no signing key with kid={kid} for {realm.issuer}")
        return key

    # --- Verification ---

    def verify(self, token: str) -> VerifiedToken:
        parts = (token or "").split(".")
        if len(parts) != 3 or not all(parts):
            raise AuthError(AuthErrorKind.TOKEN_INVALID, "token is not a three-segment JWT")

        try:
            header = jwt.get_unverified_header(token)
            unverified_claims = jwt.get_unverified_claims(token)
        except JWTError as e:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, f"undecodable token: {e}") from e

        issuer = unverified_claims.get("iss")
        realm = self.trusted_issuers.get(issuer) if isinstance(issuer, str) else None
        if realm is None:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"untrusted issuer {issuer!r}")

        kid = header.get("kid")
        if not kid:
            raise AuthError(AuthErrorKind.TOKEN_INVALID, "token header missing 'kid'")
        if header.get("alg") not in self.algorithms:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"algorithm {header.get('alg')!r} not allowed")

        signing_key = self.get_signing_key(realm, kid)

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=self.algorithms,
                audience=self.audience,
                issuer=realm.issuer,
                options={"verify_aud": self.audience is not None},
            )
        except ExpiredSignatureError as e:
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED, f"token expired (sub={unverified_claims.get('sub')})") from e
        except JWTClaimsError as e:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"claims rejected: {e}") from e
        except JWTError as e:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"signature rejected: {e}") from e

        return VerifiedToken(
            header=header,
            claims=claims,
            issuer=realm.issuer,
            auth_type=realm.auth_type,
            roles=extract_roles(claims),
        )
