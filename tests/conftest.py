import itertools
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jose import jwk, jwt

from marketplace_bff.auth_utils import KeycloakClient
from marketplace_bff.config import Settings, get_settings
from marketplace_bff.main import create_app
from marketplace_bff.token_verifier import TokenVerifier

KEYCLOAK_URL = "http://keycloak.test"
TEST_KID = "test-key-1"


@pytest.fixture(autouse=True)
def _test_env(tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("KEYCLOAK_URL", KEYCLOAK_URL)
    monkeypatch.setenv("SESSION_DB_PATH", str(tmp_path / "state" / "sessions.db"))
    monkeypatch.setenv("CSRF_DEV_BYPASS", "false")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.delenv("LOG_FILE", raising=False)
    monkeypatch.delenv("TOKEN_AUDIENCE", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


# --- Signing keys ---

def _generate_rsa(kid: str) -> Tuple[str, Dict[str, Any]]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    public_jwk = jwk.construct(public_pem, "RS256").to_dict()
    public_jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return private_pem, public_jwk


@pytest.fixture(scope="session")
def rsa_key() -> Tuple[str, Dict[str, Any]]:
    return _generate_rsa(TEST_KID)


@pytest.fixture(scope="session")
def other_rsa_key() -> Tuple[str, Dict[str, Any]]:
    return _generate_rsa("rotated-key-2")


@pytest.fixture
def jwks(rsa_key) -> Dict[str, Any]:
    return {"keys": [rsa_key[1]]}


def issuer_for(realm: str) -> str:
    return f"{KEYCLOAK_URL}/realms/{realm}"


def sign_token(private_pem: str, claims: Dict[str, Any], kid: Optional[str] = TEST_KID, alg: str = "RS256") -> str:
    headers = {"kid": kid} if kid else None
    return jwt.encode(claims, private_pem, algorithm=alg, headers=headers)


@pytest.fixture
def make_token(rsa_key) -> Callable[..., str]:
    def _make(
            *,
            realm: str = "Customer",
            sub: str = "user-123",
            expires_in: int = 300,
            kid: Optional[str] = TEST_KID,
            private_pem: Optional[str] = None,
            **extra: Any,
    ) -> str:
        now = int(time.time())
        claims = {
            "iss": issuer_for(realm),
            "sub": sub,
            "iat": now,
            "exp": now + expires_in,
            "preferred_username": "alice",
            "email": "alice@example.com",
            "realm_access": {"roles": ["customer"]},
        }
        claims.update(extra)
        return sign_token(private_pem or rsa_key[0], claims, kid=kid)

    return _make


# --- Fake identity provider ---

class FakeKeycloak:
    """In-memory Keycloak token/logout endpoints for httpx.MockTransport."""

    def __init__(self, private_pem: str) -> None:
        self.private_pem = private_pem
        self.users: Dict[str, Dict[str, Optional[str]]] = {
            "alice": {"password": "correct-horse", "otp": None},
            "bob": {"password": "battery-staple", "otp": "123456"},
        }
        self.active_refresh: Dict[str, Tuple[str, str]] = {}
        self.requests: list = []
        self.fail_status: Optional[int] = None
        self.raise_error: Optional[Exception] = None
        self.rotate_refresh = True
        self._counter = itertools.count(1)

    def _tokens(self, realm: str, username: str) -> Dict[str, Any]:
        now = int(time.time())
        access = sign_token(self.private_pem, {
            "iss": issuer_for(realm),
            "sub": f"sub-{username}",
            "iat": now,
            "exp": now + 300,
            "preferred_username": username,
            "email": f"{username}@example.com",
            "realm_access": {"roles": ["customer"]},
        })
        refresh = f"rt-{username}-{next(self._counter)}"
        self.active_refresh[refresh] = (realm, username)
        return {
            "access_token": access,
            "refresh_token": refresh,
            "expires_in": 300,
            "refresh_expires_in": 1800,
            "token_type": "Bearer",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append((request.url.path, form))
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": "server_error"})

        realm = request.url.path.split("/realms/")[1].split("/")[0]
        if request.url.path.endswith("/logout"):
            self.active_refresh.pop(form.get("refresh_token", ""), None)
            return httpx.Response(204)

        grant = form.get("grant_type")
        if grant == "password":
            user = self.users.get(form.get("username", ""))
            if user is None or user["password"] != form.get("password"):
                return httpx.Response(401, json={"error": "invalid_grant", "error_description": "Invalid user credentials"})
            if user["otp"]:
                if not form.get("totp"):
                    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "TOTP is required"})
                if form["totp"] != user["otp"]:
                    return httpx.Response(401, json={"error": "invalid_grant", "error_description": "Invalid TOTP code"})
            return httpx.Response(200, json=self._tokens(realm, form["username"]))

        if grant == "refresh_token":
            token = form.get("refresh_token", "")
            owner = self.active_refresh.get(token)
            if owner is None:
                return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token is not active"})
            if not self.rotate_refresh:
                body = self._tokens(owner[0], owner[1])
                self.active_refresh.pop(body["refresh_token"], None)
                body.pop("refresh_token")
                return httpx.Response(200, json=body)
            del self.active_refresh[token]
            return httpx.Response(200, json=self._tokens(owner[0], owner[1]))

        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def client(self) -> KeycloakClient:
        return KeycloakClient(timeout_s=2.0, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_keycloak(rsa_key) -> FakeKeycloak:
    return FakeKeycloak(rsa_key[0])


@pytest.fixture
def verifier(settings, jwks) -> TokenVerifier:
    return TokenVerifier.from_settings(settings, fetcher=lambda uri, timeout: jwks, sleep=lambda s: None)


@pytest.fixture
def client(settings, fake_keycloak, verifier):
    app = create_app(settings, keycloak=fake_keycloak.client(), verifier=verifier)
    with TestClient(app) as c:
        yield c


def fetch_csrf(c: TestClient) -> str:
    r = c.get("/api/auth/csrf-token")
    assert r.status_code == 200
    return r.json()["csrfToken"]
