# src/marketplace_bff/config.py

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .session_data import AuthType

# .env is at the project root, two levels up from src/marketplace_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)


class RealmConfig(BaseModel):
    """Keycloak coordinates for one auth type (realm + public client)."""
    auth_type: AuthType
    base_url: str
    realm: str
    client_id: str

    @property
    def issuer(self) -> str:
        return f"{self.base_url.rstrip('/')}/realms/{self.realm}"

    @property
    def token_url(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/token"

    @property
    def logout_url(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/logout"

    @property
    def jwks_uri(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/certs"


class Settings(BaseSettings):
    # === Runtime ===
    ENVIRONMENT: str = "development"  # development | production | test
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # === Keycloak (one realm per auth type) ===
    KEYCLOAK_URL: str = "http://localhost:8080"
    KEYCLOAK_REALM: str = "Customer"
    KEYCLOAK_CLIENT_ID: str = "customer-web"
    KEYCLOAK_DEV_REALM: str = "developer"
    KEYCLOAK_DEV_CLIENT_ID: str = "dev-web"
    KEYCLOAK_VENDOR_REALM: str = "vendor"
    KEYCLOAK_VENDOR_CLIENT_ID: str = "vendor-web"
    KEYCLOAK_CLIENT_SECRET: Optional[str] = None
    KEYCLOAK_VERIFY_TLS: bool = True
    KEYCLOAK_SCOPE: str = "openid profile email offline_access"

    # === Token validation ===
    TOKEN_AUDIENCE: Optional[str] = None
    TOKEN_ALGORITHMS: Union[str, List[str]] = ["RS256"]
    JWKS_CACHE_TTL_SECONDS: int = 600
    JWKS_MIN_REFRESH_SECONDS: int = 30
    JWKS_FETCH_RETRIES: int = 2
    JWKS_FETCH_BACKOFF_MS: int = 200

    # === Sessions ===
    SESSION_DB_PATH: Path = PROJECT_ROOT_DIR / ".sessions" / "sessions.db"
    SESSION_MAX_AGE_SECONDS: int = 7 * 24 * 60 * 60
    SESSION_SWEEP_INTERVAL_SECONDS: int = 60 * 60
    STORE_TIMEOUT_SECONDS: float = 5.0

    # === Cookies / CSRF ===
    CSRF_TOKEN_TTL_SECONDS: int = 60 * 60
    CSRF_DEV_BYPASS: bool = False
    COOKIE_DOMAIN: Optional[str] = None
    CORS_ALLOWED_ORIGINS: Union[str, List[str]] = ["http://localhost:3000"]

    # === Identity provider calls ===
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # === Login throttling ===
    LOGIN_MAX_FAILURES: int = 5
    LOGIN_LOCKOUT_SECONDS: int = 30 * 60
    LOGIN_BACKOFF_BASE_MS: int = 500
    LOGIN_BACKOFF_MAX_MS: int = 30_000

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @field_validator("TOKEN_ALGORITHMS", "CORS_ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_comma_separated(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [item.strip() for item in v.split(",") if item.strip()]
        if isinstance(v, (list, tuple)):
            return list(v)
        raise TypeError("Expected a comma-separated string or a list.")

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> str:
        return str(v or "development").strip().lower()

    @model_validator(mode="after")
    def check_algorithms(self) -> "Settings":
        if not self.TOKEN_ALGORITHMS:
            raise ValueError("TOKEN_ALGORITHMS must name at least one algorithm.")
        if any(alg.lower() == "none" for alg in self.TOKEN_ALGORITHMS):
            raise ValueError("TOKEN_ALGORITHMS must not allow 'none'.")
        return self

    # === Derived properties ===
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def csrf_bypass_active(self) -> bool:
        # Only honored in an explicit development environment.
        return self.CSRF_DEV_BYPASS and self.ENVIRONMENT == "development"

    @property
    def realms(self) -> Dict[AuthType, RealmConfig]:
        return {
            AuthType.CUSTOMERS: RealmConfig(
                auth_type=AuthType.CUSTOMERS,
                base_url=self.KEYCLOAK_URL,
                realm=self.KEYCLOAK_REALM,
                client_id=self.KEYCLOAK_CLIENT_ID,
            ),
            AuthType.DEVELOPERS: RealmConfig(
                auth_type=AuthType.DEVELOPERS,
                base_url=self.KEYCLOAK_URL,
                realm=self.KEYCLOAK_DEV_REALM,
                client_id=self.KEYCLOAK_DEV_CLIENT_ID,
            ),
            AuthType.VENDORS: RealmConfig(
                auth_type=AuthType.VENDORS,
                base_url=self.KEYCLOAK_URL,
                realm=self.KEYCLOAK_VENDOR_REALM,
                client_id=self.KEYCLOAK_VENDOR_CLIENT_ID,
            ),
        }

    def realm_for(self, auth_type: AuthType) -> RealmConfig:
        return self.realms[AuthType(auth_type)]

    @property
    def trusted_issuers(self) -> Dict[str, RealmConfig]:
        return {realm.issuer: realm for realm in self.realms.values()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
