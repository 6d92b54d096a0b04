"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Authorization Server"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = "sqlite:///./authserver.db"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Session cookie (set by the external login collaborator)
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    SESSION_COOKIE_NAME: str = "authserver_session"
    SESSION_MAX_AGE_SECONDS: int = 8 * 3600

    # OAuth endpoints
    OAUTH_ISSUER: str = "http://localhost:8000"
    OAUTH_LOGIN_URL: str = "/auth"
    OAUTH_CONSENT_URL: str = "/oauth/consent"

    # Token lifetimes
    AUTHORIZATION_CODE_TTL_SECONDS: int = 60
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    ID_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    PENDING_AUTHORIZATION_TTL_SECONDS: int = 600

    # Token/session security
    MAX_REFRESH_TOKEN_FAMILY_SIZE: int = 50
    OAUTH_ALLOWED_SCOPES: Annotated[List[str], NoDecode] = ["openid", "profile", "email", "roles"]

    # Signing keys
    SIGNING_KEY_SIZE: int = 2048
    SIGNING_KEY_ROTATION_DAYS: int = 30
    SIGNING_KEY_MAX_RETAINED: int = 3
    SIGNING_KEY_REFRESH_SECONDS: float = 30.0

    # Expiry sweeper
    RUN_EMBEDDED_SWEEPER: bool = True
    SWEEPER_INTERVAL_SECONDS: float = 300.0
    CODE_RETENTION_SECONDS: int = 3600

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", "OAUTH_ALLOWED_SCOPES", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        """
        Accept JSON array, comma-separated or space-separated values from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            CORS_ORIGINS=http://localhost:3000,http://example.com
            OAUTH_ALLOWED_SCOPES=openid profile email
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]

        return [item.strip() for item in raw.replace(",", " ").split() if item.strip()]

    @field_validator("AUTHORIZATION_CODE_TTL_SECONDS")
    @classmethod
    def _limit_code_ttl(cls, value: int) -> int:
        if value <= 0 or value > 60:
            raise ValueError("AUTHORIZATION_CODE_TTL_SECONDS must be between 1 and 60")
        return value

    @field_validator("OAUTH_ISSUER")
    @classmethod
    def _strip_issuer(cls, value: str) -> str:
        return value.rstrip("/")

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "authserver.log")
        return p

    def endpoint_url(self, path: str) -> str:
        """Absolute URL of an endpoint served by this issuer."""
        return f"{self.OAUTH_ISSUER}{path}"

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT.lower() != "production":
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if not self.OAUTH_ISSUER.startswith("https://"):
            raise ValueError("OAUTH_ISSUER must use https in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
