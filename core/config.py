"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CaptionMe happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing secrets with a
      warning, production mode refuses to start without them.

Security notes:
  [M6] Secrets shorter than 32 chars are rejected outright. HMAC-SHA256 JWT
       signing relies on key entropy -- a short key weakens it.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] JWT_SECRET and REFRESH_TOKEN_SECRET must differ. With a shared secret
       a refresh token would verify as an access token and only the kind tag
       would stand between the two.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
ratelimit/, media/, or waitlist/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("captionme.config")

_SECRET_FIELDS = ("secret_key", "jwt_secret", "refresh_token_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    host: str = "0.0.0.0"  # noqa: S104 -- bind address for the container
    port: int = 3000

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    jwt_secret: str = ""
    refresh_token_secret: str = ""

    # ------------------------------------------------------------------
    # Database / cache
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///captionme.db"
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 2.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 7
    password_reset_expire_seconds: int = 60 * 60
    email_verification_expire_seconds: int = 24 * 60 * 60

    secure_cookies: bool = True
    cookie_samesite: str = "none"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    rate_limit_window_ms: int = 10_000
    rate_limit_max_requests: int = 10

    # ------------------------------------------------------------------
    # Object storage / transcription
    # ------------------------------------------------------------------

    aws_region: str = "ap-south-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    bucket_name: str = ""
    presign_expire_seconds: int = 60
    max_upload_bytes: int = 50 * 1024 * 1024
    allowed_upload_types: str = "video/mp4"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Comma-separated, same format as the ALLOWED_ORIGINS the frontend
    # deployment already sets.
    allowed_origins: str = "http://localhost:3000"
    allowed_hosts: str = "*"

    require_email_verification: bool = False

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def cors_origins(self) -> list[str]:
        return _split_csv(self.allowed_origins)

    @property
    def trusted_hosts(self) -> list[str]:
        return _split_csv(self.allowed_hosts)

    @property
    def upload_types(self) -> set[str]:
        return set(_split_csv(self.allowed_upload_types))

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate any missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning("Using auto-generated %s. Tokens will not survive a restart.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.jwt_secret == self.refresh_token_secret:
            raise ValueError("JWT_SECRET and REFRESH_TOKEN_SECRET must be different.")
        return self


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
