"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for orgaccess happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. otc_max_requests -> OTC_MAX_REQUESTS).

  @model_validator(mode="after"): cross-field validation once every field is
      resolved. SECRET_KEY follows the DEBUG-conditional policy: dev mode
      generates a key with a warning, production refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Locally issued
       session tokens are HS256 JWTs signed with it.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/,
access/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("orgaccess.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'orgaccess_accounts.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # External collaborators
    # ------------------------------------------------------------------

    identity_provider_url: str = ""
    # Service-level bearer credential, used whenever no user session exists.
    service_key: str = ""
    otc_endpoint_url: str = ""
    http_timeout_seconds: float = Field(default=10.0, gt=0)

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    otc_max_requests: int = Field(default=4, ge=1)
    otc_window_minutes: int = Field(default=60, ge=1)
    # Progressive wait between requests inside one window. The hosted
    # deployment ran with [0, 1, 3, 5]; empty means no inter-request wait.
    otc_cooldown_steps_minutes: list[int] = Field(default_factory=list)
    otc_code_length: int = Field(default=6, ge=4, le=10)
    otc_code_ttl_seconds: int = Field(default=3600, gt=0)
    session_ttl_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Code delivery (Resend-compatible HTTP API)
    # ------------------------------------------------------------------

    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_sender: str = "orgaccess <auth@localhost>"
    organization_name: str = "orgaccess"

    # ------------------------------------------------------------------
    # HTTP server
    # ------------------------------------------------------------------

    send_code_rate_limit: str = "10/minute"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:3000"])

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens minted by this process die with it.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued session tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_cooldown_steps(self) -> "Settings":
        if any(step < 0 for step in self.otc_cooldown_steps_minutes):
            raise ValueError("OTC_COOLDOWN_STEPS_MINUTES must not contain negative values.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
