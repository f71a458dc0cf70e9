"""
core/config.py -- ChatAuth settings, read from the environment with pydantic-settings.

Nothing else in the tree reads os.environ. Process entry points (the
api/main.py lifespan and the main.py CLI) call get_settings() once and pass
the Settings object into every component constructor, so tests can hand-build
a Settings and never touch the environment.

Field names map to upper-case env vars (secret_key -> SECRET_KEY); a .env file
in the working directory is read when present. The after-validator applies
the signing-key policy once every field is resolved.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every access token.

  [M7] Outside DEBUG, a missing SECRET_KEY aborts startup. A per-process
       random key would log every client out on each restart.

  PREVIOUS_SECRET_KEYS are accepted for verification only. Deploy a new
  SECRET_KEY with the old one listed here, wait one access-token TTL, then
  drop the old key.

Layer rule: core/ is the kernel. This module may not import from api/, ws/,
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("chatauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'chatauth.db'}"


class Settings(BaseSettings):
    """ChatAuth runtime configuration.

    Every field has a default except where the validator says otherwise, so
    tests build one directly with keyword overrides.
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
    # "" means unset; validate_secret_key replaces it or raises.
    secret_key: str = ""
    previous_secret_keys: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "chatauth"
    jwt_audience: str = "chatauth-users"
    # Access tokens are never extended in place; only rotation replaces them.
    access_token_ttl_seconds: int = Field(default=15 * 60, ge=1, le=3600)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, ge=60)

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31; each step doubles the cost.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    purge_interval_seconds: int = Field(default=60 * 60, ge=1)
    purge_retention_seconds: int = Field(default=24 * 60 * 60, ge=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Signing-key policy [M6] [M7].

        DEBUG without SECRET_KEY gets a random per-process key (logged).
        Production without SECRET_KEY is a startup error. Any key, current or
        previous, shorter than 32 characters is rejected.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set it in the environment or .env, or set DEBUG=true for local development."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("Generated a throwaway SECRET_KEY; issued tokens die with this process.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if any(len(key) < 32 for key in self.previous_secret_keys):
            raise ValueError("Every PREVIOUS_SECRET_KEYS entry must be at least 32 characters.")
        return self

    @property
    def verification_keys(self) -> list[str]:
        """Keys accepted when verifying access tokens, current key first."""
        return [self.secret_key, *self.previous_secret_keys]


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first call and return the same instance afterwards.

    Entry points only. Tests that change env vars must call
    get_settings.cache_clear() first.
    """
    return Settings()
