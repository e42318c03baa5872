"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or accept a Settings instance from the composition root (api/container.py).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates missing signing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright. HS256
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] Access and refresh secrets must differ. A shared key would let a
       refresh token verify as an access token if the `type` claim check were
       ever bypassed.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
security/, or audit/.
"""

import ipaddress
import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionguard.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    database_url: str = _DEFAULT_DB_URL

    # HTTP surface. List fields are read from env as JSON arrays.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Peers whose X-Forwarded-For / X-Real-IP / CF-Connecting-IP headers are
    # believed. Addresses or CIDR blocks; "*" trusts every peer.
    trusted_proxies: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator
    # either generates a dev key or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    # HMAC key for persisted token hashes (refresh tokens, blacklist).
    # Falls back to refresh_token_secret when unset.
    token_hash_key: str = ""

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_days: int = 30
    token_issuer: str = "sessionguard"
    token_audience: str = "api"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_days: int = 7
    remember_me_ttl_days: int = 30
    # Replay of a superseded refresh token revokes the whole session.
    refresh_reuse_revokes_session: bool = True

    # ------------------------------------------------------------------
    # Login throttling
    # ------------------------------------------------------------------

    rate_limit_max_attempts: int = 5
    rate_limit_max_ip_attempts: int = 10
    rate_limit_window_minutes: int = 15
    lockout_max_failures: int = 5
    lockout_window_minutes: int = 30
    suspicious_window_minutes: int = 60
    block_bots: bool = False

    # slowapi per-IP throttle on POST /auth/login, in front of the ledger checks
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    password_hash_scheme: Literal["bcrypt", "argon2"] = "bcrypt"
    bcrypt_rounds: int = 12
    argon2_time_cost: int = 3

    # ------------------------------------------------------------------
    # Retention / pruning
    # ------------------------------------------------------------------

    login_attempt_retention_days: int = 90
    audit_retention_days: int = 365
    expired_session_grace_days: int = 7
    revoked_session_retention_days: int = 30
    prune_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("trusted_proxies")
    @classmethod
    def validate_trusted_proxies(cls, v: list[str]) -> list[str]:
        for entry in v:
            if entry.strip() != "*":
                ipaddress.ip_network(entry.strip(), strict=False)
        return v

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce signing-secret policy [M6] [M7] [M8].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Issued tokens will not survive a restart -- acceptable locally.

        Production mode: refuse to start if either secret is missing.
        """
        for name in ("access_token_secret", "refresh_token_secret"):
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
                logger.warning("WARNING: Using auto-generated %s. Tokens will not persist across restarts.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        if not self.token_hash_key:
            self.token_hash_key = self.refresh_token_secret
        return self

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Reject non-positive thresholds and windows.

        A zero window would make every count query return 0 and silently
        disable throttling, so fail fast instead.
        """
        positive = (
            "access_token_ttl_seconds",
            "refresh_token_ttl_days",
            "session_ttl_days",
            "remember_me_ttl_days",
            "rate_limit_max_attempts",
            "rate_limit_max_ip_attempts",
            "rate_limit_window_minutes",
            "lockout_max_failures",
            "lockout_window_minutes",
            "suspicious_window_minutes",
            "prune_interval_seconds",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...)
    directly and pass it to api.container.build_services().
    """
    return Settings()
