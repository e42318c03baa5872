"""
tests/test_config.py -- Tests for core/config.py (Settings validators).

Settings is built directly rather than through get_settings() so the cached
application instance is never disturbed.

Coverage:
  - Production refuses to start without signing secrets
  - Dev mode generates distinct secrets
  - Short or equal secrets rejected
  - Non-positive thresholds rejected; bcrypt cost bounded
  - token_hash_key falls back to the refresh secret
  - TRUSTED_PROXIES entries must be addresses, CIDR blocks or "*"
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

ACCESS = "a" * 32
REFRESH = "r" * 32


class TestSecrets:
    def test_production_requires_secrets(self) -> None:
        with pytest.raises(ValidationError, match="ACCESS_TOKEN_SECRET is required"):
            Settings(debug=False, access_token_secret="", refresh_token_secret="")

    def test_dev_mode_generates_distinct_secrets(self) -> None:
        settings = Settings(debug=True, access_token_secret="", refresh_token_secret="")
        assert len(settings.access_token_secret) >= 32
        assert settings.access_token_secret != settings.refresh_token_secret

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(debug=False, access_token_secret="short", refresh_token_secret=REFRESH)

    def test_equal_secrets_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must differ"):
            Settings(debug=False, access_token_secret=ACCESS, refresh_token_secret=ACCESS)

    def test_hash_key_falls_back_to_refresh_secret(self) -> None:
        settings = Settings(debug=False, access_token_secret=ACCESS, refresh_token_secret=REFRESH)
        assert settings.token_hash_key == REFRESH

    def test_explicit_hash_key_kept(self) -> None:
        settings = Settings(
            debug=False, access_token_secret=ACCESS, refresh_token_secret=REFRESH, token_hash_key="k" * 32
        )
        assert settings.token_hash_key == "k" * 32


class TestThresholds:
    @pytest.mark.parametrize(
        "field",
        ["rate_limit_max_attempts", "rate_limit_window_minutes", "lockout_window_minutes", "session_ttl_days"],
    )
    def test_non_positive_rejected(self, field: str) -> None:
        with pytest.raises(ValidationError, match="must be positive"):
            Settings(debug=True, **{field: 0})

    def test_bcrypt_rounds_bounded(self) -> None:
        with pytest.raises(ValidationError, match="BCRYPT_ROUNDS"):
            Settings(debug=True, bcrypt_rounds=3)

    def test_unknown_hash_scheme_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, password_hash_scheme="md5")

    def test_defaults(self) -> None:
        settings = Settings(debug=True)
        assert (settings.rate_limit_max_attempts, settings.rate_limit_max_ip_attempts) == (5, 10)
        assert (settings.lockout_max_failures, settings.lockout_window_minutes) == (5, 30)
        assert (settings.session_ttl_days, settings.remember_me_ttl_days) == (7, 30)
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_reuse_revokes_session is True


class TestTrustedProxies:
    def test_default_trusts_every_peer(self) -> None:
        assert Settings(debug=True).trusted_proxies == ["*"]

    def test_addresses_and_cidr_blocks_accepted(self) -> None:
        settings = Settings(debug=True, trusted_proxies=["10.0.0.0/8", "192.0.2.1", "::1"])
        assert settings.trusted_proxies == ["10.0.0.0/8", "192.0.2.1", "::1"]

    def test_garbage_entry_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, trusted_proxies=["not-an-address"])
