"""
auth/tokens.py -- Access/refresh token codec and token hashing.

Security design decisions:
  JWT: python-jose with HS256. Two token classes, two DISTINCT keys:
       access  -- sub, email, role, permissions, sid, type="access", iss, aud,
                  iat, exp, jti. Short TTL (default 15 minutes).
       refresh -- sub, type="refresh", iss, aud, iat, exp, jti. Long TTL
                  (default 30 days). Callers treat it as an opaque bearer
                  string; only its hash is ever persisted or compared.
       Verification checks signature, expiry, issuer, audience AND the
       embedded `type`, so an access token presented where a refresh token is
       expected (or vice versa) is rejected even if keys were ever shared.
       jti makes two tokens minted for the same subject in the same second
       distinct, which keeps refresh-token hashes unique.

  Hashing: HMAC-SHA256(TOKEN_HASH_KEY, raw) as hex. Refresh tokens and
       blacklisted access tokens carry 256+ bits of signature entropy, so a
       slow KDF is unnecessary; a keyed hash means a leaked table cannot be
       matched against tokens without the key. Deterministic, so lookup is
       O(1) through a UNIQUE index.

  Unverified decoding: decode_unverified()/expiry_of() exist ONLY for
       bookkeeping (e.g. blacklist TTL). Never use them for access control.

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import Unauthenticated

logger = logging.getLogger("sessionguard.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"


def hash_token(raw: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw) as a 64-char hex string."""
    if not raw:
        raise ValueError("Token is required for hashing")
    return hmac.new(key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


class TokenCodec:
    """Issue, verify and hash bearer credentials.

    Stateless apart from its keys and TTLs; build one per process from
    Settings (see from_settings) and share it.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        hash_key: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        issuer: str = "sessionguard",
        audience: str = "api",
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self._hash_key = hash_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, settings) -> TokenCodec:
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            hash_key=settings.token_hash_key,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            issuer=settings.token_issuer,
            audience=settings.token_audience,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        user_id: str,
        email: str,
        role: str,
        permissions: list[str] | tuple[str, ...] = (),
        session_id: str | None = None,
    ) -> str:
        if not user_id or not email:
            raise ValueError("User ID and email are required for token generation")
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "permissions": list(permissions),
            "type": ACCESS,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.access_ttl,
            "jti": uuid.uuid4().hex,
        }
        if session_id:
            payload["sid"] = session_id
        return jwt.encode(payload, self._access_secret, algorithm=_ALGORITHM)

    def issue_refresh_token(self, user_id: str) -> str:
        if not user_id:
            raise ValueError("User ID is required for refresh token generation")
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "type": REFRESH,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.refresh_ttl,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._refresh_secret, algorithm=_ALGORITHM)

    def refresh_expiry(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(timezone.utc)) + self.refresh_ttl

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> dict:
        """Verify an access token. Raises Unauthenticated on any failure."""
        return self._verify(token, self._access_secret, ACCESS)

    def verify_refresh(self, token: str) -> dict:
        """Verify a refresh token. Raises Unauthenticated on any failure."""
        return self._verify(token, self._refresh_secret, REFRESH)

    def _verify(self, token: str, secret: str, expected_type: str) -> dict:
        if not token:
            raise Unauthenticated(f"{expected_type}_token_missing")
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise Unauthenticated(f"{expected_type}_token_expired") from exc
        except JWTError as exc:
            raise Unauthenticated(f"{expected_type}_token_invalid") from exc
        if payload.get("type") != expected_type:
            raise Unauthenticated("token_type_mismatch")
        if not payload.get("sub"):
            raise Unauthenticated(f"{expected_type}_token_invalid")
        return payload

    # ------------------------------------------------------------------
    # Bookkeeping only -- never for access control
    # ------------------------------------------------------------------

    @staticmethod
    def decode_unverified(token: str) -> dict | None:
        try:
            return jwt.get_unverified_claims(token)
        except JWTError:
            return None

    @classmethod
    def expiry_of(cls, token: str) -> datetime | None:
        claims = cls.decode_unverified(token)
        if not claims or "exp" not in claims:
            return None
        try:
            return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    @classmethod
    def subject_of(cls, token: str) -> str | None:
        claims = cls.decode_unverified(token)
        if not claims:
            return None
        return claims.get("sub")

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash(self, raw: str) -> str:
        return hash_token(raw, self._hash_key)
