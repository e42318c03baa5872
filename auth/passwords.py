"""
auth/passwords.py -- One-way password hashing behind a pluggable scheme.

Two schemes are supported, selected by PASSWORD_HASH_SCHEME:

  bcrypt  -- direct `bcrypt` usage (no passlib wrapper). Cost factor from
             BCRYPT_ROUNDS. Passwords longer than 72 bytes are truncated by
             bcrypt itself; the HTTP layer caps input length well below that.
  argon2  -- argon2-cffi PasswordHasher with Type.ID (argon2id), time cost
             from ARGON2_TIME_COST.

verify() recognises BOTH formats by prefix regardless of the configured
scheme, so switching schemes does not lock out existing users. Callers can
ask needs_rehash() after a successful login and re-save the hash.

Timing equalization [C1]: dummy_verify() burns the same work as a real
verification. The login flow calls it when the identifier is unknown so
response time does not reveal whether an account exists.

This module is the CredentialHasher consumed by the credential collaborator
(auth/users.py). The control plane itself never sees plaintext beyond the
single verify() call.
"""

from __future__ import annotations

import logging

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

logger = logging.getLogger("sessionguard.auth.passwords")

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_ARGON2_PREFIX = "$argon2"


class CredentialHasher:
    """Hash and verify secrets with the configured algorithm and strength."""

    def __init__(self, scheme: str = "bcrypt", bcrypt_rounds: int = 12, argon2_time_cost: int = 3) -> None:
        if scheme not in ("bcrypt", "argon2"):
            raise ValueError(f"Unsupported password hash scheme: {scheme!r}")
        self.scheme = scheme
        self.bcrypt_rounds = bcrypt_rounds
        self._argon2 = PasswordHasher(time_cost=argon2_time_cost, type=Type.ID)
        # Computed once so the first unknown-identifier login is not measurably
        # slower than subsequent ones.
        self._dummy_hash = self.hash("sessionguard_timing_dummy")

    @classmethod
    def from_settings(cls, settings) -> CredentialHasher:
        return cls(
            scheme=settings.password_hash_scheme,
            bcrypt_rounds=settings.bcrypt_rounds,
            argon2_time_cost=settings.argon2_time_cost,
        )

    def hash(self, plain: str) -> str:
        if self.scheme == "argon2":
            return self._argon2.hash(plain)
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if plain matches hashed. Never raises on malformed input."""
        if not hashed:
            return False
        if hashed.startswith(_ARGON2_PREFIX):
            try:
                return self._argon2.verify(hashed, plain)
            except (VerifyMismatchError, VerificationError, InvalidHash):
                return False
        if hashed.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
            except ValueError:
                return False
        logger.warning("Unrecognised password hash format; treating as mismatch")
        return False

    def dummy_verify(self, plain: str) -> None:
        """Run a verification against a throwaway hash [C1]."""
        self.verify(plain, self._dummy_hash)

    def needs_rehash(self, hashed: str) -> bool:
        """True when hashed was produced by another scheme or a weaker cost."""
        if self.scheme == "argon2":
            if not hashed.startswith(_ARGON2_PREFIX):
                return True
            try:
                return self._argon2.check_needs_rehash(hashed)
            except InvalidHash:
                return True
        if not hashed.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            rounds = int(hashed.split("$")[2])
        except (IndexError, ValueError):
            return True
        return rounds < self.bcrypt_rounds
