"""
auth/users.py -- The credential-store collaborator.

The session control plane only consumes two lookups from whatever owns user
records (CredentialStore below). UserStore is a SQLAlchemy-backed
implementation used by the bundled HTTP app and the test suite; a host
application with its own user table can supply any object with the same
methods instead.

Identifiers are normalised (stripped, lower-cased) before every lookup so
"User@Example.com" and "user@example.com" are the same account, matching the
normalisation the attempt ledger applies.

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Protocol

from sqlalchemy.engine import Engine

from auth.models import UserCredentials
from core.db import iso, users, utcnow

logger = logging.getLogger("sessionguard.auth.users")


def normalize_identifier(identifier: str | None) -> str:
    return (identifier or "").strip().lower()


class CredentialStore(Protocol):
    def find_by_identifier_with_secret(self, identifier: str) -> UserCredentials | None: ...

    def get_by_id(self, user_id: str) -> UserCredentials | None: ...


class UserStore:
    """Repository for user credential records.

    Usage:
        store = UserStore(engine)
        uid = store.create_user("admin@example.com", hasher.hash("secret"), role="admin")
        user = store.find_by_identifier_with_secret("admin@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(
        self,
        email: str,
        hashed_password: str,
        role: str = "user",
        permissions: list[str] | None = None,
        status: str = "active",
    ) -> str:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        user_id = str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                users.insert().values(
                    id=user_id,
                    email=normalize_identifier(email),
                    hashed_password=hashed_password,
                    role=role,
                    permissions=json.dumps(permissions or []),
                    status=status,
                    created_at=iso(utcnow()),
                )
            )
            conn.commit()
        return user_id

    def find_by_identifier_with_secret(self, identifier: str) -> UserCredentials | None:
        """Look up by email and include the password hash. Returns None if unknown."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_identifier(identifier))).fetchone()
        return _row_to_user(row, with_secret=True) if row is not None else None

    def get_by_id(self, user_id: str) -> UserCredentials | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id_with_secret(self, user_id: str) -> UserCredentials | None:
        """get_by_id() plus the password hash, for re-verifying a signed-in user."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row, with_secret=True) if row is not None else None

    def update_last_login(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=iso(utcnow())))
            conn.commit()

    def update_password_hash(self, user_id: str, hashed_password: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(hashed_password=hashed_password))
            conn.commit()
        return result.rowcount > 0

    def update_user(self, user_id: str, **fields) -> bool:
        """Update role, permissions or status. Returns False if user_id is unknown."""
        allowed = {"role", "permissions", "status"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "permissions" in fields:
            fields["permissions"] = json.dumps(list(fields["permissions"] or []))
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


def _row_to_user(row, with_secret: bool = False) -> UserCredentials:
    try:
        permissions = json.loads(row.permissions) if row.permissions else []
    except (TypeError, ValueError):
        logger.warning("Malformed permissions JSON for user %s; treating as empty", row.id)
        permissions = []
    return UserCredentials(
        id=row.id,
        email=row.email,
        role=row.role,
        permissions=list(permissions),
        status=row.status,
        hashed_password=row.hashed_password if with_secret else None,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )
