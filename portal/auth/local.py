from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import bcrypt
import psycopg

from portal.auth.models import DemoUser, UserUpsert

logger = logging.getLogger(__name__)

# Columns returned to the client as the demo user profile (never the hash).
_PROFILE_COLUMNS = ("id", "email", "first_name", "last_name", "profile_image_url", "role")


def hash_password(password: str) -> str:
    """
    Hash password with bcrypt (cost factor 12).

    Args:
        password: Plain text password

    Returns:
        Bcrypt hash string
    """
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    """Constant-time bcrypt check; malformed or missing hashes never match."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def validate_credentials(conn: psycopg.Connection, email: str, password: str) -> Optional[DemoUser]:
    """
    Look up a user by email and check the password.

    Args:
        conn: PostgreSQL connection
        email: Login email (matched case-insensitively)
        password: Plain text password

    Returns:
        DemoUser with the stored profile if the credentials match, None otherwise
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, email, first_name, last_name, profile_image_url, role, password_hash
            FROM users
            WHERE lower(email) = lower(%s)
            """,
            (email.strip(),),
        )
        row = cur.fetchone()
    if not row:
        return None

    *profile_values, password_hash = row
    if not verify_password(password, password_hash):
        return None

    profile: Dict[str, Any] = {}
    for key, value in zip(_PROFILE_COLUMNS, profile_values):
        profile[key] = value
    return DemoUser(profile=profile)


def upsert_user(conn: psycopg.Connection, record: UserUpsert) -> None:
    """
    Insert or update the user row for a federated login.

    Idempotent on `id`; a password hash set for demo login is left untouched.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO users (id, email, first_name, last_name, profile_image_url)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
              email = EXCLUDED.email,
              first_name = EXCLUDED.first_name,
              last_name = EXCLUDED.last_name,
              profile_image_url = EXCLUDED.profile_image_url,
              updated_at = now()
            """,
            (record.id, record.email, record.first_name, record.last_name, record.profile_image_url),
        )
    conn.commit()
    logger.debug("Upserted user %s", record.id)


def set_password(conn: psycopg.Connection, email: str, password: str) -> bool:
    """
    Set the demo login password for an existing user.

    Returns:
        True if a row was updated
    """
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE users SET password_hash = %s, updated_at = now() WHERE lower(email) = lower(%s)",
            (hash_password(password), email.strip()),
        )
        updated = cur.rowcount or 0
    conn.commit()
    return updated > 0
