"""
Server-side sessions.

The browser holds a signed session id cookie (itsdangerous); the payload lives in a
store keyed by that id with a time-to-live. Postgres is used when a database is
configured, otherwise an in-process store (development only: not shared across workers).
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from functools import lru_cache
from typing import Any, Dict, Optional, Protocol, Tuple

import psycopg
from itsdangerous import BadSignature, URLSafeTimedSerializer
from psycopg.types.json import Jsonb

from portal.auth.config import AuthConfig
from portal.auth.models import DemoUser, FederatedPrincipal
from portal.auth.util import random_token
from portal.db.config import build_postgres_dsn, load_database_config

logger = logging.getLogger(__name__)

SESSION_SALT = "portal-session-v1"
SESSION_TABLE = "sessions"

# Payload keys
SESSION_USER_KEY = "user"  # demo login
SESSION_PRINCIPAL_KEY = "principal"  # federated login
SESSION_OIDC_STATE_KEY = "oidc_state"  # pending authorization request


class SessionStoreError(RuntimeError):
    """Session store could not be read or written."""


class SessionStore(Protocol):
    def get(self, sid: str) -> Optional[Dict[str, Any]]:
        """Return the payload for an unexpired session, or None."""

    def set(self, sid: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        """Create or replace the session payload and push its expiry forward."""

    def destroy(self, sid: str) -> None:
        """Delete the session. Deleting a missing session is not an error."""


class MemorySessionStore:
    """In-process store. Payloads are kept as JSON so reads never alias request state."""

    def __init__(self) -> None:
        self._items: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(sid)
            if item is None:
                return None
            expires, raw = item
            if expires <= time.time():
                del self._items[sid]
                return None
        return json.loads(raw)

    def set(self, sid: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        now = time.time()
        raw = json.dumps(data, separators=(",", ":"), default=str)
        with self._lock:
            for k in [k for k, (exp, _) in self._items.items() if exp <= now]:
                del self._items[k]
            self._items[sid] = (now + ttl_seconds, raw)

    def destroy(self, sid: str) -> None:
        with self._lock:
            self._items.pop(sid, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class PostgresSessionStore:
    """
    Sessions in a pre-existing `sessions(sid, sess, expire)` table.

    The table is created by migrations, never by this class.
    """

    def __init__(self, dsn: str, table_name: str = SESSION_TABLE) -> None:
        self._dsn = dsn
        self._table = table_name

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, autocommit=True)

    def get(self, sid: str) -> Optional[Dict[str, Any]]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT sess FROM {self._table} WHERE sid = %s AND expire > now()",
                    (sid,),
                ).fetchone()
        except psycopg.Error as e:
            raise SessionStoreError(f"Session read failed: {e.__class__.__name__}") from e
        if not row:
            return None
        sess = row[0]
        if isinstance(sess, str):
            sess = json.loads(sess)
        return sess if isinstance(sess, dict) else None

    def set(self, sid: str, data: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO {self._table} (sid, sess, expire)
                    VALUES (%s, %s, now() + make_interval(secs => %s))
                    ON CONFLICT (sid) DO UPDATE SET sess = EXCLUDED.sess, expire = EXCLUDED.expire
                    """,
                    (sid, Jsonb(data), ttl_seconds),
                )
        except psycopg.Error as e:
            raise SessionStoreError(f"Session write failed: {e.__class__.__name__}") from e

    def destroy(self, sid: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(f"DELETE FROM {self._table} WHERE sid = %s", (sid,))
        except psycopg.Error as e:
            raise SessionStoreError(f"Session delete failed: {e.__class__.__name__}") from e


@lru_cache(maxsize=1)
def get_session_store() -> SessionStore:
    dsn = build_postgres_dsn(load_database_config())
    if dsn:
        logger.info("Session store: postgres (table=%s)", SESSION_TABLE)
        return PostgresSessionStore(dsn)
    logger.warning("Session store: in-memory (DATABASE_URL not set); sessions are lost on restart")
    return MemorySessionStore()


class Session:
    """Per-request view of one session. Writes are flushed by `save_session`."""

    def __init__(self, sid: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self.id = sid
        self.data: Dict[str, Any] = data or {}
        self.modified = False
        self.destroyed = False
        self.previous_id: Optional[str] = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def __setitem__(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.modified = True

    def pop(self, key: str, default: Any = None) -> Any:
        if key in self.data:
            self.modified = True
        return self.data.pop(key, default)

    def regenerate(self) -> None:
        """Move the payload to a fresh id on next save (login fixation guard)."""
        if self.id and not self.previous_id:
            self.previous_id = self.id
        self.id = None
        self.modified = True


def session_cookie_name(cfg: AuthConfig) -> str:
    # `__Host-` requires Secure + Path=/ + no Domain; browsers may reject it on HTTP.
    return "__Host-portal_session" if cfg.cookie_secure else "portal_session"


def _serializer(cfg: AuthConfig) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(secret_key=cfg.session_secret, salt=SESSION_SALT)


def load_session(cfg: AuthConfig, store: SessionStore, cookie_value: Optional[str]) -> Session:
    """Resolve the cookie to a session. Bad signatures and unknown ids yield an empty session."""
    if not cookie_value:
        return Session()
    try:
        sid = _serializer(cfg).loads(cookie_value, max_age=cfg.session_ttl_seconds)
    except BadSignature:
        return Session()
    if not isinstance(sid, str) or not sid:
        return Session()
    try:
        data = store.get(sid)
    except SessionStoreError as e:
        logger.warning("Session load failed, continuing without session: %s", str(e))
        return Session()
    if data is None:
        return Session()
    return Session(sid, data)


def save_session(cfg: AuthConfig, store: SessionStore, session: Session) -> Optional[str]:
    """
    Persist a modified session.

    Returns the signed cookie value when the cookie must be (re)sent, else None.
    Raises SessionStoreError when the store rejects the write.
    """
    if session.destroyed or not session.modified:
        return None
    if session.previous_id:
        store.destroy(session.previous_id)
        session.previous_id = None
    if not session.id:
        session.id = random_token(24)
    store.set(session.id, session.data, cfg.session_ttl_seconds)
    session.modified = False
    return _serializer(cfg).dumps(session.id)


def destroy_session(store: SessionStore, session: Session) -> None:
    """Delete the session from the store now. Raises SessionStoreError on failure."""
    for sid in (session.id, session.previous_id):
        if sid:
            store.destroy(sid)
    session.id = None
    session.previous_id = None
    session.data = {}
    session.destroyed = True


def get_demo_user(session: Session) -> Optional[DemoUser]:
    raw = session.get(SESSION_USER_KEY)
    if isinstance(raw, dict) and raw:
        return DemoUser(profile=copy.deepcopy(raw))
    return None


def get_principal(session: Session) -> Optional[FederatedPrincipal]:
    return FederatedPrincipal.from_dict(session.get(SESSION_PRINCIPAL_KEY))


def set_principal(session: Session, principal: FederatedPrincipal) -> None:
    session[SESSION_PRINCIPAL_KEY] = principal.to_dict()


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": value,
        "max_age": cfg.session_ttl_seconds,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }


def clear_session_cookie_kwargs(cfg: AuthConfig) -> dict:
    return {
        "key": session_cookie_name(cfg),
        "value": "",
        "max_age": 0,
        "httponly": True,
        "secure": cfg.cookie_secure,
        "samesite": "lax",
        "path": "/",
    }
