"""
Pytest config.

Puts the repo root on sys.path (so `import portal` works without an install), resets the
process-wide auth singletons around every test, and provides a fake OIDC provider that
signs real RS256 ID tokens.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

import jwt  # noqa: E402
import requests  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402

from portal.auth.config import load_auth_config  # noqa: E402
from portal.auth.oidc import clear_caches  # noqa: E402
from portal.auth.session import _serializer, get_session_store, session_cookie_name  # noqa: E402
from portal.db.config import load_database_config  # noqa: E402

ISSUER = "https://idp.example.test/oidc"
CLIENT_ID = "repl-test-123"
APP_HOST = "portal.example.test"
SESSION_SECRET = "test-secret-key-for-testing-purposes-only"

_ENV_VARS = (
    "REPL_ID",
    "REPLIT_DOMAINS",
    "ISSUER_URL",
    "OIDC_CLIENT_SECRET",
    "SESSION_SECRET",
    "SESSION_TTL_SECONDS",
    "AUTH_COOKIE_SECURE",
    "OIDC_RETRY_SECONDS",
    "DATABASE_URL",
    "POSTGRES_HOST",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "DB_AUTO_MIGRATE",
)

# One key for the whole run; RSA generation is slow.
_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_KID = "test-kid-1"


def _reset_singletons() -> None:
    load_auth_config.cache_clear()
    load_database_config.cache_clear()
    get_session_store.cache_clear()
    clear_caches()


@pytest.fixture(autouse=True)
def _isolated_auth_env(monkeypatch: pytest.MonkeyPatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SESSION_SECRET", SESSION_SECRET)
    _reset_singletons()
    yield
    _reset_singletons()


class FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        return self._body

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeProvider:
    """Stands in for the identity provider at the `requests` boundary."""

    def __init__(self) -> None:
        jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(_SIGNING_KEY.public_key()))
        jwk.update({"kid": _KID, "alg": "RS256", "use": "sig"})
        self.jwks = {"keys": [jwk]}
        self.discovery = {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/auth",
            "token_endpoint": f"{ISSUER}/token",
            "jwks_uri": f"{ISSUER}/jwks",
            "end_session_endpoint": f"{ISSUER}/session/end",
            "id_token_signing_alg_values_supported": ["RS256"],
        }
        self.get_calls: List[str] = []
        self.token_calls: List[Dict[str, str]] = []
        self.token_responses: List[Tuple[int, Any]] = []
        self.discovery_down = False

    def id_token(self, **claims: Any) -> str:
        now = int(time.time())
        payload: Dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-1",
            "email": "ann@example.test",
            "first_name": "Ann",
            "last_name": "Lee",
            "profile_image_url": "https://img.example.test/ann.png",
            "iat": now - 10,
            "exp": now + 3600,
        }
        payload.update(claims)
        return jwt.encode(payload, _SIGNING_KEY, algorithm="RS256", headers={"kid": _KID})

    def token_body(self, *, nonce: Optional[str] = None, refresh_token: Optional[str] = "rt-1", **claims: Any):
        if nonce is not None:
            claims["nonce"] = nonce
        body: Dict[str, Any] = {
            "access_token": "at-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "id_token": self.id_token(**claims),
        }
        if refresh_token:
            body["refresh_token"] = refresh_token
        return body

    def get(self, url: str, timeout: Optional[float] = None, **_: Any) -> FakeResponse:
        self.get_calls.append(url)
        if url.endswith("/.well-known/openid-configuration"):
            if self.discovery_down:
                raise requests.ConnectionError("provider unreachable")
            return FakeResponse(200, self.discovery)
        if url == self.discovery["jwks_uri"]:
            return FakeResponse(200, self.jwks)
        return FakeResponse(404, {"error": "not_found"})

    def post(self, url: str, data: Optional[Dict[str, str]] = None, timeout: Optional[float] = None, **_: Any):
        self.token_calls.append(dict(data or {}))
        if self.token_responses:
            status, body = self.token_responses.pop(0)
            return FakeResponse(status, body)
        return FakeResponse(400, {"error": "invalid_grant"})


@pytest.fixture
def provider(monkeypatch: pytest.MonkeyPatch) -> FakeProvider:
    p = FakeProvider()
    monkeypatch.setattr("portal.auth.oidc.requests.get", p.get)
    monkeypatch.setattr("portal.auth.oidc.requests.post", p.post)
    return p


@pytest.fixture
def federated_env(monkeypatch: pytest.MonkeyPatch, provider: FakeProvider) -> FakeProvider:
    """Hosting environment with one allowed domain, backed by the fake provider."""
    monkeypatch.setenv("REPL_ID", CLIENT_ID)
    monkeypatch.setenv("ISSUER_URL", ISSUER)
    monkeypatch.setenv("REPLIT_DOMAINS", APP_HOST)
    _reset_singletons()
    return provider


def seed_session(client, data: Dict[str, Any], sid: str = "seeded-session") -> str:
    """Write a session straight into the store and hand its signed cookie to `client`."""
    cfg = load_auth_config()
    get_session_store().set(sid, data, cfg.session_ttl_seconds)
    client.cookies.set(session_cookie_name(cfg), _serializer(cfg).dumps(sid), domain=APP_HOST)
    return sid
