from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import jwt  # PyJWT
import requests
from pydantic import ValidationError

from portal.auth.config import AuthConfig, load_auth_config
from portal.auth.models import FederatedPrincipal, TokenResponse

logger = logging.getLogger(__name__)

SCOPES = "openid email profile offline_access"
PROMPT = "login consent"
CACHE_MAX_AGE_SECONDS = 3600
HTTP_TIMEOUT_SECONDS = 10


class OIDCError(ValueError):
    """Identity provider or protocol failure."""


class _TimedCache:
    """
    Process-wide (value, fetched_at) cache with single-flight refresh.

    Concurrent callers that find the entry stale wait on one fetch instead of each
    hitting the provider. Failed fetches are not cached.
    """

    def __init__(self, max_age: float) -> None:
        self._max_age = max_age
        self._items: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._lock = threading.Lock()

    def _fresh(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._items.get(key)
        if item is not None and time.time() - item[1] < self._max_age:
            return item[0]
        return None

    def get(self, key: str, fetch: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        cached = self._fresh(key)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._fresh(key)
            if cached is not None:
                return cached
            value = fetch()
            self._items[key] = (value, time.time())
            return value

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


_discovery_cache = _TimedCache(CACHE_MAX_AGE_SECONDS)
_jwks_cache = _TimedCache(CACHE_MAX_AGE_SECONDS)


def _fetch_json(url: str) -> Dict[str, Any]:
    try:
        r = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
        r.raise_for_status()
        data = r.json()
    except (requests.RequestException, ValueError) as e:
        raise OIDCError(f"Fetch failed for {url}: {e.__class__.__name__}") from e
    if not isinstance(data, dict):
        raise OIDCError(f"Invalid JSON document at {url}")
    return data


def discovery_url(issuer_url: str) -> str:
    return issuer_url.rstrip("/") + "/.well-known/openid-configuration"


def get_oidc_config(cfg: AuthConfig) -> Dict[str, Any]:
    """
    Provider metadata from OIDC discovery.
    Caches result for 1 hour per issuer.
    """
    if not cfg.federated_enabled:
        raise OIDCError("Not in hosting environment")

    url = discovery_url(cfg.issuer_url)

    def fetch() -> Dict[str, Any]:
        data = _fetch_json(url)
        issuer = str(data.get("issuer") or "").rstrip("/")
        if issuer != cfg.issuer_url.rstrip("/"):
            raise OIDCError("Discovery issuer does not match ISSUER_URL")
        return data

    return _discovery_cache.get(url, fetch)


def _endpoint(disc: Dict[str, Any], name: str) -> str:
    value = str(disc.get(name) or "")
    if not value:
        raise OIDCError(f"OIDC discovery missing {name}")
    return value


def _with_query(url: str, params: Dict[str, str]) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


@dataclass(frozen=True)
class Strategy:
    """Login strategy bound to one allowed hostname."""

    name: str
    domain: str
    callback_url: str


def strategy_name(domain: str) -> str:
    return f"replitauth:{domain}"


def build_strategies(domains: List[str]) -> Dict[str, Strategy]:
    strategies: Dict[str, Strategy] = {}
    for domain in domains:
        d = domain.strip().lower()
        if not d or d in strategies:
            continue
        strategies[d] = Strategy(name=strategy_name(d), domain=d, callback_url=f"https://{d}/api/callback")
    return strategies


def build_authorize_url(
    cfg: AuthConfig,
    strategy: Strategy,
    *,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    """Authorization request for `strategy`, forcing re-login and consent so offline_access is granted."""
    disc = get_oidc_config(cfg)
    params = {
        "client_id": cfg.client_id or "",
        "redirect_uri": strategy.callback_url,
        "response_type": "code",
        "scope": SCOPES,
        "prompt": PROMPT,
        "state": state,
        "nonce": nonce,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return _with_query(_endpoint(disc, "authorization_endpoint"), params)


def _token_request(cfg: AuthConfig, payload: Dict[str, str]) -> TokenResponse:
    disc = get_oidc_config(cfg)
    token_endpoint = _endpoint(disc, "token_endpoint")

    data = dict(payload)
    data["client_id"] = cfg.client_id or ""
    if cfg.client_secret:
        data["client_secret"] = cfg.client_secret

    try:
        r = requests.post(token_endpoint, data=data, timeout=HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise OIDCError(f"Token request failed: {e.__class__.__name__}") from e
    if r.status_code >= 400:
        # Avoid leaking provider error bodies; status is enough to debug.
        raise OIDCError(f"Token request rejected (status={r.status_code}, grant={payload.get('grant_type')})")
    try:
        return TokenResponse.model_validate(r.json())
    except (ValidationError, ValueError) as e:
        raise OIDCError("Invalid token response") from e


def exchange_code_for_tokens(cfg: AuthConfig, strategy: Strategy, *, code: str, code_verifier: str) -> TokenResponse:
    return _token_request(
        cfg,
        {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": strategy.callback_url,
            "code_verifier": code_verifier,
        },
    )


def refresh_token_grant(cfg: AuthConfig, refresh_token: str) -> TokenResponse:
    return _token_request(cfg, {"grant_type": "refresh_token", "refresh_token": refresh_token})


def validate_id_token(cfg: AuthConfig, *, id_token: str, expected_nonce: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate an ID token from the provider.
    - Verifies the JWT signature against the provider's JWKS
    - Validates issuer, audience and expiry
    - Checks the nonce when one was sent with the authorization request
    """
    disc = get_oidc_config(cfg)
    issuer = _endpoint(disc, "issuer")
    jwks_uri = _endpoint(disc, "jwks_uri")
    allowed_algs = [a for a in (disc.get("id_token_signing_alg_values_supported") or ["RS256"]) if a != "none"]

    try:
        hdr = jwt.get_unverified_header(id_token)
    except jwt.PyJWTError as e:
        raise OIDCError("Malformed ID token") from e
    alg = str(hdr.get("alg") or "")
    kid = str(hdr.get("kid") or "")
    if alg not in allowed_algs:
        raise OIDCError(f"Unexpected ID token algorithm: {alg or 'missing'}")

    jwks = _jwks_cache.get(jwks_uri, lambda: _fetch_json(jwks_uri))
    keys = [k for k in (jwks.get("keys") or []) if isinstance(k, dict)]
    if kid:
        candidates = [k for k in keys if str(k.get("kid") or "") == kid]
    else:
        candidates = keys if len(keys) == 1 else []
    if not candidates:
        raise OIDCError("Unknown signing key (kid)")

    try:
        key = jwt.PyJWK(candidates[0], algorithm=alg).key
        claims = jwt.decode(
            id_token,
            key=key,
            algorithms=[alg],
            audience=cfg.client_id,
            issuer=issuer,
            options={"require": ["exp", "iat", "iss", "aud", "sub"]},
        )
    except jwt.PyJWTError as e:
        raise OIDCError(f"ID token rejected: {e.__class__.__name__}") from e

    if expected_nonce is not None and str(claims.get("nonce") or "") != expected_nonce:
        raise OIDCError("Nonce mismatch")
    return claims


def principal_from_tokens(
    cfg: AuthConfig,
    tokens: TokenResponse,
    *,
    expected_nonce: Optional[str] = None,
    previous: Optional[FederatedPrincipal] = None,
) -> FederatedPrincipal:
    """
    Build the session principal from a token response.

    `expires_at` comes from the ID token `exp`. A refresh response without an ID token
    keeps the previous claims and derives expiry from `expires_in`.
    """
    if tokens.id_token:
        claims = validate_id_token(cfg, id_token=tokens.id_token, expected_nonce=expected_nonce)
        expires_at = int(claims["exp"])
    elif previous is not None and tokens.expires_in:
        claims = dict(previous.claims)
        expires_at = int(time.time()) + int(tokens.expires_in)
    else:
        raise OIDCError("Token response missing id_token")

    refresh_token = tokens.refresh_token or (previous.refresh_token if previous is not None else None)
    return FederatedPrincipal(
        claims=claims,
        access_token=tokens.access_token,
        refresh_token=refresh_token,
        expires_at=expires_at,
    )


def build_end_session_url(cfg: AuthConfig, *, post_logout_redirect_uri: str) -> str:
    disc = get_oidc_config(cfg)
    params = {"client_id": cfg.client_id or "", "post_logout_redirect_uri": post_logout_redirect_uri}
    return _with_query(_endpoint(disc, "end_session_endpoint"), params)


class FederatedAuth:
    """
    Federated login availability for this process.

    Disabled outright outside the hosting environment. Inside it, a discovery failure
    marks the provider unavailable; availability is re-probed lazily, at most once per
    `oidc_retry_seconds`, so a transient outage does not disable federated login for
    the life of the process.
    """

    def __init__(self, cfg: AuthConfig) -> None:
        self.cfg = cfg
        self.strategies = build_strategies(cfg.allowed_domains) if cfg.federated_enabled else {}
        self._ready = False
        self._last_attempt: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.cfg.federated_enabled

    def setup(self) -> bool:
        if not self.enabled:
            logger.info("Not in hosting environment, using demo login only")
            return False
        with self._lock:
            self._last_attempt = time.time()
            try:
                get_oidc_config(self.cfg)
            except OIDCError as e:
                self._ready = False
                logger.warning("OpenID setup failed, using demo login only: %s", str(e))
                return False
            if not self._ready:
                logger.info(
                    "OpenID configured for %d domain(s): %s",
                    len(self.strategies),
                    ", ".join(sorted(self.strategies)),
                )
            self._ready = True
            return True

    def available(self) -> bool:
        if not self.enabled:
            return False
        if self._ready:
            return True
        last = self._last_attempt
        if last is None or time.time() - last >= self.cfg.oidc_retry_seconds:
            return self.setup()
        return False

    def strategy_for_host(self, host: Optional[str]) -> Optional[Strategy]:
        return self.strategies.get((host or "").strip().lower())


@lru_cache(maxsize=1)
def get_federated_auth() -> FederatedAuth:
    return FederatedAuth(load_auth_config())


def clear_caches() -> None:
    _discovery_cache.clear()
    _jwks_cache.clear()
    get_federated_auth.cache_clear()
