from __future__ import annotations

from types import SimpleNamespace

import pytest

from portal.auth.config import load_auth_config
from portal.auth.models import DemoUser, FederatedPrincipal
from portal.auth.session import (
    SESSION_PRINCIPAL_KEY,
    SESSION_USER_KEY,
    MemorySessionStore,
    Session,
    SessionStoreError,
    _serializer,
    destroy_session,
    get_demo_user,
    get_principal,
    get_session_store,
    load_session,
    save_session,
    set_principal,
)


def test_memory_store_expires_records(monkeypatch) -> None:
    clock = {"now": 1_000.0}
    monkeypatch.setattr("portal.auth.session.time", SimpleNamespace(time=lambda: clock["now"]))
    store = MemorySessionStore()
    store.set("a", {"user": {"id": "1"}}, ttl_seconds=60)
    assert store.get("a") == {"user": {"id": "1"}}

    clock["now"] += 61
    assert store.get("a") is None
    assert len(store) == 0


def test_memory_store_returns_copies() -> None:
    store = MemorySessionStore()
    store.set("a", {"user": {"id": "1"}}, ttl_seconds=60)
    first = store.get("a")
    first["user"]["id"] = "mutated"
    assert store.get("a") == {"user": {"id": "1"}}


def test_store_defaults_to_memory_without_database() -> None:
    assert isinstance(get_session_store(), MemorySessionStore)


def test_untouched_session_is_not_saved() -> None:
    cfg = load_auth_config()
    store = MemorySessionStore()
    session = load_session(cfg, store, None)
    assert save_session(cfg, store, session) is None
    assert len(store) == 0


def test_save_then_load_with_signed_cookie() -> None:
    cfg = load_auth_config()
    store = MemorySessionStore()
    session = load_session(cfg, store, None)
    session[SESSION_USER_KEY] = {"id": "u1", "email": "a@example.test"}

    cookie = save_session(cfg, store, session)
    assert cookie and session.id

    loaded = load_session(cfg, store, cookie)
    assert loaded.id == session.id
    assert get_demo_user(loaded) == DemoUser(profile={"id": "u1", "email": "a@example.test"})


def test_tampered_cookie_yields_empty_session() -> None:
    cfg = load_auth_config()
    store = MemorySessionStore()
    store.set("victim", {"user": {"id": "u1"}}, cfg.session_ttl_seconds)

    forged = load_session(cfg, store, "victim")
    assert forged.id is None and forged.data == {}

    other_secret = _serializer(SimpleNamespace(session_secret="other", session_ttl_seconds=60))
    forged = load_session(cfg, store, other_secret.dumps("victim"))
    assert forged.id is None


def test_unknown_session_id_yields_empty_session() -> None:
    cfg = load_auth_config()
    session = load_session(cfg, MemorySessionStore(), _serializer(cfg).dumps("gone"))
    assert session.id is None and session.data == {}


def test_regenerate_moves_payload_to_new_id() -> None:
    cfg = load_auth_config()
    store = MemorySessionStore()
    store.set("old", {"oidc_state": {"state": "s"}}, cfg.session_ttl_seconds)
    session = load_session(cfg, store, _serializer(cfg).dumps("old"))

    session.regenerate()
    session["marker"] = True
    save_session(cfg, store, session)

    assert session.id and session.id != "old"
    assert store.get("old") is None
    assert store.get(session.id)["marker"] is True


def test_destroy_session_removes_record() -> None:
    cfg = load_auth_config()
    store = MemorySessionStore()
    store.set("sid", {"user": {"id": "u1"}}, cfg.session_ttl_seconds)
    session = load_session(cfg, store, _serializer(cfg).dumps("sid"))

    destroy_session(store, session)

    assert store.get("sid") is None
    assert session.destroyed is True
    assert save_session(cfg, store, session) is None


def test_destroy_propagates_store_errors() -> None:
    class BrokenStore(MemorySessionStore):
        def destroy(self, sid: str) -> None:
            raise SessionStoreError("down")

    with pytest.raises(SessionStoreError):
        destroy_session(BrokenStore(), Session("sid", {"user": {"id": "u1"}}))


def test_load_survives_store_outage() -> None:
    class BrokenStore(MemorySessionStore):
        def get(self, sid: str):
            raise SessionStoreError("down")

    cfg = load_auth_config()
    session = load_session(cfg, BrokenStore(), _serializer(cfg).dumps("sid"))
    assert session.id is None and session.data == {}


def test_principal_round_trips_through_session() -> None:
    session = Session()
    principal = FederatedPrincipal(
        claims={"sub": "s1", "exp": 123}, access_token="at", refresh_token="rt", expires_at=123
    )
    set_principal(session, principal)
    assert session.modified is True
    assert get_principal(session) == principal
    assert SESSION_PRINCIPAL_KEY in session


def test_malformed_principal_is_ignored() -> None:
    assert get_principal(Session(data={SESSION_PRINCIPAL_KEY: "nope"})) is None
    assert get_demo_user(Session(data={SESSION_USER_KEY: {}})) is None


def test_memory_store_len_counts_live_records() -> None:
    store = MemorySessionStore()
    store.set("a", {"n": 1}, ttl_seconds=60)
    store.set("b", {"n": 2}, ttl_seconds=60)
    store.destroy("a")
    assert len(store) == 1
