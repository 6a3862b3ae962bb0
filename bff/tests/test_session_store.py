"""Tests for the BFF server-side session store."""
import pytest

from bff.session_store import SessionStore


class Clock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(clock):
    return SessionStore(idle_seconds=600, max_lifetime_seconds=3600, clock=clock)


def _create(store, **kwargs):
    values = {
        "user_id": "alice-t1",
        "username": "alice",
        "tenant_id": "t1",
        "access_token": "at-0",
        "expires_in": 300,
        "refresh_token": "rt-0",
    }
    values.update(kwargs)
    return store.create(**values)


def test_create_and_get(store, clock):
    session = _create(store)
    assert len(session.session_id) > 30
    got = store.get(session.session_id)
    assert got.user_id == "alice-t1"
    assert got.access_token_expires_at == clock.now + 300


def test_get_returns_copy(store):
    session = _create(store)
    got = store.get(session.session_id)
    got.access_token = "tampered"
    assert store.get(session.session_id).access_token == "at-0"


def test_unknown_or_empty_id(store):
    assert store.get(None) is None
    assert store.get("") is None
    assert store.get("nope") is None


def test_idle_timeout_slides_on_access(store, clock):
    session = _create(store)
    clock.now += 500
    assert store.get(session.session_id) is not None
    clock.now += 500
    # 1000s since creation but only 500s idle
    assert store.get(session.session_id) is not None
    clock.now += 601
    assert store.get(session.session_id) is None


def test_peek_does_not_slide(store, clock):
    session = _create(store)
    clock.now += 500
    assert store.peek(session.session_id) is not None
    clock.now += 200
    assert store.peek(session.session_id) is None


def test_absolute_lifetime(store, clock):
    session = _create(store)
    for _ in range(7):
        clock.now += 500
        assert store.get(session.session_id) is not None
    clock.now += 200
    # Active the whole time, but past the absolute lifetime
    assert store.get(session.session_id) is None


def test_replace_tokens_compare_and_swap(store, clock):
    session = _create(store)
    clock.now += 100
    assert store.replace_tokens(session.session_id, "rt-0", "at-1", 300, "rt-1", id_token="id-1") is True
    got = store.peek(session.session_id)
    assert (got.access_token, got.refresh_token, got.id_token) == ("at-1", "rt-1", "id-1")
    assert got.access_token_expires_at == clock.now + 300

    # A second refresh that started from rt-0 loses
    assert store.replace_tokens(session.session_id, "rt-0", "at-x", 300, "rt-x") is False
    assert store.peek(session.session_id).refresh_token == "rt-1"
    assert store.replace_tokens("gone", "rt-1", "at-2", 300, "rt-2") is False


def test_delete(store):
    session = _create(store)
    assert store.delete(session.session_id).user_id == "alice-t1"
    assert store.delete(session.session_id) is None
    assert store.get(session.session_id) is None


def test_purge_expired(store, clock):
    old = _create(store)
    clock.now += 400
    fresh = _create(store)
    clock.now += 300
    assert store.purge_expired() == 1
    assert store.peek(old.session_id) is None
    assert store.peek(fresh.session_id) is not None


def test_access_token_expires_within(store, clock):
    session = _create(store, expires_in=90)
    assert session.access_token_expires_within(60, now=clock.now) is False
    assert session.access_token_expires_within(60, now=clock.now + 31) is True


def test_update_live_session_only(store, clock):
    session = _create(store)
    session.email = "alice@example.com"
    assert store.update(session) is True
    assert store.peek(session.session_id).email == "alice@example.com"

    store.delete(session.session_id)
    assert store.update(session) is False
    assert store.peek(session.session_id) is None
