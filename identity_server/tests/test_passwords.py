"""Tests for password hashing and tenant-scoped credential checks."""
from identity_server.models import User
from identity_server.passwords import authenticate_user, find_user, hash_password, verify_password


def test_hash_and_verify():
    h = hash_password("s3cret")
    assert h != "s3cret"
    assert verify_password("s3cret", h) is True
    assert verify_password("wrong", h) is False


def test_long_password_truncated_consistently():
    long_pw = "x" * 100
    h = hash_password(long_pw)
    assert verify_password(long_pw, h) is True
    assert verify_password("x" * 72, h) is True


def test_malformed_hash_does_not_verify():
    assert verify_password("anything", "not-a-bcrypt-hash") is False


def test_find_user_is_tenant_scoped(seeded):
    assert find_user(seeded, "alice", "t1").id == "alice-t1"
    assert find_user(seeded, "alice", "t2").id == "alice-t2"
    assert find_user(seeded, "bob", "t1") is None


def test_authenticate_user_sets_last_login(seeded, flow):
    user = authenticate_user(seeded, "t1", "alice", flow.password)
    assert user is not None
    assert user.id == "alice-t1"
    assert user.last_login_at is not None


def test_authenticate_user_rejects_wrong_tenant_and_password(seeded, flow):
    assert authenticate_user(seeded, "t1", "alice", "wrong") is None
    assert authenticate_user(seeded, "t1", "bob", flow.password) is None


def test_authenticate_user_never_creates_users(seeded):
    before = seeded.query(User).count()
    assert authenticate_user(seeded, "t1", "newcomer", "whatever") is None
    assert seeded.query(User).count() == before
