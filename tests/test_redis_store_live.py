"""Runs the Redis store's Lua scripts against a real server.

Opt in with ``TOKENLINE_TEST_REDIS_URL=redis://localhost:6379/15``; every test
writes under its own key prefix and removes it afterwards.
"""

import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from tokenline.storage.common import hash_token
from tokenline.storage.errors import ConstraintViolation, StoreUnavailable
from tokenline.storage.models import RotationToken, RotationTokenState, utcnow
from tokenline.storage.redis_store import RedisStore

REDIS_URL = os.getenv("TOKENLINE_TEST_REDIS_URL")

pytestmark = pytest.mark.skipif(not REDIS_URL, reason="TOKENLINE_TEST_REDIS_URL not set")


@pytest.fixture
def store():
    prefix = f"tokenline-test-{uuid.uuid4().hex[:8]}"
    redis_store = RedisStore(REDIS_URL, key_prefix=prefix)
    try:
        redis_store.verify_connection()
    except StoreUnavailable:
        pytest.skip("redis not available")
    yield redis_store
    for key in redis_store.client.scan_iter(f"{prefix}:*"):
        redis_store.client.delete(key)


def issue(store, value, *, owner="user-1", ttl=timedelta(days=30), now=None):
    token = RotationToken.new(
        owner, hash_token(value), ttl, claims={"email": "a@example.com"}, now=now or utcnow()
    )
    return store.create_rotation_token(token)


def test_create_then_lookup_round_trips_fields(store):
    created = issue(store, "alpha")

    loaded = store.get_rotation_token(hash_token("alpha"))

    assert loaded.id == created.id
    assert loaded.owner_id == "user-1"
    assert loaded.used is False
    assert loaded.revoked_at is None
    assert loaded.claims == {"email": "a@example.com"}
    assert loaded.state() is RotationTokenState.ACTIVE


def test_duplicate_digest_is_rejected(store):
    issue(store, "alpha")
    with pytest.raises(ConstraintViolation):
        issue(store, "alpha")


def test_mark_used_succeeds_once(store):
    token = issue(store, "alpha")

    assert store.mark_rotation_token_used(token.id, utcnow()) is True
    assert store.mark_rotation_token_used(token.id, utcnow()) is False
    assert store.mark_rotation_token_used("missing", utcnow()) is False
    assert store.get_rotation_token(hash_token("alpha")).used is True


def test_mark_used_has_single_winner_across_threads(store):
    token = issue(store, "alpha")

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(
            pool.map(lambda _: store.mark_rotation_token_used(token.id, utcnow()), range(8))
        )

    assert outcomes.count(True) == 1


def test_mark_used_refuses_revoked_token(store):
    token = issue(store, "alpha")
    assert store.revoke_owner_tokens("user-1", utcnow()) == 1

    assert store.mark_rotation_token_used(token.id, utcnow()) is False
    assert store.get_rotation_token(hash_token("alpha")).used is False


def test_mark_used_refuses_expired_token(store):
    token = issue(store, "alpha", ttl=timedelta(minutes=1))

    assert store.mark_rotation_token_used(token.id, utcnow() + timedelta(minutes=2)) is False
    assert store.get_rotation_token(hash_token("alpha")).used is False


def test_revoke_owner_tokens_only_touches_owner(store):
    issue(store, "a")
    issue(store, "b")
    issue(store, "c", owner="user-2")

    assert store.revoke_owner_tokens("user-1", utcnow()) == 2
    assert store.revoke_owner_tokens("user-1", utcnow()) == 0
    assert all(t.revoked_at for t in store.list_owner_tokens("user-1"))
    assert not any(t.revoked_at for t in store.list_owner_tokens("user-2"))


def test_purge_removes_rows_expired_before_cutoff(store):
    now = utcnow()
    issue(store, "old", ttl=timedelta(days=1), now=now - timedelta(days=10))
    issue(store, "fresh")

    assert store.purge_expired(now - timedelta(days=7)) == 1
    assert store.get_rotation_token(hash_token("old")) is None
    assert store.get_rotation_token(hash_token("fresh")) is not None
