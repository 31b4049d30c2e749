from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tokenline.logging import get_logger
from tokenline.storage.errors import ConstraintViolation, StoreUnavailable
from tokenline.storage.models import RotationToken
from tokenline.storage.redis_store import RedisStore

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeScript:
    def __init__(self, source, results):
        self.source = source
        self.results = results
        self.calls = []

    def __call__(self, keys=None, args=None):
        self.calls.append((keys, args))
        return self.results.pop(0) if self.results else 0


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.script_results = []
        self.scripts = []
        self.down = False

    def register_script(self, source):
        script = FakeScript(source, self.script_results)
        self.scripts.append(script)
        return script

    def _check(self):
        if self.down:
            raise RedisConnectionError("connection refused")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.values.get(key)

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))


def make_store(client) -> RedisStore:
    store: RedisStore = RedisStore.__new__(RedisStore)
    store.redis_url = "redis://unused"
    store.key_prefix = "tl"
    store.logger = get_logger("test")
    store.client = client
    store._register_scripts()
    return store


def _script(client, marker):
    return next(s for s in client.scripts if marker in s.source)


def test_get_rotation_token_follows_hash_index():
    client = FakeRedis()
    client.values["tl:hash:abc"] = "t1"
    client.hashes["tl:token:t1"] = {
        "id": "t1",
        "owner_id": "user-1",
        "token_hash": "abc",
        "issued_at": NOW.isoformat(),
        "expires_at": (NOW + timedelta(days=30)).isoformat(),
        "used": "1",
        "revoked_at": "",
        "claims": '{"email": "a@example.com"}',
    }
    store = make_store(client)

    token = store.get_rotation_token("abc")

    assert token.id == "t1"
    assert token.used is True
    assert token.revoked_at is None
    assert token.claims == {"email": "a@example.com"}
    assert token.expires_at == NOW + timedelta(days=30)


def test_get_unknown_hash_returns_none():
    store = make_store(FakeRedis())
    assert store.get_rotation_token("missing") is None


def test_mark_used_reports_script_result():
    client = FakeRedis()
    store = make_store(client)
    client.script_results.extend([1, 0])

    assert store.mark_rotation_token_used("t1", NOW) is True
    assert store.mark_rotation_token_used("t1", NOW) is False
    script = _script(client, "'used', '1'")
    keys, args = script.calls[0]
    assert keys == ["tl:token:t1", "tl:expiry"]
    assert args == [NOW.timestamp(), "t1"]


def test_create_duplicate_hash_raises_constraint_violation():
    client = FakeRedis()
    store = make_store(client)
    client.script_results.append(0)
    token = RotationToken.new("user-1", "abc", timedelta(days=1), now=NOW)

    with pytest.raises(ConstraintViolation):
        store.create_rotation_token(token)
    keys, args = _script(client, "SETNX").calls[0]
    assert keys[0] == "tl:hash:abc"
    assert keys[2] == "tl:owner:user-1"
    assert args[5] == "0"


def test_revoke_owner_passes_owner_set_and_prefix():
    client = FakeRedis()
    store = make_store(client)
    client.script_results.append(2)

    assert store.revoke_owner_tokens("user-1", NOW) == 2
    keys, args = _script(client, "SMEMBERS").calls[0]
    assert keys == ["tl:owner:user-1"]
    assert args == [NOW.isoformat(), "tl:token:"]


def test_connection_error_becomes_store_unavailable():
    client = FakeRedis()
    client.down = True
    store = make_store(client)

    with pytest.raises(StoreUnavailable) as excinfo:
        store.get_rotation_token("abc")
    assert excinfo.value.backend == "redis"
    with pytest.raises(StoreUnavailable):
        store.verify_connection()
