from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenline.logging import get_logger
from tokenline.storage.common import dump_claims, load_claims
from tokenline.storage.errors import ConstraintViolation, StoreUnavailable
from tokenline.storage.models import RotationToken


class RedisStore:
    """Redis-backed rotation token store.

    Layout: one hash per token (``{prefix}:token:{id}``), a lookup key per
    digest (``{prefix}:hash:{digest}`` -> id), a set of ids per owner and a
    sorted set of ids scored by expiry for the retention sweep. Every mutation
    that must be atomic runs as a Lua script.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Insert only when the digest is unseen; mirrors a UNIQUE constraint
    _CREATE_SCRIPT = """
if redis.call('SETNX', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('HSET', KEYS[2],
  'id', ARGV[1],
  'owner_id', ARGV[2],
  'token_hash', ARGV[3],
  'issued_at', ARGV[4],
  'expires_at', ARGV[5],
  'used', ARGV[6],
  'revoked_at', ARGV[7],
  'claims', ARGV[8])
redis.call('SADD', KEYS[3], ARGV[1])
redis.call('ZADD', KEYS[4], ARGV[9], ARGV[1])
return 1
"""

    # Check-and-set of the used flag on a live token; exactly one caller observes 1
    _MARK_USED_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
if redis.call('HGET', KEYS[1], 'used') == '1' then
  return 0
end
local revoked = redis.call('HGET', KEYS[1], 'revoked_at')
if revoked and revoked ~= '' then
  return 0
end
local expiry = redis.call('ZSCORE', KEYS[2], ARGV[2])
if expiry and tonumber(expiry) <= tonumber(ARGV[1]) then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '1')
return 1
"""

    _REVOKE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 0
end
local current = redis.call('HGET', KEYS[1], 'revoked_at')
if current and current ~= '' then
  return 0
end
redis.call('HSET', KEYS[1], 'revoked_at', ARGV[1])
return 1
"""

    _REVOKE_OWNER_SCRIPT = """
local ids = redis.call('SMEMBERS', KEYS[1])
local count = 0
for _, id in ipairs(ids) do
  local key = ARGV[2] .. id
  if redis.call('EXISTS', key) == 1 then
    local current = redis.call('HGET', key, 'revoked_at')
    if (not current) or current == '' then
      redis.call('HSET', key, 'revoked_at', ARGV[1])
      count = count + 1
    end
  end
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "tokenline",
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger(__name__)
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._register_scripts()

    def _register_scripts(self) -> None:
        self._create = self.client.register_script(self._CREATE_SCRIPT)
        self._mark_used = self.client.register_script(self._MARK_USED_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._revoke_owner = self.client.register_script(self._REVOKE_OWNER_SCRIPT)

    # keys
    def _token_key(self, token_id: str) -> str:
        return f"{self.key_prefix}:token:{token_id}"

    def _hash_key(self, token_hash: str) -> str:
        return f"{self.key_prefix}:hash:{token_hash}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.key_prefix}:owner:{owner_id}"

    def _expiry_key(self) -> str:
        return f"{self.key_prefix}:expiry"

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error("redis_unavailable", error=str(exc))
            raise StoreUnavailable("redis unavailable", backend="redis") from exc

    @staticmethod
    def _format_ts(value: Optional[datetime]) -> str:
        if value is None:
            return ""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    @staticmethod
    def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _hash_to_token(self, data: Dict[str, str]) -> RotationToken:
        return RotationToken(
            id=data["id"],
            owner_id=data["owner_id"],
            token_hash=data["token_hash"],
            issued_at=self._parse_ts(data["issued_at"]),
            expires_at=self._parse_ts(data["expires_at"]),
            used=data.get("used") == "1",
            revoked_at=self._parse_ts(data.get("revoked_at")),
            claims=load_claims(data.get("claims")),
        )

    def verify_connection(self) -> None:
        with self._guard():
            self.client.ping()

    def create_rotation_token(self, token: RotationToken) -> RotationToken:
        with self._guard():
            created = self._create(
                keys=[
                    self._hash_key(token.token_hash),
                    self._token_key(token.id),
                    self._owner_key(token.owner_id),
                    self._expiry_key(),
                ],
                args=[
                    token.id,
                    token.owner_id,
                    token.token_hash,
                    self._format_ts(token.issued_at),
                    self._format_ts(token.expires_at),
                    "1" if token.used else "0",
                    self._format_ts(token.revoked_at),
                    dump_claims(token.claims) or "",
                    token.expires_at.timestamp(),
                ],
            )
        if not int(created):
            raise ConstraintViolation(
                "rotation token already exists", {"field": "token_hash"}
            )
        return token

    def get_rotation_token(self, token_hash: str) -> Optional[RotationToken]:
        with self._guard():
            token_id = self.client.get(self._hash_key(token_hash))
            if not token_id:
                return None
            data = self.client.hgetall(self._token_key(token_id))
        if not data:
            return None
        return self._hash_to_token(data)

    def mark_rotation_token_used(self, token_id: str, now: datetime) -> bool:
        with self._guard():
            result = self._mark_used(
                keys=[self._token_key(token_id), self._expiry_key()],
                args=[now.timestamp(), token_id],
            )
        return bool(int(result))

    def revoke_rotation_token(self, token_id: str, revoked_at: datetime) -> bool:
        with self._guard():
            result = self._revoke(
                keys=[self._token_key(token_id)], args=[self._format_ts(revoked_at)]
            )
        return bool(int(result))

    def revoke_owner_tokens(self, owner_id: str, revoked_at: datetime) -> int:
        with self._guard():
            result = self._revoke_owner(
                keys=[self._owner_key(owner_id)],
                args=[self._format_ts(revoked_at), f"{self.key_prefix}:token:"],
            )
        return int(result)

    def list_owner_tokens(self, owner_id: str) -> List[RotationToken]:
        with self._guard():
            token_ids = self.client.smembers(self._owner_key(owner_id))
            tokens = []
            for token_id in token_ids:
                data = self.client.hgetall(self._token_key(token_id))
                if data:
                    tokens.append(self._hash_to_token(data))
        return sorted(tokens, key=lambda t: t.issued_at)

    def purge_expired(self, before: datetime) -> int:
        with self._guard():
            stale_ids = self.client.zrangebyscore(
                self._expiry_key(), "-inf", f"({before.timestamp()}"
            )
            if not stale_ids:
                return 0
            pipe = self.client.pipeline()
            for token_id in stale_ids:
                data = self.client.hgetall(self._token_key(token_id))
                if data:
                    pipe.delete(self._hash_key(data["token_hash"]))
                    pipe.srem(self._owner_key(data["owner_id"]), token_id)
                pipe.delete(self._token_key(token_id))
                pipe.zrem(self._expiry_key(), token_id)
            pipe.execute()
        self.logger.info("rotation_tokens_purged", count=len(stale_ids), backend="redis")
        return len(stale_ids)

    def close(self) -> None:
        self.client.close()
