from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenledger.logging import get_logger
from tokenledger.storage.errors import ConstraintViolation, StoreUnavailable
from tokenledger.storage.models import RefreshRecord, utcnow


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RedisLedgerStore:
    """Refresh ledger kept in Redis, one hash per token id.

    Create and revoke are Lua scripts so each check-and-set runs atomically
    on the server. Keys expire with the record, which doubles as the
    expiry sweep.
    """

    KEY_PREFIX = "refresh:"

    # Insert only if absent, then pin the key's lifetime to the record's expiry
    _CREATE_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 1 then
  return 0
end
redis.call('HSET', key,
  'user_id', ARGV[1],
  'created_at', ARGV[2],
  'expires_at', ARGV[3],
  'revoked_at', '',
  'user_agent', ARGV[4],
  'ip_addr', ARGV[5])
redis.call('EXPIREAT', key, tonumber(ARGV[6]))
return 1
"""

    # Set revoked_at only when the record exists and is still unrevoked
    _REVOKE_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 0
end
local revoked = redis.call('HGET', key, 'revoked_at')
if revoked and revoked ~= '' then
  return 0
end
redis.call('HSET', key, 'revoked_at', ARGV[1])
return 1
"""

    # Clear revoked_at only while it still holds the stamp from our own revoke
    _RESTORE_SCRIPT = """
local key = KEYS[1]
if redis.call('HGET', key, 'revoked_at') ~= ARGV[1] then
  return 0
end
redis.call('HSET', key, 'revoked_at', '')
return 1
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._create = self.client.register_script(self._CREATE_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._restore = self.client.register_script(self._RESTORE_SCRIPT)

    def _key(self, token_id: str) -> str:
        return f"{self.KEY_PREFIX}{token_id}"

    def close(self) -> None:
        self.client.close()

    def verify_connection(self) -> None:
        try:
            self.client.ping()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", str(exc)) from exc

    def create_refresh_record(self, record: RefreshRecord) -> RefreshRecord:
        expires_at = _to_utc(record.expires_at)
        try:
            created = self._create(
                keys=[self._key(record.token_id)],
                args=[
                    record.user_id,
                    _to_utc(record.created_at).isoformat(),
                    expires_at.isoformat(),
                    record.user_agent or "",
                    record.ip_addr or "",
                    int(expires_at.timestamp()),
                ],
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", str(exc)) from exc
        if not created:
            raise ConstraintViolation(
                "refresh token id already exists", {"field": "token_id"}
            )
        return record

    def get_refresh_record(self, token_id: str) -> Optional[RefreshRecord]:
        try:
            data: Dict[str, str] = self.client.hgetall(self._key(token_id))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", str(exc)) from exc
        if not data:
            return None
        revoked_at = data.get("revoked_at") or None
        return RefreshRecord(
            token_id=token_id,
            user_id=data["user_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            revoked_at=datetime.fromisoformat(revoked_at) if revoked_at else None,
            user_agent=data.get("user_agent") or None,
            ip_addr=data.get("ip_addr") or None,
        )

    def revoke_refresh_record(
        self, token_id: str, at: Optional[datetime] = None
    ) -> bool:
        revoked_at = _to_utc(at or utcnow()).isoformat()
        try:
            result = self._revoke(keys=[self._key(token_id)], args=[revoked_at])
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", str(exc)) from exc
        return bool(result)

    def restore_refresh_record(self, token_id: str, revoked_at: datetime) -> bool:
        try:
            result = self._restore(
                keys=[self._key(token_id)], args=[_to_utc(revoked_at).isoformat()]
            )
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StoreUnavailable("redis", str(exc)) from exc
        return bool(result)
