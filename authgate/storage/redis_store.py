from __future__ import annotations

import contextlib
import math
from datetime import datetime
from typing import Dict, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from authgate.logging import get_logger
from authgate.storage.common import (
    deserialize_session,
    serialize_datetime,
    serialize_session,
)
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import Session

logger = get_logger(__name__)

SESSION_PREFIX = "auth:session:"
USER_SESSIONS_PREFIX = "auth:user_sessions:"

_DUPLICATE_SESSION = "session already exists"


class RedisSessionStore:
    """Session records in Redis, one hash per session plus a per-user index set.

    Every multi-step mutation runs as a registered Lua script, so the conditional
    refresh and the per-user range delete are atomic on the server no matter how
    many service instances share it.
    """

    # Insert iff absent; index the session under its user and keep the index
    # alive at least as long as its longest-lived member.
    _INSERT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return redis.error_reply('session already exists')
end
local ttl = tonumber(ARGV[1])
redis.call('HSET', KEYS[1], unpack(ARGV, 3))
redis.call('EXPIRE', KEYS[1], ttl)
redis.call('SADD', KEYS[2], ARGV[2])
if redis.call('TTL', KEYS[2]) < ttl then
  redis.call('EXPIRE', KEYS[2], ttl)
end
return 1
"""

    # Extend iff present and unexpired at ARGV[1]; optionally move to a new key.
    _REFRESH_SCRIPT = """
local expires_ts = redis.call('HGET', KEYS[1], 'expires_ts')
if not expires_ts then
  return nil
end
if tonumber(expires_ts) <= tonumber(ARGV[1]) then
  return nil
end
if KEYS[2] ~= KEYS[1] and redis.call('EXISTS', KEYS[2]) == 1 then
  return redis.error_reply('session already exists')
end
local ttl = tonumber(ARGV[7])
redis.call('HSET', KEYS[1], 'refreshed_at', ARGV[3], 'expires_at', ARGV[4], 'expires_ts', ARGV[2], 'key', ARGV[6])
if KEYS[2] ~= KEYS[1] then
  redis.call('RENAME', KEYS[1], KEYS[2])
  redis.call('SREM', KEYS[3], ARGV[5])
  redis.call('SADD', KEYS[3], ARGV[6])
end
redis.call('EXPIRE', KEYS[2], ttl)
if redis.call('TTL', KEYS[3]) < ttl then
  redis.call('EXPIRE', KEYS[3], ttl)
end
return redis.call('HGETALL', KEYS[2])
"""

    # Delete unconditionally; report 1 only for a session still live at ARGV[3].
    _DELETE_SCRIPT = """
local fields = redis.call('HMGET', KEYS[1], 'user_id', 'expires_ts')
local uid = fields[1]
if not uid then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SREM', ARGV[2] .. uid, ARGV[1])
local expires_ts = tonumber(fields[2])
if expires_ts and expires_ts > tonumber(ARGV[3]) then
  return 1
end
return 0
"""

    # Snapshot the user's index and delete in one server-side step; sessions
    # inserted after this script runs are untouched. Only sessions still live at
    # ARGV[3] are counted.
    _DELETE_USER_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, sid in ipairs(members) do
  if sid ~= ARGV[2] then
    local expires_ts = redis.call('HGET', ARGV[1] .. sid, 'expires_ts')
    if expires_ts and tonumber(expires_ts) > tonumber(ARGV[3]) then
      removed = removed + 1
    end
    redis.call('DEL', ARGV[1] .. sid)
    redis.call('SREM', KEYS[1], sid)
  end
end
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._insert = self.client.register_script(self._INSERT_SCRIPT)
        self._refresh = self.client.register_script(self._REFRESH_SCRIPT)
        self._delete = self.client.register_script(self._DELETE_SCRIPT)
        self._delete_user = self.client.register_script(self._DELETE_USER_SCRIPT)

    @staticmethod
    def _session_key(key: str) -> str:
        return f"{SESSION_PREFIX}{key}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"{USER_SESSIONS_PREFIX}{user_id}"

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        """Whole seconds until expiry, clamped so Redis never sees a zero TTL."""
        return max(1, math.ceil((expires_at - now).total_seconds()))

    @contextlib.contextmanager
    def _translate_errors(self, operation: str):
        try:
            yield
        except ResponseError as exc:
            if _DUPLICATE_SESSION in str(exc):
                raise ConstraintViolation(_DUPLICATE_SESSION, {"field": "key"}) from exc
            logger.error("redis_session_store_error", operation=operation, error=str(exc))
            raise StoreUnavailable(f"redis {operation} failed", backend="redis") from exc
        except RedisError as exc:
            logger.error("redis_session_store_error", operation=operation, error=str(exc))
            raise StoreUnavailable(f"redis {operation} failed", backend="redis") from exc

    @staticmethod
    def _to_hash(session: Session) -> Dict[str, str]:
        fields = serialize_session(session)
        fields["expires_ts"] = repr(session.expires_at.timestamp())
        return fields

    @staticmethod
    def _from_reply(reply) -> Optional[Session]:
        if not reply:
            return None
        if isinstance(reply, list):
            reply = dict(zip(reply[::2], reply[1::2]))
        return deserialize_session(reply)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> None:
        with self._translate_errors("ping"):
            await self.client.ping()

    async def insert_session(self, session: Session) -> None:
        fields = self._to_hash(session)
        flat: List[str] = []
        for name, value in fields.items():
            flat.extend([name, value])
        ttl = self._ttl_seconds(session.expires_at, session.created_at)
        with self._translate_errors("insert_session"):
            await self._insert(
                keys=[self._session_key(session.key), self._user_key(session.user_id)],
                args=[ttl, session.key, *flat],
            )

    async def get_session(self, key: str) -> Optional[Session]:
        with self._translate_errors("get_session"):
            data = await self.client.hgetall(self._session_key(key))
        return self._from_reply(data)

    async def refresh_session(
        self,
        key: str,
        *,
        now: datetime,
        expires_at: datetime,
        new_key: Optional[str] = None,
    ) -> Optional[Session]:
        with self._translate_errors("refresh_session"):
            user_id = await self.client.hget(self._session_key(key), "user_id")
        if not user_id:
            return None
        target = new_key or key
        with self._translate_errors("refresh_session"):
            reply = await self._refresh(
                keys=[self._session_key(key), self._session_key(target), self._user_key(user_id)],
                args=[
                    repr(now.timestamp()),
                    repr(expires_at.timestamp()),
                    serialize_datetime(now),
                    serialize_datetime(expires_at),
                    key,
                    target,
                    self._ttl_seconds(expires_at, now),
                ],
            )
        return self._from_reply(reply)

    async def delete_session(self, key: str, *, now: datetime) -> bool:
        with self._translate_errors("delete_session"):
            removed = await self._delete(
                keys=[self._session_key(key)],
                args=[key, USER_SESSIONS_PREFIX, repr(now.timestamp())],
            )
        return bool(int(removed))

    async def delete_user_sessions(
        self, user_id: str, *, now: datetime, except_key: Optional[str] = None
    ) -> int:
        with self._translate_errors("delete_user_sessions"):
            removed = await self._delete_user(
                keys=[self._user_key(user_id)],
                args=[SESSION_PREFIX, except_key or "", repr(now.timestamp())],
            )
        return int(removed)

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._translate_errors("list_user_sessions"):
            members = await self.client.smembers(self._user_key(user_id))
            if not members:
                return []
            pipe = self.client.pipeline(transaction=False)
            for member in members:
                pipe.hgetall(self._session_key(member))
            replies = await pipe.execute()
        sessions = [s for s in (self._from_reply(r) for r in replies) if s is not None]
        return sorted(sessions, key=lambda s: s.created_at)

    async def purge_expired_sessions(self, now: datetime) -> int:
        """Drop index entries whose session hash Redis has already expired.

        Session hashes carry their own TTL, so only the per-user index needs a sweep.
        """
        purged = 0
        with self._translate_errors("purge_expired_sessions"):
            async for user_key in self.client.scan_iter(match=f"{USER_SESSIONS_PREFIX}*"):
                for member in await self.client.smembers(user_key):
                    if not await self.client.exists(self._session_key(member)):
                        purged += await self.client.srem(user_key, member)
        return purged

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down the runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
