from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for sessions, tokens, rate limits and coordination keys."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # delete only when the stored value still belongs to the caller
    _COMPARE_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._compare_delete = self.client.register_script(self._COMPARE_DELETE_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Clamp a TTL derived from an absolute expiry to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        await pipe.execute()
        return len(session_ids)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket rate limit evaluated atomically in Lua."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    # one-time tokens (password reset, email verification)
    async def set_token(self, kind: str, token: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(f"{kind}:{token}", json.dumps(payload), ex=max(1, ttl_seconds))

    async def get_token(self, kind: str, token: str) -> Optional[dict]:
        cached = await self.client.get(f"{kind}:{token}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def pop_token(self, kind: str, token: str) -> Optional[dict]:
        key = f"{kind}:{token}"
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.delete(key)
        cached, _ = await pipe.execute()
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    # processing guard
    async def acquire_processing_slot(self, key: str, owner: str, ttl_seconds: int) -> bool:
        acquired = await self.client.set(
            f"processing:{key}", owner, ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def release_processing_slot(self, key: str, owner: str) -> None:
        await self._compare_delete(keys=[f"processing:{key}"], args=[owner])

    # cross-tab flags
    async def get_flag(self, key: str) -> Optional[dict]:
        cached = await self.client.get(f"flag:{key}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_flag(self, key: str, value: dict, ttl_seconds: int) -> None:
        await self.client.set(f"flag:{key}", json.dumps(value), ex=max(1, ttl_seconds))

    async def delete_flag(self, key: str, *, expected: Optional[dict] = None) -> bool:
        if expected is None:
            return bool(await self.client.delete(f"flag:{key}"))
        removed = await self._compare_delete(
            keys=[f"flag:{key}"], args=[json.dumps(expected)]
        )
        return bool(int(removed))

    async def publish(self, channel: str, message: dict) -> int:
        return int(await self.client.publish(channel, json.dumps(message)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, while exposing the same awaitable surface as RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._compare_delete = self._sync_client.register_script(
            RedisCache._COMPARE_DELETE_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = RedisCache._ttl_seconds(expires_at)
        pipe = self._sync_client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        pipe.execute()

    async def revoke_session(self, session_id: str) -> None:
        self._sync_client.delete(f"auth:session:{session_id}")

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = self._sync_client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self._sync_client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        pipe.execute()
        return len(session_ids)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def set_token(self, kind: str, token: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(f"{kind}:{token}", json.dumps(payload), ex=max(1, ttl_seconds))

    async def get_token(self, kind: str, token: str) -> Optional[dict]:
        cached = self._sync_client.get(f"{kind}:{token}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def pop_token(self, kind: str, token: str) -> Optional[dict]:
        key = f"{kind}:{token}"
        pipe = self._sync_client.pipeline()
        pipe.get(key)
        pipe.delete(key)
        cached, _ = pipe.execute()
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def acquire_processing_slot(self, key: str, owner: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(
                f"processing:{key}", owner, ex=max(1, ttl_seconds), nx=True
            )
        )

    async def release_processing_slot(self, key: str, owner: str) -> None:
        self._compare_delete(keys=[f"processing:{key}"], args=[owner])

    async def get_flag(self, key: str) -> Optional[dict]:
        cached = self._sync_client.get(f"flag:{key}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_flag(self, key: str, value: dict, ttl_seconds: int) -> None:
        self._sync_client.set(f"flag:{key}", json.dumps(value), ex=max(1, ttl_seconds))

    async def delete_flag(self, key: str, *, expected: Optional[dict] = None) -> bool:
        if expected is None:
            return bool(self._sync_client.delete(f"flag:{key}"))
        removed = self._compare_delete(keys=[f"flag:{key}"], args=[json.dumps(expected)])
        return bool(int(removed))

    async def publish(self, channel: str, message: dict) -> int:
        return int(self._sync_client.publish(channel, json.dumps(message)))

    async def close(self) -> None:
        self._sync_client.close()
