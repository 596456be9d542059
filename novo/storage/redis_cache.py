from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

_OAUTH_STATE_PREFIX = "auth:oauth:state:"
_OAUTH_HANDOFF_PREFIX = "auth:oauth:handoff:"
_OAUTH_CODE_PREFIX = "auth:oauth:code:"


class RedisCache:
    """Redis wrapper for one-time OAuth records and rate limits."""

    # Atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
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

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so user-supplied emails cannot inject delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def put_once(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        await self.client.set(key, json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_once(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete a one-time record."""
        return self._decode(await self.client.getdel(key))

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        await self.put_once(f"{_OAUTH_STATE_PREFIX}{state}", {"provider": provider}, ttl_seconds)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        data = await self.pop_once(f"{_OAUTH_STATE_PREFIX}{state}")
        return data.get("provider") if data else None

    async def set_oauth_handoff(
        self, token: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.put_once(f"{_OAUTH_HANDOFF_PREFIX}{token}", payload, ttl_seconds)

    async def pop_oauth_handoff(self, token: str) -> Optional[Dict[str, Any]]:
        return await self.pop_once(f"{_OAUTH_HANDOFF_PREFIX}{token}")

    async def pop_oauth_code(self, provider: str, code: str) -> Optional[Dict[str, Any]]:
        """Pre-registered provider identity for a code, used by test stubs."""
        return await self.pop_once(f"{_OAUTH_CODE_PREFIX}{provider}:{code}")

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as :class:`RedisCache` on a synchronous client.

    Used under TEST_MODE so the client is never bound to a pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

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
        if return_remaining:
            return (allowed_bool, max(0, int(float(tokens))), int(reset_after or 0))
        return allowed_bool

    async def put_once(self, key: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        self.client.set(key, json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_once(self, key: str) -> Optional[Dict[str, Any]]:
        return RedisCache._decode(self.client.getdel(key))

    async def set_oauth_state(self, state: str, provider: str, ttl_seconds: int) -> None:
        await self.put_once(f"{_OAUTH_STATE_PREFIX}{state}", {"provider": provider}, ttl_seconds)

    async def pop_oauth_state(self, state: str) -> Optional[str]:
        data = await self.pop_once(f"{_OAUTH_STATE_PREFIX}{state}")
        return data.get("provider") if data else None

    async def set_oauth_handoff(
        self, token: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.put_once(f"{_OAUTH_HANDOFF_PREFIX}{token}", payload, ttl_seconds)

    async def pop_oauth_handoff(self, token: str) -> Optional[Dict[str, Any]]:
        return await self.pop_once(f"{_OAUTH_HANDOFF_PREFIX}{token}")

    async def pop_oauth_code(self, provider: str, code: str) -> Optional[Dict[str, Any]]:
        return await self.pop_once(f"{_OAUTH_CODE_PREFIX}{provider}:{code}")

    async def close(self) -> None:
        self.client.close()
