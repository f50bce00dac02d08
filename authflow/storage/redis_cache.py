from __future__ import annotations

import contextlib
import hashlib
import time
import uuid
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authflow.storage.errors import CacheUnavailable

OTP_KEY_PREFIX = "auth:otp:"
REFRESH_ROTATED_PREFIX = "auth:refresh:rotated:"

# Verification outcomes shared by every ephemeral store implementation
OTP_OK = "ok"
OTP_MISMATCH = "mismatch"
OTP_EXHAUSTED = "exhausted"
OTP_MISSING = "missing"


@contextlib.contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise CacheUnavailable(operation, exc) from exc


class RedisCache:
    """Thin Redis wrapper for registration sessions, OTPs and rate limits."""

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

-- The key must outlive a full refill; a lapsed key restarts at capacity
local ttl = math.max(math.ceil(capacity / refill_rate), 1)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  redis.call('EXPIRE', key, ttl)
  return {0, tokens, math.ceil((cost - tokens) / refill_rate)}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, ttl)
return {1, tokens, 0}
"""

    # Sliding-window log: trims expired entries, then admits if under the limit
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window
  if oldest[2] then
    retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  end
  return {0, count, math.max(retry_after, 1)}
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, count + 1, 0}
"""

    # Compare-and-consume for one-time codes. A match deletes the record; a
    # miss spends one attempt and deletes the record when none are left.
    _OTP_VERIFY_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'digest', 'attempts')
if not data[1] then
  return {'missing', 0}
end
if data[1] == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return {'ok', tonumber(data[2]) or 0}
end
local remaining = redis.call('HINCRBY', KEYS[1], 'attempts', -1)
if remaining <= 0 then
  redis.call('DEL', KEYS[1])
  return {'exhausted', 0}
end
return {'mismatch', remaining}
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
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._otp_verify = self.client.register_script(self._OTP_VERIFY_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so delimiters in addresses or emails cannot collide.

        ``"otp:a@b.c"`` becomes ``rate:otp:<sha256("a@b.c")>``; keys without a
        scope prefix are hashed whole.
        """

        scope, sep, subject = key.partition(":")
        if not sep:
            return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"
        digest = hashlib.sha256(subject.encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    @staticmethod
    def _otp_key(identity: str) -> str:
        return f"{OTP_KEY_PREFIX}{identity}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # generic key/value
    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with _translate_errors("set_if_absent"):
            return bool(await self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True))

    async def delete(self, key: str) -> int:
        with _translate_errors("delete"):
            return int(await self.client.delete(key))

    async def exists(self, key: str) -> bool:
        with _translate_errors("exists"):
            return bool(await self.client.exists(key))

    async def scan_prefix(self, prefix: str) -> List[str]:
        with _translate_errors("scan"):
            return [key async for key in self.client.scan_iter(match=f"{prefix}*", count=500)]

    # one-time codes
    async def store_otp(
        self, identity: str, code_digest: str, attempts: int, ttl_seconds: int
    ) -> None:
        key = self._otp_key(identity)
        with _translate_errors("store_otp"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "digest": code_digest,
                    "attempts": attempts,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            pipe.expire(key, max(1, int(ttl_seconds)))
            await pipe.execute()

    async def verify_otp(self, identity: str, code_digest: str) -> Tuple[str, int]:
        with _translate_errors("verify_otp"):
            status, remaining = await self._otp_verify(
                keys=[self._otp_key(identity)], args=[code_digest]
            )
        return str(status), int(remaining)

    async def delete_otp(self, identity: str) -> None:
        with _translate_errors("delete_otp"):
            await self.client.delete(self._otp_key(identity))

    # rate limits
    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Token bucket: ``limit`` tokens refilled evenly over ``window_seconds``.

        Returns (allowed, remaining_tokens, reset_after_seconds).
        """

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with _translate_errors("check_rate_limit"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Record one event if fewer than ``limit`` happened in the trailing window.

        Returns (allowed, events_in_window, retry_after_seconds).
        """

        safe_key = self._normalize_rate_key(key)
        now = time.time()
        with _translate_errors("hit_sliding_window"):
            allowed, count, retry_after = await self._sliding_window(
                keys=[safe_key],
                args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
            )
        return bool(int(allowed)), int(count), int(retry_after or 0)

    # refresh rotation tombstones
    async def mark_refresh_rotated(
        self, token_hash: str, user_id: str, ttl_seconds: int
    ) -> None:
        with _translate_errors("mark_refresh_rotated"):
            await self.client.set(
                f"{REFRESH_ROTATED_PREFIX}{token_hash}", user_id, ex=max(1, int(ttl_seconds))
            )

    async def get_refresh_rotation(self, token_hash: str) -> Optional[str]:
        with _translate_errors("get_refresh_rotation"):
            return await self.client.get(f"{REFRESH_ROTATED_PREFIX}{token_hash}")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited uniformly like
    RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.use_client(self.client)

    def use_client(self, client: Redis) -> None:
        """Swap the underlying client and re-register the Lua scripts on it."""
        self.client = client
        self._token_bucket = client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._sliding_window = client.register_script(RedisCache._SLIDING_WINDOW_SCRIPT)
        self._otp_verify = client.register_script(RedisCache._OTP_VERIFY_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with _translate_errors("set_if_absent"):
            return bool(self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True))

    async def delete(self, key: str) -> int:
        with _translate_errors("delete"):
            return int(self.client.delete(key))

    async def exists(self, key: str) -> bool:
        with _translate_errors("exists"):
            return bool(self.client.exists(key))

    async def scan_prefix(self, prefix: str) -> List[str]:
        with _translate_errors("scan"):
            return list(self.client.scan_iter(match=f"{prefix}*", count=500))

    async def store_otp(
        self, identity: str, code_digest: str, attempts: int, ttl_seconds: int
    ) -> None:
        key = RedisCache._otp_key(identity)
        with _translate_errors("store_otp"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "digest": code_digest,
                    "attempts": attempts,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )
            pipe.expire(key, max(1, int(ttl_seconds)))
            pipe.execute()

    async def verify_otp(self, identity: str, code_digest: str) -> Tuple[str, int]:
        with _translate_errors("verify_otp"):
            status, remaining = self._otp_verify(
                keys=[RedisCache._otp_key(identity)], args=[code_digest]
            )
        return str(status), int(remaining)

    async def delete_otp(self, identity: str) -> None:
        with _translate_errors("delete_otp"):
            self.client.delete(RedisCache._otp_key(identity))

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with _translate_errors("check_rate_limit"):
            allowed, tokens, reset_after = self._token_bucket(
                keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
            )
        return bool(int(allowed)), max(0, int(tokens)), int(reset_after or 0)

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(key)
        now = time.time()
        with _translate_errors("hit_sliding_window"):
            allowed, count, retry_after = self._sliding_window(
                keys=[safe_key],
                args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
            )
        return bool(int(allowed)), int(count), int(retry_after or 0)

    async def mark_refresh_rotated(
        self, token_hash: str, user_id: str, ttl_seconds: int
    ) -> None:
        with _translate_errors("mark_refresh_rotated"):
            self.client.set(
                f"{REFRESH_ROTATED_PREFIX}{token_hash}", user_id, ex=max(1, int(ttl_seconds))
            )

    async def get_refresh_rotation(self, token_hash: str) -> Optional[str]:
        with _translate_errors("get_refresh_rotation"):
            return self.client.get(f"{REFRESH_ROTATED_PREFIX}{token_hash}")

    async def close(self) -> None:
        self.client.close()
