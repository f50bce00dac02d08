from __future__ import annotations

import hmac
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from authflow.storage.redis_cache import (
    OTP_EXHAUSTED,
    OTP_KEY_PREFIX,
    OTP_MISMATCH,
    OTP_MISSING,
    OTP_OK,
    REFRESH_ROTATED_PREFIX,
    RedisCache,
)


class MemoryCache:
    """In-process stand-in for RedisCache used under TEST_MODE or local fallback.

    Every method runs its read-modify-write under one thread lock and never
    awaits while holding it, so each call is atomic with respect to the
    others even when requests run on different event loops or threads.
    Entries expire lazily on access and during ``scan_prefix``; rate-limit
    state that has fully lapsed is pruned at most once a minute.
    """

    PRUNE_INTERVAL_SECONDS = 60.0

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # key -> (value, expires_at monotonic seconds)
        self._values: Dict[str, Tuple[Any, float]] = {}
        # key -> (tokens, last refill, expires_at)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        # key -> (event timestamps, window seconds)
        self._windows: Dict[str, Tuple[Deque[float], float]] = {}
        self._next_prune = 0.0

    @staticmethod
    def _now() -> float:
        return time.monotonic()

    def _live(self, key: str) -> Optional[Any]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._now():
            self._values.pop(key, None)
            return None
        return value

    def _prune_rate_state(self, now: float) -> None:
        """Forget buckets back at capacity and windows with no live events."""
        if now < self._next_prune:
            return
        self._next_prune = now + self.PRUNE_INTERVAL_SECONDS
        for key in [k for k, (_, _, expires_at) in self._buckets.items() if expires_at <= now]:
            del self._buckets[key]
        for key in [
            k for k, (events, window) in self._windows.items()
            if not events or events[-1] <= now - window
        ]:
            del self._windows[key]

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
        return value if isinstance(value, str) else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._now() + max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self._now() + max(1, int(ttl_seconds)))
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._values.pop(key, None) is not None else 0

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def scan_prefix(self, prefix: str) -> List[str]:
        with self._lock:
            keys = [key for key in self._values if key.startswith(prefix)]
            return [key for key in keys if self._live(key) is not None]

    async def store_otp(
        self, identity: str, code_digest: str, attempts: int, ttl_seconds: int
    ) -> None:
        record = {"digest": code_digest, "attempts": int(attempts)}
        with self._lock:
            self._values[f"{OTP_KEY_PREFIX}{identity}"] = (
                record,
                self._now() + max(1, int(ttl_seconds)),
            )

    async def verify_otp(self, identity: str, code_digest: str) -> Tuple[str, int]:
        key = f"{OTP_KEY_PREFIX}{identity}"
        with self._lock:
            record = self._live(key)
            if not isinstance(record, dict):
                return OTP_MISSING, 0
            if hmac.compare_digest(record["digest"], code_digest):
                self._values.pop(key, None)
                return OTP_OK, record["attempts"]
            record["attempts"] -= 1
            if record["attempts"] <= 0:
                self._values.pop(key, None)
                return OTP_EXHAUSTED, 0
            return OTP_MISMATCH, record["attempts"]

    async def delete_otp(self, identity: str) -> None:
        with self._lock:
            self._values.pop(f"{OTP_KEY_PREFIX}{identity}", None)

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        now = self._now()
        with self._lock:
            self._prune_rate_state(now)
            tokens, last_ts, _ = self._buckets.get(safe_key, (float(limit), now, now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[safe_key] = (tokens, now, now + window_seconds)
        reset_seconds = 0
        if not allowed and refill_rate > 0:
            reset_seconds = max(1, int((cost - tokens) / refill_rate + 0.999))
        return allowed, int(tokens), reset_seconds

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        safe_key = RedisCache._normalize_rate_key(key)
        now = self._now()
        with self._lock:
            self._prune_rate_state(now)
            events, _ = self._windows.setdefault(safe_key, (deque(), float(window_seconds)))
            while events and events[0] <= now - window_seconds:
                events.popleft()
            if len(events) >= limit:
                retry_after = max(1, int(events[0] + window_seconds - now + 0.999))
                return False, len(events), retry_after
            events.append(now)
            return True, len(events), 0

    async def mark_refresh_rotated(
        self, token_hash: str, user_id: str, ttl_seconds: int
    ) -> None:
        await self.set(f"{REFRESH_ROTATED_PREFIX}{token_hash}", user_id, ttl_seconds)

    async def get_refresh_rotation(self, token_hash: str) -> Optional[str]:
        return await self.get(f"{REFRESH_ROTATED_PREFIX}{token_hash}")

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._buckets.clear()
            self._windows.clear()
