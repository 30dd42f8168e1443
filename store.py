"""
Shared counter/block store.

Every piece of cross-request state (rate-limit counters, failure logs, IP
blocks) lives behind this contract so that any number of stateless gateway
instances see the same numbers:

- incr_window      atomic increment, expiry set only on creation
- hit_sliding      atomic trim + count + conditional record (sliding log)
- add_event        atomic trim + record + count (trailing failure log)
- count_events     trailing count without recording
- put / put_if_absent / get / delete / scan_prefix
- ping

All keys are namespaced with the configured prefix. Any Redis failure
surfaces as StoreUnavailable so callers can apply the fail-open policy.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from redis.exceptions import RedisError

logger = logging.getLogger("sitesec.store")


class StoreUnavailable(Exception):
    """The shared store could not be reached or timed out."""

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {type(cause).__name__}: {cause}")
        self.operation = operation
        self.cause = cause


# =========================
# Lua scripts (single round trip each)
# =========================

_FIXED_WINDOW_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return count
"""

_SLIDING_WINDOW_LUA = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
local allowed = 0
if count < limit then
  redis.call('ZADD', KEYS[1], now, ARGV[4])
  redis.call('PEXPIRE', KEYS[1], window)
  count = count + 1
  allowed = 1
end
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
local oldest_score = now
if oldest[2] then
  oldest_score = tonumber(oldest[2])
end
return {allowed, count, oldest_score}
"""

_ADD_EVENT_LUA = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
redis.call('ZADD', KEYS[1], now, ARGV[3])
redis.call('PEXPIRE', KEYS[1], window)
return redis.call('ZCARD', KEYS[1])
"""


class RedisStore:
    def __init__(self, client, key_prefix: str = "sitesec:"):
        self._client = client
        self._prefix = key_prefix
        self._fixed_window = client.register_script(_FIXED_WINDOW_LUA)
        self._sliding_window = client.register_script(_SLIDING_WINDOW_LUA)
        self._add_event = client.register_script(_ADD_EVENT_LUA)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as e:
            logger.error(f"Store operation {operation} failed: {type(e).__name__}")
            raise StoreUnavailable(operation, e) from e

    # -------------------------
    # Counters
    # -------------------------

    def incr_window(self, key: str, ttl_ms: int) -> int:
        with self._guard("incr_window"):
            return int(self._fixed_window(keys=[self._key(key)], args=[max(int(ttl_ms), 1)]))

    def hit_sliding(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
        member: str,
    ) -> Tuple[bool, int, int]:
        """
        Returns (allowed, count_in_window, oldest_entry_ms).
        The request is recorded only when allowed.
        """
        with self._guard("hit_sliding"):
            allowed, count, oldest = self._sliding_window(
                keys=[self._key(key)],
                args=[int(now_ms), int(window_ms), int(limit), member],
            )
        return bool(int(allowed)), int(count), int(oldest)

    def add_event(self, key: str, now_ms: int, window_ms: int, member: str) -> int:
        with self._guard("add_event"):
            return int(
                self._add_event(
                    keys=[self._key(key)],
                    args=[int(now_ms), int(window_ms), member],
                )
            )

    def count_events(self, key: str, now_ms: int, window_ms: int) -> int:
        with self._guard("count_events"):
            return int(
                self._client.zcount(self._key(key), f"({int(now_ms) - int(window_ms)}", "+inf")
            )

    # -------------------------
    # Records
    # -------------------------

    def put(self, key: str, value: str, ttl_ms: Optional[int] = None) -> None:
        with self._guard("put"):
            self._client.set(self._key(key), value, px=ttl_ms)

    def put_if_absent(self, key: str, value: str, ttl_ms: Optional[int] = None) -> bool:
        with self._guard("put_if_absent"):
            return bool(self._client.set(self._key(key), value, px=ttl_ms, nx=True))

    def get(self, key: str) -> Optional[str]:
        with self._guard("get"):
            return self._client.get(self._key(key))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._guard("delete"):
            return int(self._client.delete(*[self._key(k) for k in keys]))

    def scan_prefix(self, prefix: str) -> List[Tuple[str, str]]:
        """
        Returns (key, value) pairs for every live key starting with prefix.
        Keys are returned without the store namespace.
        """
        with self._guard("scan_prefix"):
            full_keys = list(self._client.scan_iter(match=f"{self._key(prefix)}*", count=200))
            if not full_keys:
                return []
            values = self._client.mget(full_keys)

        cut = len(self._prefix)
        return [
            (k[cut:], v)
            for k, v in zip(full_keys, values)
            if v is not None
        ]

    def ping(self) -> bool:
        with self._guard("ping"):
            return bool(self._client.ping())
