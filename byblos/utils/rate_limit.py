from __future__ import annotations

import threading
import time

import redis


class CounterStore:
    """Request counters keyed by an opaque string, one window per key."""

    name = "unknown"

    def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        raise NotImplementedError

    def evict_expired(self) -> int:
        return 0

    def stats(self) -> dict:
        return {"store": self.name}


class MemoryCounterStore(CounterStore):
    """Sliding window kept in process memory.

    Limits are per process; multi-instance deployments should use RedisCounterStore.
    """

    name = "memory"

    def __init__(self, *, cleanup_interval_seconds: int = 300, clock=None):
        self._lock = threading.Lock()
        self._windows: dict[str, list[float]] = {}
        self._spans: dict[str, int] = {}
        self._clock = clock or time.time
        self._cleanup_interval = max(1, int(cleanup_interval_seconds))
        self._last_cleanup = self._clock()
        self._hits = 0
        self._blocked = 0

    def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        safe_window = max(1, int(window_seconds))
        safe_limit = max(1, int(limit))
        now = self._clock()
        if now - self._last_cleanup >= self._cleanup_interval:
            self.evict_expired()
        start = now - safe_window
        with self._lock:
            self._hits += 1
            bucket = [ts for ts in self._windows.get(key, []) if ts > start]
            self._spans[key] = safe_window
            if len(bucket) >= safe_limit:
                self._windows[key] = bucket
                self._blocked += 1
                retry_after = int(max(1, safe_window - (now - min(bucket))))
                return False, retry_after
            bucket.append(now)
            self._windows[key] = bucket
        return True, 0

    def evict_expired(self) -> int:
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._windows.keys()):
                span = self._spans.get(key, 60)
                bucket = [ts for ts in self._windows[key] if ts > now - span]
                if bucket:
                    self._windows[key] = bucket
                else:
                    del self._windows[key]
                    self._spans.pop(key, None)
                    removed += 1
            self._last_cleanup = now
        return removed

    def stats(self) -> dict:
        with self._lock:
            return {
                "store": self.name,
                "tracked_keys": len(self._windows),
                "hits": int(self._hits),
                "blocked": int(self._blocked),
            }


class RedisCounterStore(CounterStore):
    """Fixed window INCR/EXPIRE counters shared by every instance.

    Redis errors fall through to the fallback store so webhooks keep flowing.
    """

    name = "redis"

    def __init__(self, client, *, prefix: str = "rl:v1", fallback: CounterStore | None = None, clock=None):
        self._client = client
        self._prefix = prefix
        self._fallback = fallback or MemoryCounterStore()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._redis_hits = 0
        self._redis_errors = 0

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=0.75,
            socket_timeout=0.75,
            health_check_interval=30,
        )
        return cls(client, **kwargs)

    def hit(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        safe_window = max(1, int(window_seconds))
        safe_limit = max(1, int(limit))
        now_sec = int(self._clock())
        counter_key = f"{self._prefix}:{key}:{now_sec // safe_window}"
        try:
            current = int(self._client.incr(counter_key))
            if current == 1:
                self._client.expire(counter_key, safe_window + 1)
        except redis.RedisError:
            with self._lock:
                self._redis_errors += 1
            return self._fallback.hit(key, limit=safe_limit, window_seconds=safe_window)
        with self._lock:
            self._redis_hits += 1
        if current <= safe_limit:
            return True, 0
        return False, int(max(1, safe_window - (now_sec % safe_window)))

    def evict_expired(self) -> int:
        # Redis expires keys on its own; only the fallback needs sweeping.
        return self._fallback.evict_expired()

    def stats(self) -> dict:
        with self._lock:
            return {
                "store": self.name,
                "redis_hits": int(self._redis_hits),
                "redis_errors": int(self._redis_errors),
                "fallback": self._fallback.stats(),
            }


def build_counter_store(redis_url: str | None = None, *, cleanup_interval_seconds: int = 300) -> CounterStore:
    memory = MemoryCounterStore(cleanup_interval_seconds=cleanup_interval_seconds)
    url = (redis_url or "").strip()
    if not url:
        return memory
    return RedisCounterStore.from_url(url, fallback=memory)


def resolve_client_ip(request, *, trusted_proxy: bool = False) -> str:
    if trusted_proxy:
        xff = (request.headers.get("X-Forwarded-For") or "").strip()
        if xff:
            first_hop = (xff.split(",")[0] or "").strip()
            if first_hop:
                return first_hop
        x_real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if x_real_ip:
            return x_real_ip
    remote = (request.remote_addr or "").strip()
    if remote:
        return remote
    return "unknown"


__all__ = [
    "CounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "build_counter_store",
    "resolve_client_ip",
]
