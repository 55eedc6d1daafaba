"""
cache/store.py -- Best-effort Redis cache in front of rate-limited upstreams.

The cache is advisory. Any entry may vanish at any time, the backend may be
down, and REDIS_URL may not be set at all. Callers must always have a
non-cached path; this module guarantees only that every call returns.

Lifecycle:
    handle = init_cache(get_settings())   # disabled handle if REDIS_URL is empty
    cache = CacheStore(handle)
    cache.set("quote:AAPL", {"price": 189.3}, ttl_seconds=60)
    cache.get("quote:AAPL")               # dict, or None on miss / any failure
    cache.delete_pattern("quote:*")
    shutdown_cache(handle)

Failure policy: RedisError (connection, timeout, protocol) and
TypeError/ValueError (serialization) are caught at each public method,
logged, counted in stats(), and turned into a miss or a no-op.

Connection retries use redis-py's Retry with a linear backoff
(attempt * base, capped) and a small fixed retry budget per command, so a
degraded backend costs a bounded delay instead of blocking indefinitely.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

from redis import Redis
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from core.config import Settings

logger = logging.getLogger("pocketledger.cache")

_DEFAULT_TTL = 60  # seconds


class LinearBackoff(AbstractBackoff):
    """Delay grows by `base` per failed attempt, never above `cap` (seconds)."""

    def __init__(self, base: float = 0.05, cap: float = 2.0) -> None:
        self._base = base
        self._cap = cap

    def compute(self, failures: int) -> float:
        return min(self._cap, max(0, failures) * self._base)


@dataclass(frozen=True)
class CacheHandle:
    """Owns the Redis client. client=None is the 'caching disabled' state."""

    client: Optional[Redis] = None
    url: str = ""

    @property
    def enabled(self) -> bool:
        return self.client is not None


def _redact(url: str) -> str:
    parts = urlsplit(url)
    host = parts.hostname or "?"
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme}://{host}{port}"


def init_cache(settings: Settings) -> CacheHandle:
    """Build the cache handle from settings. Never raises."""
    if not settings.redis_url:
        logger.info("REDIS_URL not configured. Caching disabled.")
        return CacheHandle()

    kwargs: dict[str, Any] = {
        "decode_responses": True,
        "socket_connect_timeout": settings.cache_socket_timeout,
        "socket_timeout": settings.cache_socket_timeout,
        "retry": Retry(
            LinearBackoff(
                base=settings.cache_backoff_base_ms / 1000,
                cap=settings.cache_backoff_cap_ms / 1000,
            ),
            # redis-py counts retries after the first try.
            max(settings.cache_max_attempts - 1, 0),
        ),
        "retry_on_error": [RedisConnectionError, RedisTimeoutError],
    }
    if settings.redis_url.startswith("rediss://") and not settings.cache_tls_verify:
        kwargs["ssl_cert_reqs"] = "none"

    try:
        # from_url does not connect; the first command does.
        client = Redis.from_url(settings.redis_url, **kwargs)
    except (RedisError, ValueError) as exc:
        logger.error("Redis initialization error: %s. Caching disabled.", exc)
        return CacheHandle()

    logger.info("Redis cache configured at %s", _redact(settings.redis_url))
    return CacheHandle(client=client, url=settings.redis_url)


def shutdown_cache(handle: CacheHandle) -> None:
    if handle.client is None:
        return
    try:
        handle.client.close()
    except RedisError as exc:
        logger.warning("Redis close error: %s", exc)


class CacheStore:
    """Key/value operations over a CacheHandle. Every method is safe to call when disabled."""

    def __init__(self, handle: CacheHandle, default_ttl: int = _DEFAULT_TTL) -> None:
        self._client = handle.client
        self.default_ttl = default_ttl
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get(self, key: str) -> Any | None:
        """Return the cached value for key, or None on miss / disabled / failure."""
        if self._client is None:
            return None
        try:
            raw = self._client.get(key)
        except RedisError as exc:
            self._failed("get", key, exc)
            return None
        if raw is None:
            self._count("misses")
            return None
        try:
            value = json.loads(raw)
        except ValueError as exc:
            self._failed("decode", key, exc)
            return None
        self._count("hits")
        return value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON-serializable value with a TTL (SETEX)."""
        if self._client is None:
            return
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        try:
            payload = json.dumps(value)
            self._client.setex(key, ttl, payload)
        except (RedisError, TypeError, ValueError) as exc:
            self._failed("set", key, exc)
            return
        self._count("sets")

    def delete(self, key: str) -> None:
        if self._client is None:
            return
        try:
            self._client.delete(key)
        except RedisError as exc:
            self._failed("delete", key, exc)
            return
        self._count("deletes")

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (e.g. "quote:*"). Returns keys removed."""
        if self._client is None:
            return 0
        try:
            keys = self._client.keys(pattern)
            removed = self._client.delete(*keys) if keys else 0
        except RedisError as exc:
            self._failed("delete_pattern", pattern, exc)
            return 0
        self._count("deletes", removed)
        return removed

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl_seconds: int | None = None) -> Any:
        """Return the cached value, or call loader(), cache its result and return it.

        loader() exceptions propagate -- only cache failures are absorbed.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value

    def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except RedisError as exc:
            self._failed("ping", "-", exc)
            return False

    def stats(self) -> dict:
        with self._lock:
            counts = dict(self._counts)
        lookups = counts.get("hits", 0) + counts.get("misses", 0)
        return {
            "enabled": self.enabled,
            "hits": counts.get("hits", 0),
            "misses": counts.get("misses", 0),
            "sets": counts.get("sets", 0),
            "deletes": counts.get("deletes", 0),
            "errors": counts.get("errors", 0),
            "hit_rate": round(counts.get("hits", 0) / lookups, 4) if lookups else 0.0,
            "default_ttl": self.default_ttl,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _count(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def _failed(self, op: str, key: str, exc: Exception) -> None:
        self._count("errors")
        logger.warning("Redis %s error for %r: %s", op, key, exc)
