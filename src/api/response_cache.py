"""
Short-lived memoisation of computed responses (e.g. similar-song lists).

Backed by Redis when REDIS_URL is configured, otherwise by an in-process TTL map.
Every operation is best effort: failures are logged and reported as a miss, so the
caller always falls through to a fresh computation.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: str
    expires_at: float


class ResponseCache:
    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "music:", max_local_entries: int = 10000) -> None:
        self._client = client
        self._prefix = prefix
        self._local: Dict[str, _Entry] = {}
        self._lock = threading.RLock()
        self._max_local_entries = max_local_entries

    # PUBLIC_INTERFACE
    @classmethod
    def from_url(cls, url: Optional[str]) -> "ResponseCache":
        """Build a Redis-backed cache for `url`, or an in-process one when `url` is empty."""
        if not url:
            return cls()
        client = redis.Redis.from_url(url, socket_connect_timeout=2, socket_timeout=2, decode_responses=True)
        logger.info("response_cache_backend: backend=redis")
        return cls(client=client)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # PUBLIC_INTERFACE
    def get(self, key: str) -> Optional[Any]:
        raw: Optional[str] = None
        if self._client is not None:
            try:
                raw = self._client.get(self._key(key))
            except redis.RedisError as exc:
                logger.warning("response_cache_get_failed: key=%s exc=%s", key, exc.__class__.__name__)
        else:
            with self._lock:
                entry = self._local.get(key)
                if entry is not None and entry.expires_at <= time.time():
                    del self._local[key]
                    entry = None
                raw = entry.value if entry is not None else None

        return json.loads(raw) if raw is not None else None

    # PUBLIC_INTERFACE
    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        raw = json.dumps(value)
        if self._client is not None:
            try:
                self._client.setex(self._key(key), ttl_seconds, raw)
                return True
            except redis.RedisError as exc:
                logger.warning("response_cache_set_failed: key=%s exc=%s", key, exc.__class__.__name__)
                return False

        with self._lock:
            if len(self._local) >= self._max_local_entries:
                self._evict_expired()
            if len(self._local) >= self._max_local_entries:
                return False
            self._local[key] = _Entry(value=raw, expires_at=time.time() + ttl_seconds)
        return True

    # PUBLIC_INTERFACE
    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every memoised value whose key starts with `prefix`. Returns the number dropped."""
        if self._client is not None:
            try:
                keys = list(self._client.scan_iter(match=f"{self._key(prefix)}*", count=500))
                if keys:
                    self._client.delete(*keys)
                return len(keys)
            except redis.RedisError as exc:
                logger.warning("response_cache_invalidate_failed: prefix=%s exc=%s", prefix, exc.__class__.__name__)
                return 0
        with self._lock:
            keys = [k for k in self._local if k.startswith(prefix)]
            for key in keys:
                del self._local[key]
        return len(keys)

    def _evict_expired(self) -> None:
        now = time.time()
        for key in [k for k, e in self._local.items() if e.expires_at <= now]:
            del self._local[key]
