from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable

import redis

from config import REDIS_DISABLED, REDIS_URL

STATUS_CACHE_TTL_SECONDS = 60.0
STATUS_CACHE_KEY_PREFIX = "billing:status:user:"


class _StatusCache:
    """Redis-backed snapshot cache; falls back to process memory when Redis is unavailable."""

    def __init__(self) -> None:
        self._memory_lock = threading.Lock()
        self._memory_cache: dict[str, tuple[float, dict[str, Any]]] = {}
        self._redis_client = self._build_redis_client()

    @staticmethod
    def _build_redis_client() -> redis.Redis | None:
        if REDIS_DISABLED or str(REDIS_URL or "").startswith("memory://"):
            return None
        try:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            return client
        except redis.RedisError:
            return None

    def get(self, user_id: str) -> dict[str, Any] | None:
        key = f"{STATUS_CACHE_KEY_PREFIX}{user_id}"
        if self._redis_client is not None:
            try:
                raw = self._redis_client.get(key)
                if raw:
                    payload = json.loads(raw)
                    if isinstance(payload, dict):
                        return payload
            except (redis.RedisError, ValueError):
                self._redis_client = None

        now = time.time()
        with self._memory_lock:
            cached = self._memory_cache.get(key)
            if cached is None:
                return None
            expires_at, payload = cached
            if expires_at <= now:
                self._memory_cache.pop(key, None)
                return None
            return dict(payload)

    def set(self, user_id: str, payload: dict[str, Any], ttl_seconds: float = STATUS_CACHE_TTL_SECONDS) -> None:
        key = f"{STATUS_CACHE_KEY_PREFIX}{user_id}"
        encoded = json.dumps(payload, ensure_ascii=False, default=str)
        if self._redis_client is not None:
            try:
                self._redis_client.setex(key, max(1, int(ttl_seconds)), encoded)
                return
            except redis.RedisError:
                self._redis_client = None

        with self._memory_lock:
            self._memory_cache[key] = (time.time() + max(1.0, float(ttl_seconds)), dict(payload))

    def delete(self, user_id: str) -> None:
        key = f"{STATUS_CACHE_KEY_PREFIX}{user_id}"
        if self._redis_client is not None:
            try:
                self._redis_client.delete(key)
            except redis.RedisError:
                self._redis_client = None

        with self._memory_lock:
            self._memory_cache.pop(key, None)

    def clear(self) -> None:
        with self._memory_lock:
            self._memory_cache.clear()


_CACHE = _StatusCache()


def get_cached_status(
    user_id: str,
    loader: Callable[[str], dict[str, Any]],
    *,
    force_refresh: bool = False,
) -> dict[str, Any]:
    normalized_user_id = str(user_id or "").strip()
    if not force_refresh:
        cached = _CACHE.get(normalized_user_id)
        if cached is not None:
            return cached

    payload = loader(normalized_user_id)
    _CACHE.set(normalized_user_id, payload)
    return payload


def invalidate_subscription_status(user_id: str | None) -> None:
    normalized_user_id = str(user_id or "").strip()
    if not normalized_user_id:
        return
    _CACHE.delete(normalized_user_id)


def reset_status_cache() -> None:
    """Drop in-process snapshots (tests swap databases between cases)."""
    _CACHE.clear()
