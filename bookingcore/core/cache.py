import json
from typing import Any

import diskcache
import redis

from ..config import settings
from ..errors import UpstreamFailure


class KeyValueCache:
    """Tenant-agnostic key/value store with per-key TTL.

    Callers build tenant-scoped keys themselves; values must be JSON
    serialisable so both backends store the same thing.
    """

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class DiskKeyValueCache(KeyValueCache):
    def __init__(self, directory: str | None = None, timeout_seconds: float | None = None):
        timeout = settings.CACHE_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._cache = diskcache.Cache(directory or settings.CACHE_DIR, timeout=timeout)

    def get(self, key: str) -> Any | None:
        try:
            raw = self._cache.get(key)
        except diskcache.Timeout as exc:
            raise UpstreamFailure("cache.get", key) from exc
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self._cache.set(key, json.dumps(value), expire=max(1, int(ttl_seconds)))
        except diskcache.Timeout as exc:
            raise UpstreamFailure("cache.set", key) from exc

    def delete(self, key: str) -> None:
        try:
            self._cache.delete(key)
        except diskcache.Timeout as exc:
            raise UpstreamFailure("cache.delete", key) from exc

    def close(self) -> None:
        self._cache.close()


class RedisKeyValueCache(KeyValueCache):
    def __init__(self, client: redis.Redis | None = None, url: str | None = None):
        if client is None:
            client = redis.from_url(
                url or settings.REDIS_URL,
                decode_responses=True,
                socket_timeout=settings.CACHE_TIMEOUT_SECONDS,
                socket_connect_timeout=settings.CACHE_TIMEOUT_SECONDS,
            )
        self._client = client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            raise UpstreamFailure("cache.get", key) from exc
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self._client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))
        except redis.RedisError as exc:
            raise UpstreamFailure("cache.set", key) from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as exc:
            raise UpstreamFailure("cache.delete", key) from exc


_default_cache: KeyValueCache | None = None


def get_cache() -> KeyValueCache:
    global _default_cache
    if _default_cache is None:
        if settings.CACHE_BACKEND == "redis":
            _default_cache = RedisKeyValueCache()
        else:
            _default_cache = DiskKeyValueCache()
    return _default_cache
