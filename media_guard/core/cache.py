"""
Content-addressed cache.

Durable key/value store with TTL. One JSON document per key on disk; on the
first storage failure the cache switches to an in-process store for the rest
of its life, so callers never see a cache error.
"""

import asyncio
import functools
import logging
import re
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from media_guard.config.loader import parse_ttl
from media_guard.storage.files import read_json, remove_file, write_json

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class CacheBackendError(Exception):
    """Raised by a storage backend when it cannot serve a request."""


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def _expires_at(ttl: Optional[float], clock: Callable[[], float]) -> int:
    if not ttl:
        return 0
    return _now_ms(clock) + int(ttl * 1000)


def _is_expired(expires_at: int, clock: Callable[[], float]) -> bool:
    return bool(expires_at) and _now_ms(clock) > expires_at


class MemoryCacheBackend:
    """Volatile in-process backend."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, Tuple[Any, int]] = {}
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if _is_expired(expires_at, self._clock):
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._entries[key] = (value, _expires_at(ttl, self._clock))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._entries if k.startswith(prefix))


class FileCacheBackend:
    """Durable backend storing ``{"key", "value", "expires_at"}`` per file.

    File names are sanitized keys; the stored key is compared on read so two
    keys that sanitize to the same name never alias each other.
    """

    def __init__(self, root: Union[str, Path], clock: Callable[[], float] = time.time):
        self.root = Path(root)
        self._clock = clock

    def _path_for(self, key: str) -> Path:
        return self.root / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        try:
            entry = read_json(path)
        except (OSError, ValueError) as e:
            raise CacheBackendError(f"Cannot read cache entry {path}: {e}") from e

        if entry is None:
            return None
        if not isinstance(entry, dict) or "value" not in entry:
            raise CacheBackendError(f"Corrupt cache entry {path}")
        if entry.get("key", key) != key:
            return None

        try:
            expires_at = int(entry.get("expires_at") or 0)
        except (OverflowError, TypeError, ValueError) as e:
            raise CacheBackendError(f"Corrupt expiry in cache entry {path}: {e}") from e
        if _is_expired(expires_at, self._clock):
            self.delete(key)
            return None
        return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        entry = {"key": key, "value": value, "expires_at": _expires_at(ttl, self._clock)}
        try:
            write_json(self._path_for(key), entry)
        except (OSError, TypeError, ValueError) as e:
            raise CacheBackendError(f"Cannot write cache entry for {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            remove_file(self._path_for(key))
        except OSError as e:
            raise CacheBackendError(f"Cannot delete cache entry for {key}: {e}") from e

    def keys(self, prefix: str = "") -> List[str]:
        if not self.root.is_dir():
            return []
        keys = []
        try:
            for path in self.root.glob("*.json"):
                entry = read_json(path)
                if not isinstance(entry, dict):
                    continue
                key = entry.get("key")
                if isinstance(key, str) and key.startswith(prefix):
                    keys.append(key)
        except (OSError, ValueError) as e:
            raise CacheBackendError(f"Cannot list cache entries in {self.root}: {e}") from e
        return sorted(keys)


class ContentAddressedCache:
    """Key/value cache with TTL and automatic in-memory fallback.

    Usage:
        cache = ContentAddressedCache(".cache/media-guard")
        await cache.set("upload_ab12", "https://cdn/x.png", ttl="7d")
        url = await cache.get("upload_ab12")

    Passing ``root=None`` gives a purely in-memory cache.
    """

    def __init__(
        self,
        root: Union[str, Path, None] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._backend: Union[FileCacheBackend, MemoryCacheBackend]
        if root is None:
            self._backend = MemoryCacheBackend(clock)
        else:
            self._backend = FileCacheBackend(root, clock)

    @property
    def is_fallback(self) -> bool:
        """Whether the cache is running on the volatile store."""
        return isinstance(self._backend, MemoryCacheBackend)

    def _fall_back(self, error: Exception) -> None:
        if isinstance(self._backend, FileCacheBackend):
            logger.warning(
                f"Cache storage at {self._backend.root} failed, "
                f"using in-memory cache for this process: {error}"
            )
            self._backend = MemoryCacheBackend(self._clock)

    async def _call(self, operation: str, *args: Any) -> Any:
        backend = self._backend
        if isinstance(backend, MemoryCacheBackend):
            return getattr(backend, operation)(*args)
        try:
            return await asyncio.to_thread(getattr(backend, operation), *args)
        except CacheBackendError as e:
            self._fall_back(e)
            return getattr(self._backend, operation)(*args)

    async def get(self, key: str) -> Optional[Any]:
        """Get a value; expired and missing entries return None."""
        return await self._call("get", key)

    async def set(self, key: str, value: Any, ttl: Union[float, str, None] = None) -> None:
        """Store a value, replacing any previous entry.

        Args:
            key: Cache key
            value: JSON-serializable value
            ttl: Seconds or TTL string; None/0 keeps the entry until deleted
        """
        await self._call("set", key, value, parse_ttl(ttl))

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def keys(self, prefix: str = "") -> List[str]:
        """List stored keys with the given prefix (expired entries included)."""
        return await self._call("keys", prefix)


def with_cache(
    fn: Callable[..., Awaitable[T]],
    key: Union[str, Callable[..., str]],
    cache: ContentAddressedCache,
    ttl: Union[float, str, None] = None,
) -> Callable[..., Awaitable[T]]:
    """Wrap an async function so results are memoized in the cache.

    Args:
        fn: Coroutine function to wrap; its results must be JSON-serializable
        key: Fixed key, or a function computing the key from the call arguments
        cache: Cache to store results in
        ttl: Lifetime of memoized results

    Returns:
        Coroutine function with the same signature
    """
    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        cache_key = key(*args, **kwargs) if callable(key) else key
        cached = await cache.get(cache_key)
        if cached is not None:
            return cached

        result = await fn(*args, **kwargs)
        await cache.set(cache_key, result, ttl)
        return result

    return wrapper
