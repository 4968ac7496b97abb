import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, Union

_log = logging.getLogger(__name__)

# Typehint for cache keys: single string or tuple of (optional) strings
CacheKey = Union[str, Tuple[Optional[str], ...]]


class TtlCache:
    """
    Simple dictionary based, in-memory key-value cache with expiry.
    """

    def __init__(self, default_ttl: float = 60, _clock: Callable[[], float] = time.time):
        self._cache: Dict[CacheKey, Tuple[Any, float]] = {}
        self.default_ttl = default_ttl
        self._clock = _clock
        self._lock = threading.Lock()

    def set(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> float:
        """Store item in cache and return its expiration timestamp"""
        expiration = self._clock() + (ttl or self.default_ttl)
        with self._lock:
            self._cache[key] = (value, expiration)
        return expiration

    def contains(self, key: CacheKey) -> bool:
        """Check whether cache contains item under given key"""
        with self._lock:
            if key in self._cache:
                value, expiration = self._cache[key]
                if self._clock() <= expiration:
                    return True
                del self._cache[key]
        return False

    def get(self, key: CacheKey, default=None) -> Any:
        """Get item from cache and if not available: return default value."""
        with self._lock:
            item = self._cache.get(key)
        if item is None or self._clock() > item[1]:
            return default
        return item[0]

    def get_or_call(self, key: CacheKey, callback: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """
        Try to get item from cache. If not available or expired: call callback to build it and store result in cache.
        """
        if self.contains(key):
            return self.get(key)
        value = callback()
        self.set(key=key, value=value, ttl=ttl)
        return value

    def delete(self, key: CacheKey):
        with self._lock:
            self._cache.pop(key, None)

    def flush(self):
        with self._lock:
            self._cache = {}
