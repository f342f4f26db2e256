"""
Result caching for the query builder.

:py:class:`Cache` talks to a store exposing ``get(key)``, ``set(key, value,
ttl)`` and ``delete(key)``.  Two stores are provided: :py:class:`ArrayCacheStore`,
which keeps results in process memory, and :py:class:`DjangoCacheStore`, which
uses one of the caches configured in ``settings.CACHES``.
"""

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol

from django.conf import settings
from django.core.cache import caches

logger = logging.getLogger(__name__)

#: How long query results are cached when no expiry is given, in seconds
DEFAULT_CACHE_TTL = 300

Expiry = int | float | timedelta | datetime | None


def get_default_ttl() -> int:
    """
    Return ``settings.LDAPMAPPER_CACHE_TTL``, or :py:data:`DEFAULT_CACHE_TTL`.
    """
    return int(getattr(settings, "LDAPMAPPER_CACHE_TTL", DEFAULT_CACHE_TTL))


def get_seconds(ttl: Expiry) -> int:
    """
    Convert an expiry into a number of seconds from now.

    Args:
        ttl: seconds, a :py:class:`~datetime.timedelta`, or the
            :py:class:`~datetime.datetime` at which the value expires

    Returns:
        The number of seconds, never negative.  ``0`` means "no expiry".

    """
    if ttl is None:
        return 0
    if isinstance(ttl, datetime):
        now = datetime.now(ttl.tzinfo)
        ttl = ttl - now
    if isinstance(ttl, timedelta):
        ttl = ttl.total_seconds()
    return max(int(ttl), 0)


class CacheStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: int) -> bool: ...

    def delete(self, key: str) -> bool: ...


class ArrayCacheStore:
    """
    An in-process store.  Each value expires ``ttl`` seconds after it was set;
    a ``ttl`` of ``0`` never expires.

    Safe to share between threads.
    """

    def __init__(self) -> None:
        self._storage: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            if key not in self._storage:
                return None
            value, expires_at = self._storage[key]
            if expires_at and time.time() > expires_at:
                del self._storage[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        with self._lock:
            self._storage[key] = (value, time.time() + ttl if ttl > 0 else 0)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            self._storage.pop(key, None)
        return True

    def clear(self) -> None:
        with self._lock:
            self._storage.clear()


class DjangoCacheStore:
    """
    A store backed by a Django cache.

    Keyword Args:
        alias: the key into ``settings.CACHES``.  Defaults to
            ``settings.LDAPMAPPER_CACHE_ALIAS``, or ``"default"``.

    """

    def __init__(self, alias: str | None = None) -> None:
        self.alias = alias or getattr(settings, "LDAPMAPPER_CACHE_ALIAS", "default")

    @property
    def backend(self):
        return caches[self.alias]

    def get(self, key: str) -> Any:
        return self.backend.get(key)

    def set(self, key: str, value: Any, ttl: int = 0) -> bool:
        # Django treats a timeout of None as "never expire"
        self.backend.set(key, value, timeout=ttl or None)
        return True

    def delete(self, key: str) -> bool:
        return bool(self.backend.delete(key))


class Cache:
    """
    The narrow cache interface used by :py:class:`~ldapmapper.query.Builder`.

    Args:
        store: where to keep the values

    """

    def __init__(self, store: CacheStore | None = None) -> None:
        self.store: CacheStore = store if store is not None else ArrayCacheStore()

    def get(self, key: str) -> Any:
        return self.store.get(key)

    def put(self, key: str, value: Any, ttl: Expiry = None) -> bool:
        return self.store.set(key, value, get_seconds(ttl))

    def delete(self, key: str) -> bool:
        return self.store.delete(key)

    def remember(self, key: str, ttl: Expiry, callback: Callable[[], Any]) -> Any:
        """
        Return the value cached under ``key``; on a miss, call ``callback``,
        cache what it returns for ``ttl`` and return that.

        Args:
            key: the cache key
            ttl: how long to keep a freshly computed value
            callback: computes the value on a miss

        Returns:
            The cached or computed value.

        """
        value = self.get(key)
        if value is not None:
            logger.debug("ldapmapper.cache.hit key=%s", key)
            return value
        logger.debug("ldapmapper.cache.miss key=%s", key)
        value = callback()
        self.put(key, value, ttl)
        return value
