"""
Process-wide cache of compiled type bindings.

Holds compiled type bindings keyed by shape, alias overrides and the live
column names they were resolved against. Uses cachetools TTLCache for
automatic expiration.
"""
import functools
import logging
import threading

import cachetools

logger = logging.getLogger(__name__)


class Cache:
    """Process-wide holder of the binding cache.

    One instance per process, created on first use. Entries expire after
    ttl seconds so bindings for long-gone result shapes do not pile up.
    """

    _instance = None
    _lock = threading.RLock()

    def __init__(self, maxsize: int = 256, ttl: int = 600) -> None:
        self._bindings = cachetools.TTLCache(maxsize=maxsize, ttl=ttl)

    @classmethod
    def get_instance(cls) -> 'Cache':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get_binding_cache(self) -> cachetools.TTLCache:
        """Compiled bindings keyed by (shape, aliases, columns, ignore_missing)."""
        return self._bindings

    def clear_all(self) -> None:
        with self._lock:
            self._bindings.clear()

    def clear_for_shape(self, shape: type) -> None:
        """Drop every binding built for shape, whatever columns it was bound to."""
        with self._lock:
            stale = [key for key in list(self._bindings) if key[0] is shape]
            for key in stale:
                self._bindings.pop(key, None)
        if stale:
            logger.debug(f'Cleared {len(stale)} bindings for {shape.__qualname__}')


def _create_cache_key(shape: type, aliases: tuple, columns: tuple, ignore_missing: bool) -> tuple:
    """Create a hashable cache key for a binding.

    The shape itself leads the key so entries can be cleared per shape.
    """
    return (shape, aliases, columns, ignore_missing)


def cacheable_binding(method):
    """Decorator for caching binding results.

    Caches results keyed by shape, aliases, live column names and the
    missing-column policy. Respects bypass_cache parameter to skip cache lookup.
    """
    @functools.wraps(method)
    def wrapper(shape, aliases, columns, ignore_missing, *, bypass_cache=False):
        if bypass_cache:
            logger.debug(f'Bypassing cache for {method.__name__}({shape!r})')
            return method(shape, aliases, columns, ignore_missing)

        cache = Cache.get_instance().get_binding_cache()
        cache_key = _create_cache_key(shape, aliases, columns, ignore_missing)

        try:
            result = cache[cache_key]
        except KeyError:
            logger.debug(f'Cache miss for {method.__name__}({shape!r})')
        else:
            logger.debug(f'Cache hit for {method.__name__}({shape!r})')
            return result

        result = method(shape, aliases, columns, ignore_missing)
        with Cache._lock:
            cache[cache_key] = result
        return result

    return wrapper
