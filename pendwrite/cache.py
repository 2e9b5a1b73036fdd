from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .models import QueryKey

logger = logging.getLogger(__name__)

OPTIMISTIC_PENDING = "optimistic-pending"
CONFIRMED = "confirmed"


def normalize_query_key(key: Any) -> QueryKey:
    """
    Turn a query key into a hashable tuple of strings.

    ``"programs"`` becomes ``("programs",)``; mapping parts are serialized
    with sorted keys so ``{"a": 1, "b": 2}`` and ``{"b": 2, "a": 1}`` match.
    """
    if isinstance(key, str):
        return (key,)
    parts = []
    for part in key:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict):
            parts.append(json.dumps(part, sort_keys=True, default=str))
        else:
            parts.append(str(part))
    return tuple(parts)


def _matches(prefix: QueryKey, key: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


@dataclass
class CacheEntry:
    confirmed: Any = None
    optimistic: Any = None
    has_optimistic: bool = False
    loaded: bool = False
    stale: bool = False
    fetcher: Optional[Callable[[], Any]] = None

    @property
    def state(self) -> str:
        return OPTIMISTIC_PENDING if self.has_optimistic else CONFIRMED

    @property
    def value(self) -> Any:
        return self.optimistic if self.has_optimistic else self.confirmed

    def confirm(self, data: Any) -> None:
        # The authoritative value replaces the optimistic guess outright.
        self.confirmed = data
        self.optimistic = None
        self.has_optimistic = False
        self.loaded = True
        self.stale = False


class QueryCache:
    """
    Local read cache with an optimistic layer on top of confirmed data.

    Each entry holds the last confirmed (fetched) value and, while writes are
    in flight, an optimistic value patched locally. Reads see the optimistic
    value when there is one. Confirmation or invalidation drops the
    optimistic layer; the two are never merged.

    Invalidation matches by key prefix: invalidating ``("programs",)`` also
    marks ``("programs", "coach-1")`` stale. Entries registered with a
    fetcher are refetched right away, others on their next ``fetch``.
    """

    def __init__(self) -> None:
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._lock = threading.RLock()
        self._listeners: list[Callable[[QueryKey], None]] = []

    def _entry(self, key: QueryKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = CacheEntry()
        return entry

    def keys(self) -> list[QueryKey]:
        with self._lock:
            return list(self._entries)

    def set_confirmed(self, key: Any, data: Any) -> None:
        key = normalize_query_key(key)
        with self._lock:
            self._entry(key).confirm(data)

    def fetch(self, key: Any, fetcher: Callable[[], Any]) -> Any:
        """Return the cached view of ``key``, fetching when missing or stale."""
        key = normalize_query_key(key)
        with self._lock:
            entry = self._entry(key)
            entry.fetcher = fetcher
            if (entry.loaded or entry.has_optimistic) and not entry.stale:
                return entry.value
        data = fetcher()
        with self._lock:
            entry.confirm(data)
            return entry.value

    def get(self, key: Any, default: Any = None) -> Any:
        key = normalize_query_key(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if not (entry.stale and entry.fetcher):
                return entry.value
            fetcher = entry.fetcher
        return self.fetch(key, fetcher)

    def state(self, key: Any) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(normalize_query_key(key))
            return entry.state if entry else None

    def is_stale(self, key: Any) -> bool:
        with self._lock:
            entry = self._entries.get(normalize_query_key(key))
            return bool(entry and entry.stale)

    def apply_optimistic(self, key: Any, update: Callable[[Any], Any]) -> Any:
        """Patch the current view of ``key`` with ``update`` and return the new view."""
        key = normalize_query_key(key)
        with self._lock:
            entry = self._entry(key)
            entry.optimistic = update(entry.value)
            entry.has_optimistic = True
            return entry.optimistic

    def discard_optimistic(self, key: Any) -> None:
        with self._lock:
            entry = self._entries.get(normalize_query_key(key))
            if entry is None:
                return
            entry.optimistic = None
            entry.has_optimistic = False

    def invalidate(self, key: Any) -> int:
        """
        Mark every entry under ``key`` stale and refetch the ones that can be.

        Subscribers are notified once per call, whether or not anything was
        cached under the key. Returns the number of matching entries.
        """
        prefix = normalize_query_key(key)
        with self._lock:
            matched = [(k, e) for k, e in self._entries.items() if _matches(prefix, k)]
            for _, entry in matched:
                entry.stale = True
                entry.optimistic = None
                entry.has_optimistic = False
            listeners = list(self._listeners)

        for k, entry in matched:
            if entry.fetcher is None:
                continue
            try:
                data = entry.fetcher()
            except Exception:
                # Entry stays stale; the next read retries the fetch.
                logger.exception("Refetch of %s failed after invalidation", k)
                continue
            with self._lock:
                entry.confirm(data)

        for listener in listeners:
            listener(prefix)
        return len(matched)

    def invalidate_many(self, keys: Iterable[Any]) -> None:
        for key in keys:
            self.invalidate(key)

    def subscribe(self, listener: Callable[[QueryKey], None]) -> Callable[[], None]:
        """Call ``listener(key)`` on every invalidation. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
