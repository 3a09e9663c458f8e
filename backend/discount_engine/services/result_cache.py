# Overview: Process-local, TTL-bounded cache for discount calculation results.

from __future__ import annotations

import copy
import json
import threading
import time
from typing import Any, Callable


KEY_PREFIX = "discount"


def business_prefix(business_id) -> str:
    return f"{KEY_PREFIX}:{business_id}:"


def make_cache_key(business_id, payload: dict) -> str:
    """
    Canonical key: sorted-key JSON of the pricing context, so two contexts
    with the same fields in a different order share a slot.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"{business_prefix(business_id)}{body}"


class ResultCache:
    """Interface the rule engine depends on."""

    def get(self, key: str) -> Any | None:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def invalidate(self, business_id) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class NullResultCache(ResultCache):
    """Never stores anything. Useful for tests and one-off scripts."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any) -> None:
        return None

    def invalidate(self, business_id) -> int:
        return 0

    def clear(self) -> None:
        return None


class InMemoryResultCache(ResultCache):
    """
    Dict-backed cache with per-entry expiry.

    Invalidation is coarse: every key of a business is dropped at once.
    Values are deep-copied in and out so callers can't mutate cached results.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, copy.deepcopy(value))

    def invalidate(self, business_id) -> int:
        prefix = business_prefix(business_id)
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            doomed = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
