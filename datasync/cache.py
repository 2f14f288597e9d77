"""Key-value store with expiry and lists, used for locks, job queues and progress."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import timedelta
from typing import Callable, Deque, Dict, Optional, Tuple, Union

Ttl = Union[float, int, timedelta, None]


def _as_text(value: object) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def _seconds(ttl: Ttl) -> Optional[float]:
    if ttl is None:
        return None
    seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
    return seconds if seconds > 0 else None


class Cache(ABC):
    """Operations the service needs from its shared store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value at ``key``, or None when absent or expired."""

    @abstractmethod
    def set(self, key: str, value: object, ttl: Ttl = None) -> None:
        """Store ``value``; a missing or non-positive ``ttl`` never expires."""

    @abstractmethod
    def set_nx(self, key: str, value: object, ttl: Ttl = None) -> bool:
        """Store ``value`` only if ``key`` is absent; return whether it was stored."""

    @abstractmethod
    def delete(self, *args: str) -> int:
        """Remove the given keys and return how many existed."""

    @abstractmethod
    def lpush(self, key: str, value: object) -> int:
        """Prepend ``value`` to the list at ``key`` and return the list's length."""

    @abstractmethod
    def rpop(self, key: str) -> Optional[str]:
        """Remove and return the last element of the list at ``key``, or None."""


class MemoryCache(Cache):
    """A thread-safe in-process cache."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lists: Dict[str, Deque[str]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires is not None and self._clock() >= expires:
            del self._values[key]
            return None
        return value

    def _store(self, key: str, value: object, ttl: Ttl) -> None:
        seconds = _seconds(ttl)
        expires = None if seconds is None else self._clock() + seconds
        self._lists.pop(key, None)
        self._values[key] = (_as_text(value), expires)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: object, ttl: Ttl = None) -> None:
        with self._lock:
            self._store(key, value, ttl)

    def set_nx(self, key: str, value: object, ttl: Ttl = None) -> bool:
        with self._lock:
            if self._live(key) is not None or key in self._lists:
                return False
            self._store(key, value, ttl)
            return True

    def delete(self, *args: str) -> int:
        removed = 0
        with self._lock:
            for key in args:
                existed = self._live(key) is not None
                self._values.pop(key, None)
                if self._lists.pop(key, None) is not None:
                    existed = True
                removed += existed
        return removed

    def lpush(self, key: str, value: object) -> int:
        with self._lock:
            if self._live(key) is not None:
                raise TypeError(f"key {key!r} holds a plain value, not a list")
            items = self._lists.setdefault(key, deque())
            items.appendleft(_as_text(value))
            return len(items)

    def rpop(self, key: str) -> Optional[str]:
        with self._lock:
            items = self._lists.get(key)
            if not items:
                return None
            value = items.pop()
            if not items:
                del self._lists[key]
            return value