"""In-process durable store used by tests and single-process demos."""

from __future__ import annotations

import fnmatch
import threading
import time
from collections import deque

from agent_cubicle.store.base import normalize_range


class InMemoryStore:
    """Thread-safe store with TTL records and condition-driven blocking pop."""

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, float | None]] = {}
        self._lists: dict[str, deque[str]] = {}
        self._condition = threading.Condition()

    def connect(self) -> None:
        return None

    def close(self) -> None:
        with self._condition:
            self._condition.notify_all()

    def push(self, queue_key: str, item: str) -> None:
        self.list_push(queue_key, item)

    def blocking_pop(self, queue_key: str, timeout: float) -> str | None:
        deadline = self._clock() + max(0.0, timeout)
        with self._condition:
            while True:
                items = self._lists.get(queue_key)
                if items:
                    return items.popleft()
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                self._condition.wait(timeout=remaining)

    def queue_length(self, queue_key: str) -> int:
        with self._condition:
            return len(self._lists.get(queue_key, ()))

    def get(self, key: str) -> str | None:
        with self._condition:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._values[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._condition:
            self._values[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._condition:
            self._values.pop(key, None)
            self._lists.pop(key, None)

    def keys(self, pattern: str) -> list[str]:
        now = self._clock()
        with self._condition:
            live = [
                key
                for key, (_, expires_at) in self._values.items()
                if expires_at is None or expires_at > now
            ]
            live.extend(key for key, items in self._lists.items() if items)
        return sorted(key for key in live if fnmatch.fnmatchcase(key, pattern))

    def list_push(self, key: str, value: str) -> None:
        with self._condition:
            self._lists.setdefault(key, deque()).append(value)
            self._condition.notify_all()

    def list_range(self, key: str, start: int, stop: int) -> list[str]:
        with self._condition:
            items = list(self._lists.get(key, ()))
        begin, end = normalize_range(len(items), start, stop)
        return items[begin:end]

    def list_remove(self, key: str, value: str) -> int:
        with self._condition:
            items = self._lists.get(key)
            if not items:
                return 0
            try:
                items.remove(value)
            except ValueError:
                return 0
            return 1
