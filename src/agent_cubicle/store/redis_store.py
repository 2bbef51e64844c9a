"""Redis-backed durable store."""

from __future__ import annotations

import math
from collections.abc import Iterator
from contextlib import contextmanager

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from agent_cubicle.store.base import StoreUnavailableError


class RedisStore:
    """Durable store on top of redis-py with native list and TTL primitives."""

    def __init__(self, url: str, *, client: redis.Redis | None = None) -> None:
        self.url = url
        self._client = client

    def connect(self) -> None:
        if self._client is None:
            self._client = redis.Redis.from_url(self.url, decode_responses=True)
        with self._translate_errors():
            self._client.ping()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client

    def push(self, queue_key: str, item: str) -> None:
        with self._translate_errors():
            self.client.rpush(queue_key, item)

    def blocking_pop(self, queue_key: str, timeout: float) -> str | None:
        # BLPOP treats 0 as "block forever"; keep the loop responsive instead.
        seconds = max(1, math.ceil(timeout))
        with self._translate_errors():
            popped = self.client.blpop([queue_key], timeout=seconds)
        if popped is None:
            return None
        _, value = popped
        return value

    def queue_length(self, queue_key: str) -> int:
        with self._translate_errors():
            return int(self.client.llen(queue_key))

    def get(self, key: str) -> str | None:
        with self._translate_errors():
            return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        with self._translate_errors():
            self.client.set(key, value, ex=ttl_seconds or None)

    def delete(self, key: str) -> None:
        with self._translate_errors():
            self.client.delete(key)

    def keys(self, pattern: str) -> list[str]:
        with self._translate_errors():
            return sorted(self.client.scan_iter(match=pattern))

    def list_push(self, key: str, value: str) -> None:
        with self._translate_errors():
            self.client.rpush(key, value)

    def list_range(self, key: str, start: int, stop: int) -> list[str]:
        with self._translate_errors():
            return list(self.client.lrange(key, start, stop))

    def list_remove(self, key: str, value: str) -> int:
        with self._translate_errors():
            return int(self.client.lrem(key, 1, value))

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as error:
            raise StoreUnavailableError(f"Redis store unavailable: {error}") from error
