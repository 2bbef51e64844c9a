"""Durable store implementations."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse

from agent_cubicle.store.base import DurableStore, StoreUnavailableError
from agent_cubicle.store.memory import InMemoryStore
from agent_cubicle.store.redis_store import RedisStore
from agent_cubicle.store.sqlite import SqliteStore

__all__ = [
    "DurableStore",
    "InMemoryStore",
    "RedisStore",
    "SqliteStore",
    "StoreUnavailableError",
    "open_store",
]


def open_store(url: str) -> DurableStore:
    """Build and connect a store selected by URL scheme.

    Supported: ``memory://``, ``sqlite:///path/to.db``, ``redis://host:port/db``
    (and ``rediss://``).
    """

    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme == "memory":
        store: DurableStore = InMemoryStore()
        store.connect()
        return store
    if scheme == "sqlite":
        raw_path = url[len("sqlite:///") :] if url.startswith("sqlite:///") else ""
        if not raw_path:
            raise ValueError(f"Invalid SQLite store URL: {url!r}. Use sqlite:///<path>.")
        sqlite_store = SqliteStore(Path(raw_path))
        sqlite_store.connect()
        sqlite_store.init_schema()
        return sqlite_store
    if scheme in {"redis", "rediss"}:
        redis_store = RedisStore(url)
        redis_store.connect()
        return redis_store
    raise ValueError(
        f"Unsupported store URL: {url!r}. Use memory://, sqlite:///<path> or redis://<host>.",
    )
