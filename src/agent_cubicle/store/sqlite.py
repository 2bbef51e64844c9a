"""SQLite-backed durable store built on SQLModel."""

from __future__ import annotations

import fnmatch
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import event, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool
from sqlmodel import Session, col, create_engine, select

from agent_cubicle.store.alembic_runner import upgrade_head
from agent_cubicle.store.base import StoreUnavailableError, normalize_range
from agent_cubicle.store.sqlmodel_models import StoreListItem, StoreRecord


class SqliteStore:
    """Durable store facade backed by SQLModel + SQLite.

    Queue pops are claimed with a conditional delete and retried when another
    consumer won the row, so several processes may share one database file.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.poll_interval_seconds = poll_interval_seconds
        self._engine: Engine | None = None

    def connect(self) -> None:
        if self._engine is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._engine = build_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.busy_timeout_ms,
        )

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def init_schema(self) -> None:
        """Run schema migrations."""

        with self._translate_errors():
            upgrade_head(self.db_path)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.connect()
        assert self._engine is not None
        return self._engine

    def push(self, queue_key: str, item: str) -> None:
        self.list_push(queue_key, item)

    def blocking_pop(self, queue_key: str, timeout: float) -> str | None:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            item = self._pop_head(queue_key)
            if item is not None:
                return item
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_seconds, remaining))

    def queue_length(self, queue_key: str) -> int:
        with self._translate_errors(), Session(self.engine) as session:
            return session.exec(
                select(func.count()).select_from(StoreListItem).where(
                    StoreListItem.list_key == queue_key,
                ),
            ).one()

    def get(self, key: str) -> str | None:
        now = time.time()
        with self._translate_errors(), Session(self.engine) as session:
            row = session.get(StoreRecord, key)
            if row is None:
                return None
            if row.expires_at is not None and row.expires_at <= now:
                session.delete(row)
                session.commit()
                return None
            return row.value

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        with self._translate_errors(), Session(self.engine) as session:
            row = session.get(StoreRecord, key)
            if row is None:
                row = StoreRecord(key=key, value=value, expires_at=expires_at)
            else:
                row.value = value
                row.expires_at = expires_at
            session.add(row)
            session.commit()

    def delete(self, key: str) -> None:
        with self._translate_errors(), Session(self.engine) as session:
            session.exec(sa_delete(StoreRecord).where(col(StoreRecord.key) == key))
            session.exec(sa_delete(StoreListItem).where(col(StoreListItem.list_key) == key))
            session.commit()

    def keys(self, pattern: str) -> list[str]:
        now = time.time()
        with self._translate_errors(), Session(self.engine) as session:
            session.exec(
                sa_delete(StoreRecord).where(
                    col(StoreRecord.expires_at).is_not(None),
                    col(StoreRecord.expires_at) <= now,
                ),
            )
            session.commit()
            record_keys = session.exec(select(StoreRecord.key)).all()
            list_keys = session.exec(select(StoreListItem.list_key).distinct()).all()
        candidates = set(record_keys) | set(list_keys)
        return sorted(key for key in candidates if fnmatch.fnmatchcase(key, pattern))

    def list_push(self, key: str, value: str) -> None:
        with self._translate_errors(), Session(self.engine) as session:
            session.add(StoreListItem(list_key=key, value=value, created_at=time.time()))
            session.commit()

    def list_range(self, key: str, start: int, stop: int) -> list[str]:
        with self._translate_errors(), Session(self.engine) as session:
            length = session.exec(
                select(func.count()).select_from(StoreListItem).where(
                    StoreListItem.list_key == key,
                ),
            ).one()
            begin, end = normalize_range(length, start, stop)
            if end <= begin:
                return []
            rows = session.exec(
                select(StoreListItem.value)
                .where(StoreListItem.list_key == key)
                .order_by(col(StoreListItem.item_id).asc())
                .offset(begin)
                .limit(end - begin),
            ).all()
        return list(rows)

    def list_remove(self, key: str, value: str) -> int:
        with self._translate_errors(), Session(self.engine) as session:
            row = session.exec(
                select(StoreListItem)
                .where(StoreListItem.list_key == key, StoreListItem.value == value)
                .order_by(col(StoreListItem.item_id).asc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return 0
            session.delete(row)
            session.commit()
            return 1

    def _pop_head(self, queue_key: str) -> str | None:
        while True:
            with self._translate_errors(), Session(self.engine) as session:
                candidate = session.exec(
                    select(StoreListItem)
                    .where(StoreListItem.list_key == queue_key)
                    .order_by(col(StoreListItem.item_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None
                value = candidate.value
                result = session.exec(
                    sa_delete(StoreListItem).where(
                        col(StoreListItem.item_id) == candidate.item_id,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return value

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except OperationalError as error:
            raise StoreUnavailableError(f"SQLite store unavailable: {error}") from error


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
