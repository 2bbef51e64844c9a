"""Durable store interface consumed by the orchestrator."""

from __future__ import annotations

from typing import Protocol

TASK_QUEUE_KEY = "agent:task:queue"
CONTROL_QUEUE_KEY = "agent:control:queue"


class StoreUnavailableError(RuntimeError):
    """Durable store could not be reached or failed mid-operation."""

    code = "store_unavailable"


def task_key(task_id: str) -> str:
    return f"task:{task_id}"


def task_messages_key(task_id: str) -> str:
    return f"task:messages:{task_id}"


def user_tasks_key(user_id: str) -> str:
    return f"user:{user_id}:tasks"


def instance_key(instance_id: str) -> str:
    return f"agent:instance:{instance_id}"


def notification_key(notification_id: str) -> str:
    return f"notification:{notification_id}"


def user_notifications_key(user_id: str) -> str:
    return f"user:{user_id}:notifications"


def response_key(notification_id: str) -> str:
    return f"response:{notification_id}"


class DurableStore(Protocol):
    """Key/value records with TTL plus list-based queue primitives.

    Values are opaque strings (JSON records in practice). ``push`` appends to
    the tail of a queue and ``blocking_pop`` removes from its head, so the pair
    gives FIFO order. ``list_range`` uses inclusive bounds with negative
    indices counted from the end, like Redis ``LRANGE``.
    """

    def connect(self) -> None:
        """Open underlying connections."""

    def close(self) -> None:
        """Release underlying connections."""

    def push(self, queue_key: str, item: str) -> None: ...

    def blocking_pop(self, queue_key: str, timeout: float) -> str | None: ...

    def queue_length(self, queue_key: str) -> int: ...

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self, pattern: str) -> list[str]: ...

    def list_push(self, key: str, value: str) -> None: ...

    def list_range(self, key: str, start: int, stop: int) -> list[str]: ...

    def list_remove(self, key: str, value: str) -> int: ...


def normalize_range(length: int, start: int, stop: int) -> tuple[int, int]:
    """Translate inclusive Redis-style bounds into a Python slice."""

    if start < 0:
        start = max(0, length + start)
    if stop < 0:
        stop = length + stop
    stop = min(stop, length - 1)
    if start > stop:
        return 0, 0
    return start, stop + 1
