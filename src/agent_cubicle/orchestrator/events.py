"""Typed events and the in-process bus that carries them between components."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from agent_cubicle.orchestrator.models import AgentMessage, AgentTask, Notification, UserResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InstanceMessage:
    message: AgentMessage


@dataclass(frozen=True, slots=True)
class InstanceReady:
    instance_id: str


@dataclass(frozen=True, slots=True)
class InstanceWaiting:
    """No output for the silence threshold while the instance was busy."""

    instance_id: str
    task_id: str | None
    last_output: str
    wait_seconds: float


@dataclass(frozen=True, slots=True)
class InstanceFailed:
    instance_id: str
    task_id: str | None
    error: str


@dataclass(frozen=True, slots=True)
class InstanceStopped:
    instance_id: str
    task_id: str | None
    exit_code: int | None


@dataclass(frozen=True, slots=True)
class InstanceResponded:
    instance_id: str
    task_id: str | None
    response: str


InstanceEvent = (
    InstanceMessage
    | InstanceReady
    | InstanceWaiting
    | InstanceFailed
    | InstanceStopped
    | InstanceResponded
)


@dataclass(frozen=True, slots=True)
class TaskQueued:
    task: AgentTask


@dataclass(frozen=True, slots=True)
class TaskStarted:
    task: AgentTask


@dataclass(frozen=True, slots=True)
class TaskMessage:
    task_id: str
    message: AgentMessage


@dataclass(frozen=True, slots=True)
class TaskWaiting:
    task_id: str
    instance_id: str
    last_output: str


@dataclass(frozen=True, slots=True)
class TaskResponded:
    task_id: str
    response: str


@dataclass(frozen=True, slots=True)
class TaskCompleted:
    task: AgentTask


TaskEvent = TaskQueued | TaskStarted | TaskMessage | TaskWaiting | TaskResponded | TaskCompleted


@dataclass(frozen=True, slots=True)
class NotificationCreated:
    notification: Notification


@dataclass(frozen=True, slots=True)
class ResponseReceived:
    response: UserResponse


@dataclass(frozen=True, slots=True)
class ResponseTimedOut:
    notification_id: str
    task_id: str
    instance_id: str | None
    code: str


NotificationEvent = NotificationCreated | ResponseReceived | ResponseTimedOut

EventT = TypeVar("EventT")


class EventBus:
    """Synchronous publish/subscribe keyed by event class.

    Handlers run on the publishing thread. A failing handler is logged and
    does not stop delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[type, list[Callable[[Any], None]]] = {}

    def subscribe(
        self,
        event_type: type[EventT],
        handler: Callable[[EventT], None],
    ) -> Callable[[], None]:
        """Register handler and return a callable that removes it."""

        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: object) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)
