"""Domain models for agent instances, tasks and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_cubicle.store.common import from_iso, optional_from_iso, optional_iso


class InstanceStatus(str, Enum):
    """Lifecycle states of a supervised agent process."""

    STARTING = "starting"
    READY = "ready"
    BUSY = "busy"
    ERROR = "error"
    STOPPED = "stopped"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class MessageChannel(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class NotificationType(str, Enum):
    AI_WAITING = "ai_waiting"
    TASK_COMPLETE = "task_complete"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True, slots=True)
class AgentMessage:
    """One output chunk from an instance, in arrival order."""

    instance_id: str
    channel: MessageChannel
    content: str
    timestamp: datetime
    task_id: str | None = None
    provider: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "channel": self.channel.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "task_id": self.task_id,
            "provider": self.provider,
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> AgentMessage:
        return cls(
            instance_id=raw["instance_id"],
            channel=MessageChannel(raw["channel"]),
            content=raw["content"],
            timestamp=from_iso(raw["timestamp"]),
            task_id=raw.get("task_id"),
            provider=raw.get("provider"),
        )


@dataclass(frozen=True, slots=True)
class InstanceView:
    """Read-only snapshot of a registered instance."""

    instance_id: str
    user_id: str
    provider: str
    status: InstanceStatus
    created_at: datetime
    last_activity_at: datetime
    current_task_id: str | None
    workdir: str
    pid: int | None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.instance_id,
            "user_id": self.user_id,
            "provider": self.provider,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "current_task_id": self.current_task_id,
        }


@dataclass(slots=True)
class InstanceStats:
    total: int
    by_status: dict[str, int]
    by_user: dict[str, int]
    by_provider: dict[str, int]


@dataclass(slots=True)
class AgentTask:
    """One queued command and its end-to-end execution record."""

    task_id: str
    user_id: str
    session_id: str
    provider: str
    command: str
    status: TaskStatus
    created_at: datetime
    instance_id: str | None = None
    worker_id: str | None = None
    result: str | None = None
    error: str | None = None
    error_code: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    messages: list[AgentMessage] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def to_record(self, *, include_messages: bool = False) -> dict[str, Any]:
        """Serialize the task.

        While a task runs its messages live in their own store list; terminal
        records carry the log inline so it expires together with the record.
        """

        record: dict[str, Any] = {
            "id": self.task_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "provider": self.provider,
            "command": self.command,
            "status": self.status.value,
            "instance_id": self.instance_id,
            "worker_id": self.worker_id,
            "result": self.result,
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat(),
            "started_at": optional_iso(self.started_at),
            "completed_at": optional_iso(self.completed_at),
            "metadata": self.metadata,
        }
        if include_messages:
            record["messages"] = [message.to_record() for message in self.messages]
        return record

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> AgentTask:
        return cls(
            task_id=raw["id"],
            user_id=raw["user_id"],
            session_id=raw["session_id"],
            provider=raw["provider"],
            command=raw["command"],
            status=TaskStatus(raw["status"]),
            created_at=from_iso(raw["created_at"]),
            instance_id=raw.get("instance_id"),
            worker_id=raw.get("worker_id"),
            result=raw.get("result"),
            error=raw.get("error"),
            error_code=raw.get("error_code"),
            started_at=optional_from_iso(raw.get("started_at")),
            completed_at=optional_from_iso(raw.get("completed_at")),
            messages=[AgentMessage.from_record(item) for item in raw.get("messages") or ()],
            metadata=dict(raw.get("metadata") or {}),
        )


@dataclass(slots=True)
class QueueStats:
    queue_length: int
    processing: int
    completed: int
    failed: int
    by_provider: dict[str, int]


@dataclass(slots=True)
class Notification:
    """Human-addressed record, optionally expecting a reply."""

    notification_id: str
    user_id: str
    task_id: str
    type: NotificationType
    title: str
    body: str
    requires_response: bool
    created_at: datetime
    expires_at: datetime
    instance_id: str | None = None
    last_output: str | None = None
    response_options: list[str] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "type": self.type.value,
            "title": self.title,
            "body": self.body,
            "data": {
                "instance_id": self.instance_id,
                "last_output": self.last_output,
                "requires_response": self.requires_response,
                "response_options": self.response_options,
                "metadata": self.metadata,
            },
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> Notification:
        data = raw.get("data") or {}
        options = data.get("response_options")
        return cls(
            notification_id=raw["id"],
            user_id=raw["user_id"],
            task_id=raw["task_id"],
            type=NotificationType(raw["type"]),
            title=raw["title"],
            body=raw["body"],
            requires_response=bool(data.get("requires_response")),
            created_at=from_iso(raw["created_at"]),
            expires_at=from_iso(raw["expires_at"]),
            instance_id=data.get("instance_id"),
            last_output=data.get("last_output"),
            response_options=list(options) if options is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True, slots=True)
class UserResponse:
    """Human reply linked back to the waiting instance."""

    notification_id: str
    user_id: str
    task_id: str
    instance_id: str
    response: str
    responded_at: datetime

    def to_record(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "task_id": self.task_id,
            "instance_id": self.instance_id,
            "response": self.response,
            "responded_at": self.responded_at.isoformat(),
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> UserResponse:
        return cls(
            notification_id=raw["notification_id"],
            user_id=raw["user_id"],
            task_id=raw["task_id"],
            instance_id=raw["instance_id"],
            response=raw["response"],
            responded_at=from_iso(raw["responded_at"]),
        )
