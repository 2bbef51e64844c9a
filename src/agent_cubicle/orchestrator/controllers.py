"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_cubicle.config import Settings
from agent_cubicle.orchestrator.models import AgentTask, Notification
from agent_cubicle.orchestrator.services import OrchestratorService


@dataclass(slots=True)
class ProvidersCommand:
    """CLI input for provider listing."""

    store_url: str | None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the foreground queue consumer."""

    store_url: str | None
    max_tasks: int | None = None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for queueing one agent command."""

    store_url: str | None
    user_id: str
    session_id: str
    command: str
    provider: str | None


@dataclass(slots=True)
class InspectTaskCommand:
    store_url: str | None
    task_id: str


@dataclass(slots=True)
class ListTasksCommand:
    store_url: str | None
    user_id: str
    limit: int


@dataclass(slots=True)
class StatsCommand:
    store_url: str | None


@dataclass(slots=True)
class NotificationsCommand:
    store_url: str | None
    user_id: str
    limit: int


@dataclass(slots=True)
class RespondCommand:
    """CLI input for answering a waiting agent."""

    store_url: str | None
    notification_id: str
    user_id: str
    response: str


@dataclass(slots=True)
class ReadNotificationCommand:
    store_url: str | None
    notification_id: str
    user_id: str


class OrchestratorCliController:
    """Coordinates queue, serve, and inspection CLI operations."""

    def providers(self, command: ProvidersCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            providers = service.providers()
            default = service.provider_registry.default_provider
        lines = [f"Providers: {len(providers)}"]
        for provider in providers:
            marker = " (default)" if provider.name == default else ""
            lines.append(
                f"  {provider.name}{marker} command={provider.command} "
                f"args={' '.join(provider.args) or '-'}",
            )
        return lines

    def serve(self, command: ServeCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            summary = service.serve(max_tasks=command.max_tasks)
            stats = service.get_queue_stats()
        return [
            "Serve summary: "
            f"dequeued={summary.dequeued} idle_polls={summary.idle_polls} "
            f"store_errors={summary.store_errors}",
            f"Queue: length={stats.queue_length} completed={stats.completed} "
            f"failed={stats.failed}",
        ]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            task = service.queue_task(
                command.user_id,
                command.session_id,
                command.command,
                command.provider,
            )
        return [
            "Task queued: "
            f"task_id={task.task_id} provider={task.provider} status={task.status.value}",
        ]

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            task = service.get_task(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"User: {task.user_id} session={task.session_id}",
            f"Provider: {task.provider}",
            f"Command: {task.command}",
            f"Status: {task.status.value}",
            f"Instance: {task.instance_id or '-'}",
            f"Error: {_task_error(task)}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Messages: {len(task.messages)}",
        ]
        for message in task.messages:
            lines.append(
                f"  {message.timestamp.isoformat()} {message.channel.value} "
                f"{message.content.rstrip()}",
            )
        if task.result:
            lines.append("Result:")
            lines.extend(f"  {line}" for line in task.result.splitlines())
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            tasks = service.get_user_tasks(command.user_id, command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} provider={task.provider} status={task.status.value} "
                f"created_at={task.created_at.isoformat()} error={_task_error(task)}",
            )
        return lines

    def cancel_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            cancelled = service.cancel_task(command.task_id)
        if not cancelled:
            return [f"Task not cancellable: {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            stats = service.get_queue_stats()
        lines = [
            f"Queue length: {stats.queue_length}",
            f"Processing (this process): {stats.processing}",
            f"Completed: {stats.completed}",
            f"Failed: {stats.failed}",
        ]
        for provider, count in sorted(stats.by_provider.items()):
            lines.append(f"  provider={provider} tasks={count}")
        return lines

    def notifications(self, command: NotificationsCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            notifications = service.get_notifications(command.user_id, command.limit)

        lines = [f"Notifications: {len(notifications)}"]
        for notification in notifications:
            lines.extend(_notification_lines(notification))
        return lines

    def respond(self, command: RespondCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            response = service.respond_to_notification(
                command.notification_id,
                command.user_id,
                command.response,
            )
        return [
            f"Response recorded: notification_id={response.notification_id} "
            f"task_id={response.task_id}",
        ]

    def mark_as_read(self, command: ReadNotificationCommand) -> list[str]:
        settings = Settings.from_env(store_url=command.store_url)
        with _service(settings) as service:
            service.mark_as_read(command.notification_id, command.user_id)
        return [f"Notification marked as read: {command.notification_id}"]


def _task_error(task: AgentTask) -> str:
    if task.error is None:
        return "-"
    return f"{task.error} ({task.error_code or 'unknown'})"


def _notification_lines(notification: Notification) -> list[str]:
    lines = [
        f"  {notification.notification_id} type={notification.type.value} "
        f"task_id={notification.task_id} expires_at={notification.expires_at.isoformat()}",
        f"    {notification.title}: {notification.body}",
    ]
    if notification.requires_response:
        options = ", ".join(notification.response_options or []) or "free text"
        lines.append(f"    reply expected ({options})")
    return lines


@contextmanager
def _service(settings: Settings) -> Iterator[OrchestratorService]:
    service = OrchestratorService.from_settings(settings)
    try:
        yield service
    finally:
        service.close()
