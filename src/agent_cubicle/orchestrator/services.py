"""Caller-facing facade over the instance manager, scheduler and notification broker."""

from __future__ import annotations

import logging
import threading
from typing import Any

from agent_cubicle.config import Settings
from agent_cubicle.orchestrator.errors import InstanceNotFoundError
from agent_cubicle.orchestrator.events import EventBus
from agent_cubicle.orchestrator.instances import InstanceManager
from agent_cubicle.orchestrator.models import (
    AgentTask,
    InstanceStats,
    InstanceView,
    Notification,
    QueueStats,
    TaskStatus,
    UserResponse,
)
from agent_cubicle.orchestrator.notifications import NotificationBroker
from agent_cubicle.orchestrator.process import Spawner, spawn_process
from agent_cubicle.orchestrator.providers import Provider, ProviderRegistry
from agent_cubicle.orchestrator.scheduler import SchedulerRunSummary, TaskScheduler
from agent_cubicle.store import open_store
from agent_cubicle.store.base import CONTROL_QUEUE_KEY, DurableStore, StoreUnavailableError
from agent_cubicle.store.common import dumps, loads

logger = logging.getLogger(__name__)


class OrchestratorService:
    """Wires the orchestrator components around one store and one event bus.

    A service that is serving (``start`` or ``serve``) owns the agent
    processes. Any other service on the same store acts as a client: replies
    and cancellations it cannot apply locally are handed to the serving
    process through the control queue.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: DurableStore,
        providers: ProviderRegistry | None = None,
        spawner: Spawner = spawn_process,
    ) -> None:
        self.settings = settings
        self.store = store
        self.bus = EventBus()
        self.provider_registry = providers or ProviderRegistry.with_defaults(
            default_provider=settings.default_provider,
            providers_file=settings.providers_file,
        )
        self.instances = InstanceManager(
            store=store,
            providers=self.provider_registry,
            bus=self.bus,
            settings=settings.instances,
            spawner=spawner,
        )
        self.scheduler = TaskScheduler(
            store=store,
            instances=self.instances,
            providers=self.provider_registry,
            bus=self.bus,
            settings=settings.scheduler,
            store_backoff_seconds=settings.store.backoff_seconds,
        )
        self.notifications = NotificationBroker(
            store=store,
            bus=self.bus,
            settings=settings.notifications,
            task_resolver=self.scheduler.get_processing_task,
        )
        self._serving = False
        self._relay_stop = threading.Event()
        self._relay_thread: threading.Thread | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        spawner: Spawner = spawn_process,
    ) -> OrchestratorService:
        settings.validate()
        return cls(settings=settings, store=open_store(settings.store.url), spawner=spawner)

    # -- lifecycle ------------------------------------------------------------------

    def start(self) -> None:
        """Serve in background threads: consumer loop, idle sweep and control relay."""

        self._serving = True
        self.instances.start_cleanup()
        self._start_relay()
        self.scheduler.start()

    def serve(self, *, max_tasks: int | None = None) -> SchedulerRunSummary:
        """Serve in the foreground until SIGINT/SIGTERM or ``max_tasks`` were admitted."""

        self._serving = True
        self.instances.start_cleanup()
        self._start_relay()
        self.scheduler.recover_orphaned_tasks()
        summary = self.scheduler.run_loop(max_tasks=max_tasks)
        if not self.scheduler.wait_idle(self.settings.scheduler.graceful_shutdown_seconds):
            logger.warning("Shutting down with tasks still in flight")
        return summary

    def close(self) -> None:
        self._relay_stop.set()
        if self._relay_thread is not None:
            self._relay_thread.join(timeout=5)
            self._relay_thread = None
        self.scheduler.close()
        self.notifications.close()
        self.instances.close()
        self.store.close()
        self._serving = False

    def __enter__(self) -> OrchestratorService:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # -- tasks ------------------------------------------------------------------------

    def queue_task(  # noqa: PLR0913
        self,
        user_id: str,
        session_id: str,
        command: str,
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentTask:
        return self.scheduler.queue_task(user_id, session_id, command, provider, metadata)

    def get_task(self, task_id: str) -> AgentTask | None:
        return self.scheduler.get_task(task_id)

    def get_user_tasks(self, user_id: str, limit: int = 10) -> list[AgentTask]:
        return self.scheduler.get_user_tasks(user_id, limit)

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a queued or processing task.

        A client service cannot stop a task another process is running; it
        hands the request to the serving process and returns True.
        """

        if self.scheduler.cancel_task(task_id):
            return True
        if self._serving:
            return False
        task = self.scheduler.get_task(task_id)
        if task is None or task.status != TaskStatus.PROCESSING:
            return False
        self.store.push(CONTROL_QUEUE_KEY, dumps({"kind": "cancel", "task_id": task_id}))
        logger.info("Cancellation of task %s handed to the serving process", task_id)
        return True

    def get_queue_stats(self) -> QueueStats:
        return self.scheduler.get_queue_stats()

    # -- instances -----------------------------------------------------------------------

    def create_instance(self, user_id: str, provider: str | None = None) -> InstanceView:
        return self.instances.create_instance(user_id, provider)

    def get_user_instances(self, user_id: str) -> list[InstanceView]:
        return self.instances.get_user_instances(user_id)

    def stop_instance(self, instance_id: str, user_id: str | None = None) -> None:
        if user_id is not None:
            instance = self.instances.get_instance(instance_id)
            if instance is not None and instance.user_id != user_id:
                raise InstanceNotFoundError(f"Instance not found: {instance_id}")
        self.instances.stop_instance(instance_id)

    def get_instance_stats(self) -> InstanceStats:
        return self.instances.get_instance_stats()

    def providers(self) -> list[Provider]:
        return [
            provider
            for name in self.provider_registry.available_providers()
            if (provider := self.provider_registry.get(name)) is not None
        ]

    # -- notifications ---------------------------------------------------------------------

    def get_notifications(self, user_id: str, limit: int = 10) -> list[Notification]:
        return self.notifications.get_user_notifications(user_id, limit)

    def respond_to_notification(
        self,
        notification_id: str,
        user_id: str,
        response: str,
    ) -> UserResponse:
        user_response = self.notifications.handle_user_response(notification_id, user_id, response)
        if not self._serving:
            self.store.push(
                CONTROL_QUEUE_KEY,
                dumps({"kind": "response", "notification_id": notification_id}),
            )
        return user_response

    def mark_as_read(self, notification_id: str, user_id: str) -> None:
        self.notifications.mark_as_read(notification_id, user_id)

    # -- control relay ----------------------------------------------------------------------

    def _start_relay(self) -> None:
        if self._relay_thread is not None:
            return
        self._relay_stop.clear()
        self._relay_thread = threading.Thread(
            target=self._relay_loop,
            daemon=True,
            name="agent-control-relay",
        )
        self._relay_thread.start()

    def _relay_loop(self) -> None:
        poll = self.settings.scheduler.queue_poll_seconds
        while not self._relay_stop.is_set():
            try:
                raw = self.store.blocking_pop(CONTROL_QUEUE_KEY, poll)
            except StoreUnavailableError as error:
                logger.warning("Control queue unavailable: %s", error)
                self._relay_stop.wait(self.settings.store.backoff_seconds)
                continue
            if raw is None:
                continue
            try:
                self.handle_control_message(loads(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Dropping malformed control message: %.200s", raw)
            except Exception:
                logger.exception("Control message handling failed")

    def handle_control_message(self, message: dict[str, Any]) -> None:
        kind = message["kind"]
        if kind == "cancel":
            task_id = str(message["task_id"])
            if not self.scheduler.cancel_task(task_id):
                logger.info("Relayed cancellation of task %s had no effect", task_id)
        elif kind == "response":
            self.notifications.accept_relayed_response(str(message["notification_id"]))
        else:
            raise ValueError(f"Unknown control message kind: {kind!r}")
