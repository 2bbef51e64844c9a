"""Task scheduler: durable FIFO queue, serial consumer and per-task timeouts."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from agent_cubicle.config import SchedulerSettings
from agent_cubicle.orchestrator.errors import (
    OrchestratorError,
    ProcessError,
    TaskTimeoutError,
    ValidationError,
)
from agent_cubicle.orchestrator.events import (
    EventBus,
    InstanceFailed,
    InstanceMessage,
    InstanceReady,
    InstanceResponded,
    InstanceStopped,
    InstanceWaiting,
    ResponseReceived,
    TaskCompleted,
    TaskMessage,
    TaskQueued,
    TaskResponded,
    TaskStarted,
    TaskWaiting,
)
from agent_cubicle.orchestrator.instances import InstanceManager
from agent_cubicle.orchestrator.models import (
    AgentMessage,
    AgentTask,
    InstanceStatus,
    MessageChannel,
    QueueStats,
    TaskStatus,
)
from agent_cubicle.orchestrator.providers import ProviderRegistry
from agent_cubicle.store.base import (
    TASK_QUEUE_KEY,
    DurableStore,
    StoreUnavailableError,
    task_key,
    task_messages_key,
    user_tasks_key,
)
from agent_cubicle.store.common import dumps, loads, utc_now

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Task cancelled by user"


@dataclass(slots=True)
class _InFlight:
    task: AgentTask
    ready: threading.Event = field(default_factory=threading.Event)
    pending_instance_id: str | None = None
    timer: threading.Timer | None = None


@dataclass(slots=True)
class SchedulerRunSummary:
    """Counters for one consumer loop run."""

    dequeued: int = 0
    idle_polls: int = 0
    store_errors: int = 0


class TaskScheduler:
    """Admits queued tasks into processing in FIFO order, one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: DurableStore,
        instances: InstanceManager,
        providers: ProviderRegistry,
        bus: EventBus,
        settings: SchedulerSettings | None = None,
        store_backoff_seconds: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.instances = instances
        self.providers = providers
        self.bus = bus
        self.settings = settings or SchedulerSettings()
        self.store_backoff_seconds = store_backoff_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._processing: dict[str, _InFlight] = {}
        self._by_instance: dict[str, str] = {}
        self._finishing: set[str] = set()
        self._held_item: str | None = None
        self._unsaved: dict[str, AgentTask] = {}
        self._stop_requested = False
        self._thread: threading.Thread | None = None
        self._store_degraded = False
        self._unsubscribe = [
            bus.subscribe(InstanceReady, self._on_instance_ready),
            bus.subscribe(InstanceMessage, self._on_instance_message),
            bus.subscribe(InstanceWaiting, self._on_instance_waiting),
            bus.subscribe(InstanceResponded, self._on_instance_responded),
            bus.subscribe(InstanceFailed, self._on_instance_failed),
            bus.subscribe(InstanceStopped, self._on_instance_stopped),
            bus.subscribe(ResponseReceived, self._on_response_received),
        ]

    # -- admission --------------------------------------------------------------

    def queue_task(  # noqa: PLR0913
        self,
        user_id: str,
        session_id: str,
        command: str,
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentTask:
        """Persist a queued task and append it to the durable queue.

        Returns as soon as the task is durable; assignment happens in the
        consumer loop.
        """

        if not user_id.strip():
            raise ValidationError("user_id must not be empty.")
        if not command.strip():
            raise ValidationError("command must not be empty.")
        resolved = self.providers.resolve(provider)
        task = AgentTask(
            task_id=str(uuid4()),
            user_id=user_id,
            session_id=session_id,
            provider=resolved.name,
            command=command,
            status=TaskStatus.QUEUED,
            created_at=self._clock(),
            metadata=dict(metadata or {}),
        )
        record = dumps(task.to_record())
        self.store.set(task_key(task.task_id), record, self.settings.task_record_ttl_seconds)
        self.store.list_push(user_tasks_key(user_id), task.task_id)
        self.store.push(TASK_QUEUE_KEY, record)
        logger.info(
            "Task %s queued for user %s (provider=%s)",
            task.task_id,
            user_id,
            task.provider,
        )
        self.bus.publish(TaskQueued(task=task))
        return task

    def run_once(self, timeout: float | None = None) -> bool:
        """Dequeue and admit at most one task. Returns False when the queue was empty."""

        with self._lock:
            raw, self._held_item = self._held_item, None
        if raw is None:
            wait = self.settings.queue_poll_seconds if timeout is None else timeout
            raw = self.store.blocking_pop(TASK_QUEUE_KEY, wait)
            if raw is None:
                return False
        try:
            queued = AgentTask.from_record(loads(raw))
        except (KeyError, TypeError, ValueError):
            logger.warning("Dropping malformed queue item: %.200s", raw)
            return True

        with self._lock:
            try:
                stored = self._unsaved.get(queued.task_id) or self._load_task_record(
                    queued.task_id,
                )
            except StoreUnavailableError:
                # Popped but not admitted: retry this item before the rest of the queue.
                self._held_item = raw
                raise
            if stored is not None and stored.status != TaskStatus.QUEUED:
                logger.info(
                    "Skipping task %s dequeued in status %s",
                    queued.task_id,
                    stored.status.value,
                )
                return True
            task = stored or queued
            task.status = TaskStatus.PROCESSING
            task.started_at = self._clock()
            task.worker_id = self.settings.worker_id
            flight = _InFlight(task=task)
            self._processing[task.task_id] = flight

        self._save_task(task)
        logger.info("Task %s admitted for processing", task.task_id)
        self.bus.publish(TaskStarted(task=self._snapshot(task)))
        self.process_task(flight)
        return True

    def run_loop(self, *, max_tasks: int | None = None) -> SchedulerRunSummary:
        """Consume the queue until a stop is requested or ``max_tasks`` were dequeued."""

        summary = SchedulerRunSummary()
        with self._signal_handlers():
            while not self._stop_requested:
                if max_tasks is not None and summary.dequeued >= max_tasks:
                    break
                try:
                    dequeued = self.run_once()
                except StoreUnavailableError as error:
                    summary.store_errors += 1
                    self._store_degraded = True
                    logger.warning(
                        "Durable store unavailable, retrying in %ss: %s",
                        self.store_backoff_seconds,
                        error,
                    )
                    self._sleep_with_stop(self.store_backoff_seconds)
                    continue
                except Exception:
                    logger.exception("Queue consumer iteration failed")
                    self._sleep_with_stop(self.store_backoff_seconds)
                    continue

                if self._store_degraded:
                    self._store_degraded = False
                    logger.info("Durable store reachable again, reconciling tasks")
                    self._reconcile()
                if dequeued:
                    summary.dequeued += 1
                else:
                    summary.idle_polls += 1
        return summary

    def start(self) -> None:
        """Recover orphans and run the consumer loop in a background thread."""

        if self._thread is not None:
            return
        self.recover_orphaned_tasks()
        self._stop_requested = False
        self._thread = threading.Thread(
            target=self.run_loop,
            daemon=True,
            name="agent-task-consumer",
        )
        self._thread.start()

    def request_stop(self) -> None:
        self._stop_requested = True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_requested = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def wait_idle(self, timeout: float) -> bool:
        """Block until no task is in flight. Returns False if ``timeout`` elapsed first."""

        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                if not self._processing and not self._finishing:
                    return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    def close(self) -> None:
        """Stop consuming and fail whatever is still in flight."""

        self.stop()
        with self._lock:
            remaining = list(self._processing)
        for task_id in remaining:
            self.complete_task(
                task_id,
                TaskStatus.FAILED,
                "Worker shut down before the task finished",
                error_code="orphaned",
            )
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        with self._lock:
            held, self._held_item = self._held_item, None
        if held is not None:
            try:
                self.store.push(TASK_QUEUE_KEY, held)
            except StoreUnavailableError:
                logger.error("Could not return dequeued item to the queue: %.200s", held)
                raise

    # -- processing ----------------------------------------------------------------

    def process_task(self, flight: _InFlight) -> None:
        """Acquire an instance for an admitted task, arm its timeout and send the command."""

        task = flight.task
        try:
            instance_id = self._acquire_instance(flight)
        except OrchestratorError as error:
            logger.warning("Task %s could not acquire an instance: %s", task.task_id, error)
            self.complete_task(task.task_id, TaskStatus.FAILED, str(error), error_code=error.code)
            return
        if instance_id is None:
            return

        with self._lock:
            if task.task_id not in self._processing:
                # Cancelled while the instance was starting.
                return
            task.instance_id = instance_id
            self._by_instance[instance_id] = task.task_id
            flight.timer = threading.Timer(
                self.settings.max_task_duration_seconds,
                self._on_task_timeout,
                args=(task.task_id,),
            )
            flight.timer.daemon = True
            flight.timer.start()

        try:
            self.instances.send_command(instance_id, task.command, task.task_id)
        except OrchestratorError as error:
            self.complete_task(task.task_id, TaskStatus.FAILED, str(error), error_code=error.code)
            return
        with self._lock:
            finished_meanwhile = task.task_id not in self._processing
        if finished_meanwhile:
            # Completion ran before the instance was marked busy and could not release it.
            self.instances.release_instance(instance_id, task.task_id)
            return
        self._save_task(task)
        logger.info("Task %s sent to instance %s", task.task_id, instance_id)

    def complete_task(
        self,
        task_id: str,
        status: TaskStatus,
        error: str | None = None,
        *,
        error_code: str | None = None,
    ) -> bool:
        """Move an in-flight task to a terminal state exactly once.

        Releases the bound instance to ``ready`` if it still serves this task.
        Returns False when the task is not in flight (already terminal or unknown).
        """

        with self._lock:
            flight = self._processing.pop(task_id, None)
            if flight is None:
                return False
            self._finishing.add(task_id)
            if flight.timer is not None:
                flight.timer.cancel()
                flight.timer = None
            flight.ready.set()
            task = flight.task
            instance_id = task.instance_id
            if instance_id is not None and self._by_instance.get(instance_id) == task_id:
                del self._by_instance[instance_id]
            task.status = status
            task.completed_at = self._clock()
            task.error = error
            task.error_code = error_code
            task.result = "".join(
                message.content
                for message in task.messages
                if message.channel == MessageChannel.STDOUT
            )

        try:
            if instance_id is not None:
                self.instances.release_instance(instance_id, task_id)
            self._save_task(task)
            logger.info(
                "Task %s finished as %s%s",
                task_id,
                status.value,
                f" ({error_code}: {error})" if error else "",
            )
            self.bus.publish(TaskCompleted(task=self._snapshot(task)))
        finally:
            with self._lock:
                self._finishing.discard(task_id)
        return True

    def cancel_task(self, task_id: str) -> bool:
        """Fail a processing task, or withdraw a queued one before it is dequeued.

        Terminal and unknown tasks are left untouched and return False.
        """

        with self._lock:
            if task_id not in self._processing:
                task = self._load_task_record(task_id)
                if task is None or task.status != TaskStatus.QUEUED:
                    return False
                task.status = TaskStatus.FAILED
                task.error = CANCELLED_MESSAGE
                task.error_code = "cancelled"
                task.completed_at = self._clock()
                self._save_task(task)
                logger.info("Queued task %s cancelled", task_id)
                cancelled_queued = task
            else:
                cancelled_queued = None

        if cancelled_queued is not None:
            self.bus.publish(TaskCompleted(task=cancelled_queued))
            return True
        return self.complete_task(
            task_id,
            TaskStatus.FAILED,
            CANCELLED_MESSAGE,
            error_code="cancelled",
        )

    def recover_orphaned_tasks(self) -> list[str]:
        """Fail persisted ``processing`` tasks of this worker that are not in flight here."""

        self._flush_unsaved()
        recovered: list[str] = []
        for stored in self._iter_stored_tasks():
            if stored.status != TaskStatus.PROCESSING:
                continue
            if stored.worker_id not in (None, self.settings.worker_id):
                continue
            with self._lock:
                held_here = self._processing.keys() | self._finishing | self._unsaved.keys()
                if stored.task_id in held_here:
                    # A newer state is held locally until the store accepts it.
                    continue
                task = self._load_task_record(stored.task_id)
                if task is None or task.status != TaskStatus.PROCESSING:
                    continue
                task.messages = self._stored_messages(task.task_id)
                task.status = TaskStatus.FAILED
                task.error = "Worker lost track of the task before it finished"
                task.error_code = "orphaned"
                task.completed_at = self._clock()
                self._save_task(task)
            recovered.append(task.task_id)
            logger.warning("Task %s marked failed as orphaned", task.task_id)
            self.bus.publish(TaskCompleted(task=task))
        return recovered

    # -- reads -----------------------------------------------------------------------

    def get_task(self, task_id: str) -> AgentTask | None:
        with self._lock:
            flight = self._processing.get(task_id)
            if flight is not None:
                return self._snapshot(flight.task)
            unsaved = self._unsaved.get(task_id)
            if unsaved is not None:
                return self._snapshot(unsaved)
        task = self._load_task_record(task_id)
        if task is None:
            return None
        if not task.messages:
            task.messages = self._stored_messages(task_id)
        return task

    def get_user_tasks(self, user_id: str, limit: int = 10) -> list[AgentTask]:
        """Most recently queued tasks first; ids of expired records are pruned."""

        if limit <= 0:
            return []
        index_key = user_tasks_key(user_id)
        tasks: list[AgentTask] = []
        for task_id in reversed(self.store.list_range(index_key, 0, -1)):
            task = self._load_task_record(task_id)
            if task is None:
                self.store.list_remove(index_key, task_id)
                continue
            tasks.append(task)
            if len(tasks) >= limit:
                break
        return tasks

    def get_processing_task(self, instance_id: str) -> AgentTask | None:
        """Snapshot of the task currently bound to ``instance_id``, if any."""

        with self._lock:
            task_id = self._by_instance.get(instance_id)
            if task_id is None:
                return None
            return self._snapshot(self._processing[task_id].task)

    def get_queue_stats(self) -> QueueStats:
        stats = QueueStats(
            queue_length=self.store.queue_length(TASK_QUEUE_KEY),
            processing=0,
            completed=0,
            failed=0,
            by_provider={},
        )
        with self._lock:
            stats.processing = len(self._processing)
        for task in self._iter_stored_tasks():
            if task.status == TaskStatus.COMPLETED:
                stats.completed += 1
            elif task.status == TaskStatus.FAILED:
                stats.failed += 1
            stats.by_provider[task.provider] = stats.by_provider.get(task.provider, 0) + 1
        return stats

    # -- event handlers ------------------------------------------------------------------

    def _on_instance_ready(self, event: InstanceReady) -> None:
        with self._lock:
            for flight in self._processing.values():
                if flight.pending_instance_id == event.instance_id:
                    flight.ready.set()

    def _on_instance_message(self, event: InstanceMessage) -> None:
        message = event.message
        with self._lock:
            task_id = self._by_instance.get(message.instance_id)
            if task_id is None:
                return
            if message.task_id != task_id:
                message = replace(message, task_id=task_id)
            self._processing[task_id].task.messages.append(message)
            # Under the lock so completion cannot fold the log away before this write lands.
            self._append_message(task_id, message)

        self.bus.publish(TaskMessage(task_id=task_id, message=message))
        if message.channel == MessageChannel.STDOUT and self.instances.is_task_complete(message):
            self.complete_task(task_id, TaskStatus.COMPLETED)

    def _on_instance_waiting(self, event: InstanceWaiting) -> None:
        with self._lock:
            task_id = self._by_instance.get(event.instance_id)
        if task_id is None:
            return
        self.bus.publish(
            TaskWaiting(
                task_id=task_id,
                instance_id=event.instance_id,
                last_output=event.last_output,
            ),
        )

    def _on_instance_responded(self, event: InstanceResponded) -> None:
        with self._lock:
            task_id = self._by_instance.get(event.instance_id)
        if task_id is not None:
            self.bus.publish(TaskResponded(task_id=task_id, response=event.response))

    def _on_instance_failed(self, event: InstanceFailed) -> None:
        with self._lock:
            task_id = self._by_instance.get(event.instance_id)
        if task_id is not None:
            self.complete_task(
                task_id,
                TaskStatus.FAILED,
                event.error.strip() or "Agent reported an error",
                error_code=ProcessError.code,
            )
        self.instances.stop_instance(event.instance_id)

    def _on_instance_stopped(self, event: InstanceStopped) -> None:
        with self._lock:
            task_id = self._by_instance.get(event.instance_id)
            for flight in self._processing.values():
                if flight.pending_instance_id == event.instance_id:
                    flight.ready.set()
        if task_id is None:
            return
        if event.exit_code is None:
            error = "Instance stopped"
        else:
            error = f"Instance exited with code {event.exit_code}"
        self.complete_task(task_id, TaskStatus.FAILED, error, error_code="instance_stopped")

    def _on_response_received(self, event: ResponseReceived) -> None:
        response = event.response
        with self._lock:
            bound = self._by_instance.get(response.instance_id)
        if bound != response.task_id:
            logger.warning(
                "Dropping response for task %s: instance %s no longer serves it",
                response.task_id,
                response.instance_id,
            )
            return
        try:
            self.instances.send_response(response.instance_id, response.response)
        except OrchestratorError as error:
            logger.warning("Failed to forward response to %s: %s", response.instance_id, error)

    def _on_task_timeout(self, task_id: str) -> None:
        error = TaskTimeoutError(self.settings.max_task_duration_seconds)
        self.complete_task(task_id, TaskStatus.FAILED, str(error), error_code=error.code)

    # -- internals ----------------------------------------------------------------------

    def _acquire_instance(self, flight: _InFlight) -> str | None:
        task = flight.task
        existing = self.instances.find_ready_instance(task.user_id, task.provider)
        if existing is not None:
            return existing.instance_id

        created = self.instances.create_instance(task.user_id, task.provider)
        with self._lock:
            flight.pending_instance_id = created.instance_id
        current = self.instances.get_instance(created.instance_id)
        if current is not None and current.status == InstanceStatus.READY:
            flight.ready.set()

        timeout = self.settings.ready_timeout_seconds
        became_ready = flight.ready.wait(timeout)
        with self._lock:
            flight.pending_instance_id = None
            if task.task_id not in self._processing:
                return None

        current = self.instances.get_instance(created.instance_id)
        if current is not None and current.status == InstanceStatus.READY:
            return created.instance_id
        if not became_ready:
            self.instances.stop_instance(created.instance_id)
            raise ProcessError(f"Instance failed to become ready within {timeout:g}s")
        self.instances.stop_instance(created.instance_id)
        raise ProcessError("Instance stopped before becoming ready")

    def _reconcile(self) -> None:
        with self._lock:
            in_flight = [self._snapshot(flight.task) for flight in self._processing.values()]
        for task in in_flight:
            self._save_task(task)
        self.recover_orphaned_tasks()

    def _snapshot(self, task: AgentTask) -> AgentTask:
        return replace(task, messages=list(task.messages), metadata=dict(task.metadata))

    def _load_task_record(self, task_id: str) -> AgentTask | None:
        raw = self.store.get(task_key(task_id))
        if raw is None:
            return None
        return AgentTask.from_record(loads(raw))

    def _iter_stored_tasks(self) -> Iterator[AgentTask]:
        for key in self.store.keys("task:*"):
            if key.startswith("task:messages:"):
                continue
            raw = self.store.get(key)
            if raw is None:
                continue
            yield AgentTask.from_record(loads(raw))

    def _save_task(self, task: AgentTask) -> bool:
        """Persist a task record; failed terminal writes are kept and retried on reconcile."""

        try:
            self._write_task(task)
        except StoreUnavailableError as error:
            self._store_degraded = True
            if task.is_terminal:
                with self._lock:
                    self._unsaved[task.task_id] = self._snapshot(task)
            logger.warning("Could not persist task %s: %s", task.task_id, error)
            return False
        with self._lock:
            self._unsaved.pop(task.task_id, None)
        return True

    def _write_task(self, task: AgentTask) -> None:
        terminal = task.is_terminal
        self.store.set(
            task_key(task.task_id),
            dumps(task.to_record(include_messages=terminal)),
            self.settings.task_record_ttl_seconds,
        )
        if terminal:
            # The log now travels inside the record and expires with it.
            self.store.delete(task_messages_key(task.task_id))

    def _flush_unsaved(self) -> None:
        with self._lock:
            pending = list(self._unsaved.values())
        for task in pending:
            if self._save_task(task):
                logger.info("Task %s persisted after store recovery", task.task_id)

    def _stored_messages(self, task_id: str) -> list[AgentMessage]:
        return [
            AgentMessage.from_record(loads(raw))
            for raw in self.store.list_range(task_messages_key(task_id), 0, -1)
        ]

    def _append_message(self, task_id: str, message: AgentMessage) -> None:
        try:
            self.store.list_push(task_messages_key(task_id), dumps(message.to_record()))
        except StoreUnavailableError as error:
            self._store_degraded = True
            logger.warning("Could not persist message for task %s: %s", task_id, error)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping queue consumer", name)
            self._stop_requested = True

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
