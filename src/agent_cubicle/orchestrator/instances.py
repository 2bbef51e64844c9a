"""Instance manager: spawns, supervises and stops agent processes per user.

All instance state lives in a private registry guarded by one lock. Callers
only ever see :class:`InstanceView` snapshots; every mutation goes through a
manager method. Events are published after the lock is released, so handlers
may call back into the manager.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from agent_cubicle.config import InstanceSettings
from agent_cubicle.orchestrator.errors import (
    CapacityError,
    InstanceNotFoundError,
    InstanceStateError,
)
from agent_cubicle.orchestrator.events import (
    EventBus,
    InstanceFailed,
    InstanceMessage,
    InstanceReady,
    InstanceResponded,
    InstanceStopped,
    InstanceWaiting,
)
from agent_cubicle.orchestrator.models import (
    AgentMessage,
    InstanceStats,
    InstanceStatus,
    InstanceView,
    MessageChannel,
)
from agent_cubicle.orchestrator.process import (
    AgentProcess,
    ProcessHandlers,
    SpawnRequest,
    Spawner,
    spawn_process,
)
from agent_cubicle.orchestrator.providers import Provider, ProviderRegistry
from agent_cubicle.store.base import DurableStore, StoreUnavailableError, instance_key
from agent_cubicle.store.common import dumps, utc_now

logger = logging.getLogger(__name__)

WAITING_CONTEXT_LINES = 5


@dataclass(slots=True)
class _InstanceRecord:
    instance_id: str
    user_id: str
    provider: Provider
    workdir: str
    created_at: datetime
    last_activity_at: datetime
    output: deque[str]
    errors: deque[str]
    status: InstanceStatus = InstanceStatus.STARTING
    process: AgentProcess | None = None
    current_task_id: str | None = None
    last_output_at: datetime | None = None
    wait_timer: threading.Timer | None = None
    wait_generation: int = 0

    def view(self) -> InstanceView:
        return InstanceView(
            instance_id=self.instance_id,
            user_id=self.user_id,
            provider=self.provider.name,
            status=self.status,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
            current_task_id=self.current_task_id,
            workdir=self.workdir,
            pid=self.process.pid if self.process is not None else None,
        )


class InstanceManager:
    """Owns the pool of agent processes, their state machine and wait detection."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: DurableStore,
        providers: ProviderRegistry,
        bus: EventBus,
        settings: InstanceSettings | None = None,
        spawner: Spawner = spawn_process,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.providers = providers
        self.bus = bus
        self.settings = settings or InstanceSettings()
        self._spawner = spawner
        self._clock = clock
        self._lock = threading.RLock()
        self._instances: dict[str, _InstanceRecord] = {}
        self._sweeper_stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    # -- lifecycle ------------------------------------------------------------

    def create_instance(self, user_id: str, provider_name: str | None = None) -> InstanceView:
        """Spawn a provider process for the user and register it as ``starting``."""

        provider = self.providers.resolve(provider_name)
        instance_id = str(uuid4())
        workdir = self.settings.workdir_root / instance_id
        now = self._clock()

        with self._lock:
            owned = sum(1 for record in self._instances.values() if record.user_id == user_id)
            if owned >= self.settings.max_instances_per_user:
                raise CapacityError(
                    f"Maximum instances ({self.settings.max_instances_per_user}) reached "
                    f"for user {user_id!r}",
                )
            record = _InstanceRecord(
                instance_id=instance_id,
                user_id=user_id,
                provider=provider,
                workdir=str(workdir),
                created_at=now,
                last_activity_at=now,
                output=deque(maxlen=self.settings.output_buffer_lines),
                errors=deque(maxlen=self.settings.output_buffer_lines),
            )
            # Reader threads block on the lock until the record is registered.
            record.process = self._spawner(
                SpawnRequest(
                    command=provider.command,
                    args=provider.args,
                    cwd=workdir,
                    env=dict(provider.env),
                ),
                ProcessHandlers(
                    on_stdout=lambda chunk: self._on_stdout(instance_id, chunk),
                    on_stderr=lambda chunk: self._on_stderr(instance_id, chunk),
                    on_exit=lambda code: self._on_exit(instance_id, code),
                ),
            )
            self._instances[instance_id] = record
            view = record.view()

        logger.info(
            "Instance %s spawned for user %s (provider=%s, pid=%s)",
            instance_id,
            user_id,
            provider.name,
            view.pid,
        )
        self._persist(view)
        return view

    def stop_instance(self, instance_id: str) -> None:
        """Terminate and deregister; stopping an unknown id is a no-op."""

        with self._lock:
            record = self._instances.pop(instance_id, None)
            if record is None:
                return
            self._cancel_wait_detector(record)
            record.status = InstanceStatus.STOPPED
            task_id = record.current_task_id

        if record.process is not None:
            record.process.terminate()
        self._forget(instance_id)
        logger.info("Instance %s stopped", instance_id)
        self.bus.publish(InstanceStopped(instance_id=instance_id, task_id=task_id, exit_code=None))

    def stop_user_instances(self, user_id: str) -> None:
        for view in self.get_user_instances(user_id):
            self.stop_instance(view.instance_id)

    def start_cleanup(self) -> None:
        """Start the periodic idle sweep in a daemon thread."""

        if self._sweeper is not None:
            return
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(
            target=self._cleanup_loop,
            daemon=True,
            name="agent-instance-sweeper",
        )
        self._sweeper.start()

    def sweep_idle_instances(self, now: datetime | None = None) -> list[str]:
        """Stop every instance idle longer than the instance timeout, whatever its status."""

        current = now or self._clock()
        limit = timedelta(seconds=self.settings.instance_timeout_seconds)
        with self._lock:
            idle = [
                record.instance_id
                for record in self._instances.values()
                if current - record.last_activity_at > limit
            ]
        for instance_id in idle:
            logger.warning("Stopping idle instance %s", instance_id)
            self.stop_instance(instance_id)
        return idle

    def close(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        with self._lock:
            instance_ids = list(self._instances)
        for instance_id in instance_ids:
            self.stop_instance(instance_id)

    # -- input ------------------------------------------------------------------

    def send_command(self, instance_id: str, command: str, task_id: str) -> None:
        """Write a newline-terminated command to a ``ready`` instance and mark it busy."""

        with self._lock:
            record = self._require(instance_id)
            if record.status != InstanceStatus.READY:
                raise InstanceStateError(
                    f"Instance not ready (status: {record.status.value})",
                )
            if record.process is None:
                raise InstanceStateError("Instance has no process attached")
            record.process.write(command + "\n")
            record.status = InstanceStatus.BUSY
            record.current_task_id = task_id
            record.last_activity_at = self._clock()
            self._arm_wait_detector(record)
            view = record.view()
        self._persist(view)

    def send_response(self, instance_id: str, response: str) -> None:
        """Forward a human reply to a ``busy`` instance and re-arm wait detection."""

        with self._lock:
            record = self._require(instance_id)
            if record.status != InstanceStatus.BUSY:
                raise InstanceStateError(
                    f"Instance not waiting for input (status: {record.status.value})",
                )
            if record.process is None:
                raise InstanceStateError("Instance has no process attached")
            record.process.write(response + "\n")
            record.last_activity_at = self._clock()
            self._arm_wait_detector(record)
            task_id = record.current_task_id

        self.bus.publish(
            InstanceResponded(instance_id=instance_id, task_id=task_id, response=response),
        )

    def release_instance(self, instance_id: str, task_id: str) -> bool:
        """Return a busy instance to ``ready`` if it still serves ``task_id``.

        Safe to call more than once; only the first call for a binding has an effect.
        """

        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                return False
            if record.status != InstanceStatus.BUSY or record.current_task_id != task_id:
                return False
            self._cancel_wait_detector(record)
            record.status = InstanceStatus.READY
            record.current_task_id = None
            view = record.view()
        self._persist(view)
        return True

    # -- reads ------------------------------------------------------------------

    def get_instance(self, instance_id: str) -> InstanceView | None:
        with self._lock:
            record = self._instances.get(instance_id)
            return record.view() if record is not None else None

    def get_user_instances(self, user_id: str) -> list[InstanceView]:
        with self._lock:
            return [
                record.view() for record in self._instances.values() if record.user_id == user_id
            ]

    def get_provider_instances(self, provider: str) -> list[InstanceView]:
        with self._lock:
            return [
                record.view()
                for record in self._instances.values()
                if record.provider.name == provider
            ]

    def find_ready_instance(self, user_id: str, provider: str) -> InstanceView | None:
        with self._lock:
            for record in self._instances.values():
                if (
                    record.user_id == user_id
                    and record.provider.name == provider
                    and record.status == InstanceStatus.READY
                ):
                    return record.view()
        return None

    def get_instance_output(self, instance_id: str, lines: int = 100) -> list[str]:
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None or lines <= 0:
                return []
            return list(record.output)[-lines:]

    def get_instance_errors(self, instance_id: str, lines: int = 100) -> list[str]:
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None or lines <= 0:
                return []
            return list(record.errors)[-lines:]

    def clear_instance_output(self, instance_id: str) -> None:
        with self._lock:
            record = self._instances.get(instance_id)
            if record is not None:
                record.output.clear()
                record.errors.clear()

    def is_task_complete(self, message: AgentMessage) -> bool:
        with self._lock:
            record = self._instances.get(message.instance_id)
            provider = record.provider if record is not None else None
        return provider is not None and provider.is_complete(message.content)

    def get_instance_stats(self) -> InstanceStats:
        stats = InstanceStats(total=0, by_status={}, by_user={}, by_provider={})
        with self._lock:
            records = list(self._instances.values())
        stats.total = len(records)
        for record in records:
            status = record.status.value
            stats.by_status[status] = stats.by_status.get(status, 0) + 1
            stats.by_user[record.user_id] = stats.by_user.get(record.user_id, 0) + 1
            provider = record.provider.name
            stats.by_provider[provider] = stats.by_provider.get(provider, 0) + 1
        return stats

    # -- process callbacks ---------------------------------------------------------

    def _on_stdout(self, instance_id: str, chunk: str) -> None:
        became_ready = False
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                return
            now = self._clock()
            record.output.append(chunk)
            record.last_activity_at = now
            record.last_output_at = now
            message = AgentMessage(
                instance_id=instance_id,
                channel=MessageChannel.STDOUT,
                content=chunk,
                timestamp=now,
                task_id=record.current_task_id,
                provider=record.provider.name,
            )
            self._arm_wait_detector(record)
            if record.status == InstanceStatus.STARTING and record.provider.is_ready(chunk):
                record.status = InstanceStatus.READY
                became_ready = True
                view = record.view()

        self.bus.publish(InstanceMessage(message=message))
        if became_ready:
            logger.info("Instance %s is ready", instance_id)
            self._persist(view)
            self.bus.publish(InstanceReady(instance_id=instance_id))

    def _on_stderr(self, instance_id: str, chunk: str) -> None:
        failed = False
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None:
                return
            record.errors.append(chunk)
            message = AgentMessage(
                instance_id=instance_id,
                channel=MessageChannel.STDERR,
                content=chunk,
                timestamp=self._clock(),
                task_id=record.current_task_id,
                provider=record.provider.name,
            )
            if record.status != InstanceStatus.ERROR and record.provider.is_error(chunk):
                record.status = InstanceStatus.ERROR
                self._cancel_wait_detector(record)
                failed = True
                task_id = record.current_task_id

        self.bus.publish(InstanceMessage(message=message))
        if failed:
            logger.warning("Instance %s reported an error: %s", instance_id, chunk.strip())
            self.bus.publish(InstanceFailed(instance_id=instance_id, task_id=task_id, error=chunk))

    def _on_exit(self, instance_id: str, exit_code: int | None) -> None:
        with self._lock:
            record = self._instances.pop(instance_id, None)
            if record is None:
                return
            self._cancel_wait_detector(record)
            record.status = InstanceStatus.STOPPED
            task_id = record.current_task_id

        logger.info("Instance %s exited with code %s", instance_id, exit_code)
        self._forget(instance_id)
        self.bus.publish(
            InstanceStopped(instance_id=instance_id, task_id=task_id, exit_code=exit_code),
        )

    # -- wait detection --------------------------------------------------------------

    def _arm_wait_detector(self, record: _InstanceRecord) -> None:
        self._cancel_wait_detector(record)
        record.wait_generation += 1
        timer = threading.Timer(
            self.settings.waiting_threshold_seconds,
            self._on_silence,
            args=(record.instance_id, record.wait_generation),
        )
        timer.daemon = True
        record.wait_timer = timer
        timer.start()

    def _cancel_wait_detector(self, record: _InstanceRecord) -> None:
        # Bumping the generation also invalidates a timer that already fired
        # and is waiting for the lock.
        record.wait_generation += 1
        if record.wait_timer is not None:
            record.wait_timer.cancel()
            record.wait_timer = None

    def _on_silence(self, instance_id: str, generation: int) -> None:
        with self._lock:
            record = self._instances.get(instance_id)
            if record is None or record.wait_generation != generation:
                return
            record.wait_timer = None
            if record.status != InstanceStatus.BUSY:
                return
            recent = "".join(list(record.output)[-WAITING_CONTEXT_LINES:])
            last_output = "\n".join(recent.splitlines()[-WAITING_CONTEXT_LINES:])
            since = record.last_output_at or record.last_activity_at
            event = InstanceWaiting(
                instance_id=instance_id,
                task_id=record.current_task_id,
                last_output=last_output,
                wait_seconds=(self._clock() - since).total_seconds(),
            )
        logger.info("Instance %s appears to be waiting for input", instance_id)
        self.bus.publish(event)

    # -- internals --------------------------------------------------------------------

    def _require(self, instance_id: str) -> _InstanceRecord:
        record = self._instances.get(instance_id)
        if record is None:
            raise InstanceNotFoundError(f"Instance not found: {instance_id}")
        return record

    def _cleanup_loop(self) -> None:
        while not self._sweeper_stop.wait(timeout=self.settings.cleanup_interval_seconds):
            try:
                self.sweep_idle_instances()
            except Exception:
                logger.exception("Idle instance sweep failed")

    def _persist(self, view: InstanceView) -> None:
        try:
            self.store.set(
                instance_key(view.instance_id),
                dumps(view.to_record()),
                self.settings.record_ttl_seconds,
            )
        except StoreUnavailableError as error:
            logger.warning("Could not persist instance %s: %s", view.instance_id, error)

    def _forget(self, instance_id: str) -> None:
        try:
            self.store.delete(instance_key(instance_id))
        except StoreUnavailableError as error:
            logger.warning("Could not delete instance record %s: %s", instance_id, error)
