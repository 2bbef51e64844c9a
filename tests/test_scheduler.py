from __future__ import annotations

from collections.abc import Callable

import allure
import pytest

from agent_cubicle.orchestrator.errors import StoreUnavailableError, ValidationError
from agent_cubicle.orchestrator.events import TaskCompleted, TaskStarted, TaskWaiting
from agent_cubicle.orchestrator.instances import InstanceManager
from agent_cubicle.orchestrator.models import InstanceStatus, TaskStatus
from agent_cubicle.orchestrator.scheduler import TaskScheduler
from agent_cubicle.store.base import (
    TASK_QUEUE_KEY,
    task_key,
    task_messages_key,
    user_tasks_key,
)
from agent_cubicle.store.common import dumps, loads
from tests.conftest import FakeSpawner, wait_until

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Task Queue"),
]


def _reply_done(command: str) -> str | None:
    if command.startswith("hang") or command.startswith("ask"):
        return None
    return f"Working on: {command}\nDone.\n"


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner(auto_ready=True, reply=_reply_done)


@pytest.fixture()
def instances(store, providers, bus, instance_settings, spawner):
    manager = InstanceManager(
        store=store,
        providers=providers,
        bus=bus,
        settings=instance_settings,
        spawner=spawner,
    )
    yield manager
    manager.close()


@pytest.fixture()
def scheduler(store, instances, providers, bus, scheduler_settings):
    task_scheduler = TaskScheduler(
        store=store,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
        store_backoff_seconds=0.05,
    )
    yield task_scheduler
    task_scheduler.close()


def _status(scheduler: TaskScheduler, task_id: str) -> TaskStatus | None:
    task = scheduler.get_task(task_id)
    return task.status if task is not None else None


def test_queue_task_persists_before_returning(scheduler, store, bus):
    started: list[object] = []
    bus.subscribe(TaskStarted, started.append)

    task = scheduler.queue_task("u1", "s1", "build", metadata={"source": "test"})

    assert task.status == TaskStatus.QUEUED
    assert task.provider == "echo"
    assert store.queue_length(TASK_QUEUE_KEY) == 1
    assert loads(store.get(task_key(task.task_id)))["status"] == "queued"
    assert store.list_range(user_tasks_key("u1"), 0, -1) == [task.task_id]
    assert scheduler.get_task(task.task_id).metadata == {"source": "test"}
    assert started == []


def test_queue_task_rejects_bad_input(scheduler, store):
    with pytest.raises(ValidationError):
        scheduler.queue_task("u1", "s1", "   ")
    with pytest.raises(ValidationError):
        scheduler.queue_task("u1", "s1", "build", provider="no-such-agent")
    assert store.queue_length(TASK_QUEUE_KEY) == 0


def test_run_once_on_empty_queue_returns_false(scheduler):
    assert scheduler.run_once(timeout=0.01) is False


def test_task_completes_on_completion_pattern(scheduler, instances, store):
    task = scheduler.queue_task("u1", "s1", "do X")

    assert scheduler.run_once() is True
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.COMPLETED)
    assert scheduler.wait_idle(5.0) is True

    done = scheduler.get_task(task.task_id)
    assert "Done." in done.result
    assert done.error is None
    assert done.started_at is not None
    assert done.completed_at is not None
    assert done.worker_id == "test-worker"
    assert [message.content for message in done.messages] == ["Working on: do X\nDone.\n"]
    assert store.list_range(task_messages_key(task.task_id), 0, -1) == []
    assert len(loads(store.get(task_key(task.task_id)))["messages"]) == 1
    instance = instances.get_instance(done.instance_id)
    assert instance.status == InstanceStatus.READY
    assert instance.current_task_id is None


def test_ready_instance_is_reused_for_same_user_and_provider(scheduler, spawner):
    first = scheduler.queue_task("u1", "s1", "one")
    second = scheduler.queue_task("u1", "s1", "two")

    scheduler.run_once()
    wait_until(lambda: _status(scheduler, first.task_id) == TaskStatus.COMPLETED)
    scheduler.run_once()
    wait_until(lambda: _status(scheduler, second.task_id) == TaskStatus.COMPLETED)

    assert len(spawner.processes) == 1
    assert scheduler.get_task(first.task_id).instance_id == scheduler.get_task(
        second.task_id
    ).instance_id


def test_fifo_admission_order(scheduler, bus):
    started: list[str] = []
    bus.subscribe(TaskStarted, lambda event: started.append(event.task.task_id))
    first = scheduler.queue_task("u1", "s1", "hang")
    second = scheduler.queue_task("u2", "s2", "hang")

    scheduler.run_once()
    scheduler.run_once()

    assert started == [first.task_id, second.task_id]
    assert _status(scheduler, first.task_id) == TaskStatus.PROCESSING
    assert _status(scheduler, second.task_id) == TaskStatus.PROCESSING
    assert scheduler.get_queue_stats().processing == 2


def test_timeout_fails_task_and_releases_instance(
    store, instances, providers, bus, scheduler_settings
):
    scheduler_settings.max_task_duration_seconds = 0.3
    scheduler = TaskScheduler(
        store=store,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
    )
    task = scheduler.queue_task("u1", "s1", "hang")

    scheduler.run_once()
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.FAILED)

    failed = scheduler.get_task(task.task_id)
    assert failed.error_code == "timeout"
    assert "timed out" in failed.error
    assert instances.get_instance(failed.instance_id).status == InstanceStatus.READY
    scheduler.close()


def test_readiness_timeout_fails_with_process_error(
    store, providers, bus, instance_settings, scheduler_settings
):
    scheduler_settings.ready_timeout_seconds = 0.2
    spawner = FakeSpawner(auto_ready=False)
    instances = InstanceManager(
        store=store,
        providers=providers,
        bus=bus,
        settings=instance_settings,
        spawner=spawner,
    )
    scheduler = TaskScheduler(
        store=store,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
    )
    task = scheduler.queue_task("u1", "s1", "build")

    scheduler.run_once()

    failed = scheduler.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_code == "process_error"
    assert spawner.last.terminated is True
    assert instances.get_user_instances("u1") == []


def test_capacity_error_fails_task(store, providers, bus, instance_settings, scheduler_settings):
    instance_settings.max_instances_per_user = 1
    spawner = FakeSpawner(auto_ready=True, reply=_reply_done)
    instances = InstanceManager(
        store=store,
        providers=providers,
        bus=bus,
        settings=instance_settings,
        spawner=spawner,
    )
    scheduler = TaskScheduler(
        store=store,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
    )
    first = scheduler.queue_task("u1", "s1", "hang")
    second = scheduler.queue_task("u1", "s1", "build")

    scheduler.run_once()
    scheduler.run_once()

    assert _status(scheduler, first.task_id) == TaskStatus.PROCESSING
    assert scheduler.get_task(second.task_id).error_code == "capacity"
    scheduler.close()
    instances.close()


def test_cancel_processing_task_frees_instance(scheduler, instances):
    task = scheduler.queue_task("u1", "s1", "hang")
    scheduler.run_once()
    instance_id = scheduler.get_task(task.task_id).instance_id

    assert scheduler.cancel_task(task.task_id) is True

    cancelled = scheduler.get_task(task.task_id)
    assert cancelled.status == TaskStatus.FAILED
    assert cancelled.error_code == "cancelled"
    assert instances.get_instance(instance_id).status == InstanceStatus.READY
    assert scheduler.cancel_task(task.task_id) is False


def test_cancel_completed_task_is_noop(scheduler):
    task = scheduler.queue_task("u1", "s1", "build")
    scheduler.run_once()
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.COMPLETED)

    assert scheduler.cancel_task(task.task_id) is False
    assert scheduler.cancel_task("unknown") is False
    assert _status(scheduler, task.task_id) == TaskStatus.COMPLETED


def test_cancelled_queued_task_is_skipped_by_consumer(scheduler, spawner, bus):
    completed: list[object] = []
    bus.subscribe(TaskCompleted, completed.append)
    task = scheduler.queue_task("u1", "s1", "build")

    assert scheduler.cancel_task(task.task_id) is True
    assert scheduler.run_once() is True

    assert spawner.processes == []
    skipped = scheduler.get_task(task.task_id)
    assert skipped.status == TaskStatus.FAILED
    assert skipped.error_code == "cancelled"
    assert len(completed) == 1


def test_instance_exit_fails_bound_task(scheduler, spawner):
    task = scheduler.queue_task("u1", "s1", "hang")
    scheduler.run_once()

    spawner.last.exit(1)

    failed = scheduler.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_code == "instance_stopped"
    assert "code 1" in failed.error


def test_instance_error_fails_task_with_process_error(scheduler, spawner, instances):
    task = scheduler.queue_task("u1", "s1", "hang")
    scheduler.run_once()
    instance_id = scheduler.get_task(task.task_id).instance_id

    spawner.last.emit_stderr("Error: disk full\n")

    failed = scheduler.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_code == "process_error"
    assert "disk full" in failed.error
    assert instances.get_instance(instance_id) is None


def test_waiting_signal_is_republished_for_task(scheduler, spawner, bus):
    waiting: list[TaskWaiting] = []
    bus.subscribe(TaskWaiting, waiting.append)
    task = scheduler.queue_task("u1", "s1", "ask deploy")
    scheduler.run_once()
    spawner.last.emit_stdout("Proceed with deploy? (y/n) ")

    wait_until(lambda: len(waiting) == 1)
    assert waiting[0].task_id == task.task_id
    assert scheduler.get_processing_task(waiting[0].instance_id).task_id == task.task_id


def test_recover_orphaned_tasks_marks_only_own_worker(scheduler, store):
    own = scheduler.queue_task("u1", "s1", "build")
    foreign = scheduler.queue_task("u1", "s1", "build")
    for task_id, worker_id in ((own.task_id, "test-worker"), (foreign.task_id, "other-host")):
        record = loads(store.get(task_key(task_id)))
        record["status"] = "processing"
        record["worker_id"] = worker_id
        store.set(task_key(task_id), dumps(record), 600)

    assert scheduler.recover_orphaned_tasks() == [own.task_id]

    assert scheduler.get_task(own.task_id).error_code == "orphaned"
    assert _status(scheduler, foreign.task_id) == TaskStatus.PROCESSING


def test_user_tasks_and_queue_stats(scheduler):
    first = scheduler.queue_task("u1", "s1", "build")
    second = scheduler.queue_task("u1", "s1", "test")
    scheduler.queue_task("u2", "s2", "other")
    scheduler.run_once()
    wait_until(lambda: _status(scheduler, first.task_id) == TaskStatus.COMPLETED)

    assert [task.task_id for task in scheduler.get_user_tasks("u1")] == [
        second.task_id,
        first.task_id,
    ]
    assert [task.task_id for task in scheduler.get_user_tasks("u1", limit=1)] == [second.task_id]

    stats = scheduler.get_queue_stats()
    assert stats.queue_length == 2
    assert stats.completed == 1
    assert stats.failed == 0
    assert stats.by_provider == {"echo": 3}


class _FlakyStore:
    """Delegates to a real store but fails the first N blocking pops and selected calls."""

    def __init__(self, inner, failures: int = 0) -> None:
        self._inner = inner
        self.failures = failures
        self.fail_get: Callable[[str], bool] | None = None
        self.fail_set: Callable[[str, str], bool] | None = None

    def __getattr__(self, name: str):
        return getattr(self._inner, name)

    def get(self, key: str):
        if self.fail_get is not None and self.fail_get(key):
            raise StoreUnavailableError("connection reset")
        return self._inner.get(key)

    def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        if self.fail_set is not None and self.fail_set(key, value):
            raise StoreUnavailableError("connection reset")
        self._inner.set(key, value, ttl_seconds)

    def blocking_pop(self, queue_key: str, timeout: float):
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailableError("connection refused")
        return self._inner.blocking_pop(queue_key, timeout)


def test_run_loop_backs_off_on_store_errors(
    store, instances, providers, bus, scheduler_settings
):
    flaky = _FlakyStore(store, failures=2)
    scheduler = TaskScheduler(
        store=flaky,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
        store_backoff_seconds=0.01,
    )
    task = scheduler.queue_task("u1", "s1", "build")

    summary = scheduler.run_loop(max_tasks=1)

    assert summary.store_errors == 2
    assert summary.dequeued == 1
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.COMPLETED)
    scheduler.close()


def test_start_and_stop_background_consumer(scheduler):
    task = scheduler.queue_task("u1", "s1", "build")

    scheduler.start()
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.COMPLETED)
    scheduler.stop()

    assert scheduler.get_queue_stats().queue_length == 0


def test_wait_idle_reports_in_flight_tasks(scheduler):
    assert scheduler.wait_idle(0.01) is True
    task = scheduler.queue_task("u1", "s1", "hang")
    scheduler.run_once()

    assert scheduler.wait_idle(0.1) is False
    scheduler.cancel_task(task.task_id)
    assert scheduler.wait_idle(0.1) is True


def test_close_fails_tasks_still_in_flight(scheduler, instances):
    task = scheduler.queue_task("u1", "s1", "hang")
    scheduler.run_once()
    instance_id = scheduler.get_task(task.task_id).instance_id

    scheduler.close()

    failed = scheduler.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_code == "orphaned"
    assert instances.get_instance(instance_id).status == InstanceStatus.READY


def _flaky_scheduler(flaky, instances, providers, bus, scheduler_settings) -> TaskScheduler:
    return TaskScheduler(
        store=flaky,
        instances=instances,
        providers=providers,
        bus=bus,
        settings=scheduler_settings,
        store_backoff_seconds=0.01,
    )


def test_terminal_record_that_failed_to_save_survives_recovery(
    store, instances, providers, bus, scheduler_settings
):
    flaky = _FlakyStore(store)
    scheduler = _flaky_scheduler(flaky, instances, providers, bus, scheduler_settings)
    task = scheduler.queue_task("u1", "s1", "do X")
    flaky.fail_set = lambda key, value: (
        key == task_key(task.task_id) and loads(value)["status"] == "completed"
    )

    scheduler.run_once()
    assert scheduler.wait_idle(5.0) is True

    assert loads(store.get(task_key(task.task_id)))["status"] == "processing"
    assert scheduler.recover_orphaned_tasks() == []
    assert _status(scheduler, task.task_id) == TaskStatus.COMPLETED

    flaky.fail_set = None
    assert scheduler.recover_orphaned_tasks() == []

    record = loads(store.get(task_key(task.task_id)))
    assert record["status"] == "completed"
    assert [message["content"] for message in record["messages"]] == [
        "Working on: do X\nDone.\n",
    ]
    assert store.list_range(task_messages_key(task.task_id), 0, -1) == []
    assert scheduler.get_task(task.task_id).result == "Working on: do X\nDone.\n"
    scheduler.close()


def test_failed_read_after_dequeue_keeps_task(
    store, instances, providers, bus, scheduler_settings
):
    flaky = _FlakyStore(store)
    scheduler = _flaky_scheduler(flaky, instances, providers, bus, scheduler_settings)
    task = scheduler.queue_task("u1", "s1", "do X")
    failed_reads: list[str] = []

    def fail_first_read(key: str) -> bool:
        if key == task_key(task.task_id) and not failed_reads:
            failed_reads.append(key)
            return True
        return False

    flaky.fail_get = fail_first_read

    with pytest.raises(StoreUnavailableError):
        scheduler.run_once(timeout=0.01)

    assert store.queue_length(TASK_QUEUE_KEY) == 0
    assert scheduler.recover_orphaned_tasks() == []
    assert scheduler.run_once(timeout=0.01) is True
    wait_until(lambda: _status(scheduler, task.task_id) == TaskStatus.COMPLETED)
    scheduler.close()


def test_close_returns_held_item_to_queue(store, instances, providers, bus, scheduler_settings):
    flaky = _FlakyStore(store)
    scheduler = _flaky_scheduler(flaky, instances, providers, bus, scheduler_settings)
    task = scheduler.queue_task("u1", "s1", "do X")
    flaky.fail_get = lambda key: key == task_key(task.task_id)

    with pytest.raises(StoreUnavailableError):
        scheduler.run_once(timeout=0.01)
    scheduler.close()

    assert store.queue_length(TASK_QUEUE_KEY) == 1
    assert loads(store.blocking_pop(TASK_QUEUE_KEY, 0.01))["id"] == task.task_id


def test_cancel_during_command_dispatch_releases_instance(scheduler, instances, monkeypatch):
    task = scheduler.queue_task("u1", "s1", "hang")
    send_command = instances.send_command

    def cancel_then_send(instance_id: str, command: str, task_id: str) -> None:
        scheduler.cancel_task(task_id)
        send_command(instance_id, command, task_id)

    monkeypatch.setattr(instances, "send_command", cancel_then_send)

    scheduler.run_once()

    cancelled = scheduler.get_task(task.task_id)
    assert cancelled.status == TaskStatus.FAILED
    assert cancelled.error_code == "cancelled"
    instance = instances.get_instance(cancelled.instance_id)
    assert instance.status == InstanceStatus.READY
    assert instance.current_task_id is None
    assert loads(scheduler.store.get(task_key(task.task_id)))["status"] == "failed"


def test_user_tasks_prune_ids_of_expired_records(scheduler, store):
    kept = scheduler.queue_task("u1", "s1", "build")
    expired = scheduler.queue_task("u1", "s1", "test")
    store.delete(task_key(expired.task_id))

    assert [task.task_id for task in scheduler.get_user_tasks("u1")] == [kept.task_id]
    assert store.list_range(user_tasks_key("u1"), 0, -1) == [kept.task_id]
