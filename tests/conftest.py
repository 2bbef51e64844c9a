"""Shared test fixtures."""

from __future__ import annotations

import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

import agent_cubicle
from agent_cubicle.config import (
    InstanceSettings,
    NotificationSettings,
    SchedulerSettings,
    Settings,
    StoreSettings,
)
from agent_cubicle.orchestrator.events import EventBus
from agent_cubicle.orchestrator.process import ProcessHandlers, SpawnRequest
from agent_cubicle.orchestrator.providers import Provider, ProviderRegistry
from agent_cubicle.store.memory import InMemoryStore

ECHO_AGENT_ARGS = ["-m", "agent_cubicle.orchestrator.echo_agent"]
ECHO_AGENT_ENV = {"PYTHONPATH": str(Path(agent_cubicle.__file__).resolve().parents[1])}


class FakeProcess:
    """Scriptable stand-in for an agent process; output is emitted on demand."""

    def __init__(
        self,
        request: SpawnRequest,
        handlers: ProcessHandlers,
        *,
        pid: int,
        reply: Callable[[str], str | None] | None,
    ) -> None:
        self.request = request
        self.handlers = handlers
        self.pid = pid
        self.reply = reply
        self.writes: list[str] = []
        self.terminated = False

    def write(self, text: str) -> None:
        self.writes.append(text)
        if self.reply is None:
            return
        output = self.reply(text.rstrip("\n"))
        if output is not None:
            self.emit_later(output)

    def terminate(self) -> None:
        self.terminated = True
        self.handlers.on_exit(-15)

    def emit_stdout(self, text: str) -> None:
        self.handlers.on_stdout(text)

    def emit_stderr(self, text: str) -> None:
        self.handlers.on_stderr(text)

    def emit_later(self, text: str, delay: float = 0.02) -> None:
        timer = threading.Timer(delay, self.handlers.on_stdout, args=(text,))
        timer.daemon = True
        timer.start()

    def exit(self, code: int) -> None:
        self.handlers.on_exit(code)


class FakeSpawner:
    """Spawner that records every launch and hands out FakeProcess objects."""

    def __init__(
        self,
        *,
        auto_ready: bool = False,
        reply: Callable[[str], str | None] | None = None,
    ) -> None:
        self.auto_ready = auto_ready
        self.reply = reply
        self.processes: list[FakeProcess] = []
        self.fail_with: Exception | None = None

    def __call__(self, request: SpawnRequest, handlers: ProcessHandlers) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        process = FakeProcess(
            request,
            handlers,
            pid=1000 + len(self.processes),
            reply=self.reply,
        )
        self.processes.append(process)
        if self.auto_ready:
            process.emit_later("Ready\n")
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def wait_until(predicate: Callable[[], object], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("Condition not met before timeout")


def echo_provider(name: str = "echo", **overrides: object) -> Provider:
    raw: dict[str, object] = {
        "command": sys.executable,
        "args": list(ECHO_AGENT_ARGS),
        "env": dict(ECHO_AGENT_ENV),
        "ready_pattern": r"Ready",
        "completion_patterns": [r"Done\."],
        "error_patterns": [r"Error:"],
    }
    raw.update(overrides)
    return Provider.from_mapping(name, raw)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def providers() -> ProviderRegistry:
    return ProviderRegistry.with_defaults(default_provider="echo", extra=[echo_provider()])


@pytest.fixture()
def instance_settings(tmp_path: Path) -> InstanceSettings:
    return InstanceSettings(
        max_instances_per_user=2,
        instance_timeout_seconds=60,
        cleanup_interval_seconds=60,
        waiting_threshold_seconds=0.2,
        output_buffer_lines=50,
        workdir_root=tmp_path / "instances",
        record_ttl_seconds=60,
    )


@pytest.fixture()
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(
        worker_id="test-worker",
        ready_timeout_seconds=1.0,
        max_task_duration_seconds=5.0,
        queue_poll_seconds=0.05,
        task_record_ttl_seconds=600,
    )


@pytest.fixture()
def settings(
    tmp_path: Path,
    instance_settings: InstanceSettings,
    scheduler_settings: SchedulerSettings,
) -> Settings:
    return Settings(
        default_provider="echo",
        store=StoreSettings(url=f"sqlite:///{tmp_path / 'store.db'}", backoff_seconds=0.05),
        instances=instance_settings,
        scheduler=scheduler_settings,
        notifications=NotificationSettings(notification_ttl_seconds=30),
    )
