"""Runtime configuration for the agent orchestrator."""

from __future__ import annotations

import os
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class StoreSettings:
    """Durable store connection settings."""

    url: str = "sqlite:///.agent_cubicle.db"
    backoff_seconds: float = 5.0


@dataclass(slots=True)
class InstanceSettings:
    """Instance pool limits, wait detection and idle sweep tunables."""

    max_instances_per_user: int = 3
    instance_timeout_seconds: float = 300.0
    cleanup_interval_seconds: float = 60.0
    waiting_threshold_seconds: float = 3.0
    output_buffer_lines: int = 1_000
    workdir_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "agent-instances",
    )
    record_ttl_seconds: int = 3_600


@dataclass(slots=True)
class SchedulerSettings:
    """Task queue consumer settings."""

    worker_id: str = field(default_factory=socket.gethostname)
    ready_timeout_seconds: float = 30.0
    max_task_duration_seconds: float = 300.0
    queue_poll_seconds: float = 1.0
    task_record_ttl_seconds: int = 86_400
    graceful_shutdown_seconds: float = 30.0


@dataclass(slots=True)
class NotificationSettings:
    """Human-in-the-loop notification settings."""

    notification_ttl_seconds: int = 300
    response_record_ttl_seconds: int = 3_600
    max_response_chars: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    default_provider: str = "claude-code"
    providers_file: Path | None = None
    store: StoreSettings = field(default_factory=StoreSettings)
    instances: InstanceSettings = field(default_factory=InstanceSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, store_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        providers_file = os.getenv("AGENT_CUBICLE_PROVIDERS_FILE", "").strip()
        workdir_root = os.getenv("AGENT_CUBICLE_WORKDIR_ROOT", "").strip()
        return cls(
            default_provider=os.getenv("AGENT_CUBICLE_DEFAULT_PROVIDER", "claude-code").strip(),
            providers_file=Path(providers_file) if providers_file else None,
            store=StoreSettings(
                url=store_url
                or os.getenv("AGENT_CUBICLE_STORE_URL", "sqlite:///.agent_cubicle.db"),
                backoff_seconds=float(os.getenv("AGENT_CUBICLE_STORE_BACKOFF_SECONDS", "5")),
            ),
            instances=InstanceSettings(
                max_instances_per_user=int(
                    os.getenv("AGENT_CUBICLE_MAX_INSTANCES_PER_USER", "3"),
                ),
                instance_timeout_seconds=float(
                    os.getenv("AGENT_CUBICLE_INSTANCE_TIMEOUT_SECONDS", "300"),
                ),
                cleanup_interval_seconds=float(
                    os.getenv("AGENT_CUBICLE_CLEANUP_INTERVAL_SECONDS", "60"),
                ),
                waiting_threshold_seconds=float(
                    os.getenv("AGENT_CUBICLE_WAITING_THRESHOLD_SECONDS", "3"),
                ),
                output_buffer_lines=int(os.getenv("AGENT_CUBICLE_OUTPUT_BUFFER_LINES", "1000")),
                workdir_root=(
                    Path(workdir_root)
                    if workdir_root
                    else Path(tempfile.gettempdir()) / "agent-instances"
                ),
                record_ttl_seconds=int(
                    os.getenv("AGENT_CUBICLE_INSTANCE_RECORD_TTL_SECONDS", "3600"),
                ),
            ),
            scheduler=SchedulerSettings(
                worker_id=os.getenv("AGENT_CUBICLE_WORKER_ID", "").strip()
                or socket.gethostname(),
                ready_timeout_seconds=float(
                    os.getenv("AGENT_CUBICLE_READY_TIMEOUT_SECONDS", "30"),
                ),
                max_task_duration_seconds=float(
                    os.getenv("AGENT_CUBICLE_MAX_TASK_DURATION_SECONDS", "300"),
                ),
                queue_poll_seconds=float(os.getenv("AGENT_CUBICLE_QUEUE_POLL_SECONDS", "1")),
                task_record_ttl_seconds=int(
                    os.getenv("AGENT_CUBICLE_TASK_RECORD_TTL_SECONDS", "86400"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_CUBICLE_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            notifications=NotificationSettings(
                notification_ttl_seconds=int(
                    os.getenv("AGENT_CUBICLE_NOTIFICATION_TTL_SECONDS", "300"),
                ),
                response_record_ttl_seconds=int(
                    os.getenv("AGENT_CUBICLE_RESPONSE_RECORD_TTL_SECONDS", "3600"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or timeouts are out of range."""

        if not self.default_provider:
            raise ValueError("AGENT_CUBICLE_DEFAULT_PROVIDER must not be empty.")
        if self.instances.max_instances_per_user <= 0:
            raise ValueError("AGENT_CUBICLE_MAX_INSTANCES_PER_USER must be > 0.")
        if self.instances.instance_timeout_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_INSTANCE_TIMEOUT_SECONDS must be > 0.")
        if self.instances.cleanup_interval_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_CLEANUP_INTERVAL_SECONDS must be > 0.")
        if self.instances.waiting_threshold_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_WAITING_THRESHOLD_SECONDS must be > 0.")
        if self.instances.output_buffer_lines <= 0:
            raise ValueError("AGENT_CUBICLE_OUTPUT_BUFFER_LINES must be > 0.")
        if self.scheduler.ready_timeout_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_READY_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.max_task_duration_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_MAX_TASK_DURATION_SECONDS must be > 0.")
        if self.scheduler.queue_poll_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_QUEUE_POLL_SECONDS must be > 0.")
        if self.scheduler.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_CUBICLE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.store.backoff_seconds < 0:
            raise ValueError("AGENT_CUBICLE_STORE_BACKOFF_SECONDS must be >= 0.")
        if self.notifications.notification_ttl_seconds <= 0:
            raise ValueError("AGENT_CUBICLE_NOTIFICATION_TTL_SECONDS must be > 0.")
        if self.providers_file is not None and not self.providers_file.is_file():
            raise ValueError(
                f"AGENT_CUBICLE_PROVIDERS_FILE does not exist: {str(self.providers_file)!r}",
            )
