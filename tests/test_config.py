from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_cubicle.config import InstanceSettings, SchedulerSettings, Settings

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_CUBICLE_STORE_URL",
        "AGENT_CUBICLE_MAX_INSTANCES_PER_USER",
        "AGENT_CUBICLE_WAITING_THRESHOLD_SECONDS",
        "AGENT_CUBICLE_WORKER_ID",
        "AGENT_CUBICLE_PROVIDERS_FILE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.store.url == "sqlite:///.agent_cubicle.db"
    assert settings.default_provider == "claude-code"
    assert settings.instances.max_instances_per_user == 3
    assert settings.instances.waiting_threshold_seconds == 3.0
    assert settings.instances.instance_timeout_seconds == 300.0
    assert settings.scheduler.ready_timeout_seconds == 30.0
    assert settings.scheduler.max_task_duration_seconds == 300.0
    assert settings.notifications.notification_ttl_seconds == 300
    assert settings.notifications.max_response_chars == 5_000
    assert settings.scheduler.worker_id
    assert settings.providers_file is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_CUBICLE_STORE_URL", "redis://localhost:6379/1")
    monkeypatch.setenv("AGENT_CUBICLE_MAX_INSTANCES_PER_USER", "5")
    monkeypatch.setenv("AGENT_CUBICLE_WAITING_THRESHOLD_SECONDS", "1.5")
    monkeypatch.setenv("AGENT_CUBICLE_WORKER_ID", "worker-a")
    monkeypatch.setenv("AGENT_CUBICLE_WORKDIR_ROOT", str(tmp_path / "work"))

    settings = Settings.from_env()

    assert settings.store.url == "redis://localhost:6379/1"
    assert settings.instances.max_instances_per_user == 5
    assert settings.instances.waiting_threshold_seconds == 1.5
    assert settings.instances.workdir_root == tmp_path / "work"
    assert settings.scheduler.worker_id == "worker-a"


def test_explicit_store_url_wins_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CUBICLE_STORE_URL", "redis://localhost:6379/1")

    assert Settings.from_env(store_url="memory://").store.url == "memory://"


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (
            Settings(instances=InstanceSettings(max_instances_per_user=0)),
            "MAX_INSTANCES_PER_USER",
        ),
        (
            Settings(instances=InstanceSettings(waiting_threshold_seconds=0)),
            "WAITING_THRESHOLD_SECONDS",
        ),
        (
            Settings(scheduler=SchedulerSettings(max_task_duration_seconds=-1)),
            "MAX_TASK_DURATION_SECONDS",
        ),
        (
            Settings(scheduler=SchedulerSettings(graceful_shutdown_seconds=-1)),
            "GRACEFUL_SHUTDOWN_SECONDS",
        ),
        (Settings(default_provider=""), "DEFAULT_PROVIDER"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_missing_providers_file(tmp_path: Path) -> None:
    settings = Settings(providers_file=tmp_path / "missing.json")

    with pytest.raises(ValueError, match="PROVIDERS_FILE"):
        settings.validate()
