from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from agent_cubicle.orchestrator.errors import ValidationError
from agent_cubicle.orchestrator.providers import (
    DEFAULT_PROVIDERS,
    Provider,
    ProviderRegistry,
    load_providers_file,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Provider Registry"),
]


def test_builtin_providers_are_available() -> None:
    registry = ProviderRegistry.with_defaults()

    assert registry.available_providers() == list(DEFAULT_PROVIDERS)
    assert list(DEFAULT_PROVIDERS) == ["claude-code", "github-copilot", "openai-terminal"]
    assert registry.default_provider == "claude-code"
    claude = registry.resolve(None)
    assert claude.command == "claude-code"
    assert claude.args == ("--mode", "chat")
    assert claude.env == {"NO_COLOR": "1"}


def test_claude_patterns_match_case_insensitively() -> None:
    claude = ProviderRegistry.with_defaults().resolve("claude-code")

    assert claude.is_ready("Agent initialized")
    assert claude.is_complete("all good. done.")
    assert claude.is_complete("✓ Complete")
    assert claude.is_error("ERROR: quota exceeded")
    assert not claude.is_complete("still working")


def test_provider_without_ready_pattern_never_becomes_ready() -> None:
    provider = Provider.from_mapping("plain", {"command": "plain-agent"})

    assert provider.is_ready("Ready") is False
    assert provider.is_complete("Done.") is False


def test_resolve_unknown_provider_is_validation_error() -> None:
    registry = ProviderRegistry.with_defaults()

    with pytest.raises(ValidationError, match="Unknown agent provider"):
        registry.resolve("no-such-agent")
    assert registry.get("no-such-agent") is None


def test_unknown_default_provider_is_rejected() -> None:
    with pytest.raises(ValidationError, match="Unknown default provider"):
        ProviderRegistry.with_defaults(default_provider="missing")


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"command": "  "},
        {"command": "agent", "args": "--flag"},
        {"command": "agent", "env": {"A": 1}},
        {"command": "agent", "completion_patterns": ["("]},
        {"command": "agent", "error_patterns": "Error:"},
    ],
)
def test_from_mapping_rejects_bad_config(raw: dict) -> None:
    with pytest.raises(ValidationError):
        Provider.from_mapping("bad", raw)


def test_add_and_update_keep_providers_immutable() -> None:
    registry = ProviderRegistry.with_defaults()
    registry.add(Provider.from_mapping("local", {"command": "local-agent", "ready_pattern": "\\$"}))
    original = registry.resolve("local")

    updated = registry.update("local", command="local-agent-v2")

    assert original.command == "local-agent"
    assert updated.command == "local-agent-v2"
    assert registry.resolve("local") is updated
    with pytest.raises(ValidationError):
        registry.update("missing", command="x")


def test_providers_file_adds_and_overrides(tmp_path: Path) -> None:
    path = tmp_path / "providers.json"
    path.write_text(
        json.dumps(
            {
                "schema_version": 1,
                "providers": {
                    "claude-code": {"command": "claude", "ready_pattern": ">"},
                    "aider": {
                        "command": "aider",
                        "args": ["--no-pretty"],
                        "ready_pattern": "aider>",
                        "completion_patterns": ["Applied edit"],
                    },
                },
            },
        ),
        encoding="utf-8",
    )

    registry = ProviderRegistry.with_defaults(default_provider="aider", providers_file=path)

    assert registry.resolve("claude-code").command == "claude"
    assert registry.resolve(None).name == "aider"
    assert registry.resolve("aider").is_complete("Applied edit to main.py")


def test_providers_file_rejects_unknown_schema(tmp_path: Path) -> None:
    path = tmp_path / "providers.json"
    path.write_text(json.dumps({"schema_version": 2, "providers": {}}), encoding="utf-8")

    with pytest.raises(ValidationError, match="schema_version"):
        load_providers_file(path)
