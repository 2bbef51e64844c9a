"""Provider registry: how to launch and interpret each agent CLI."""

from __future__ import annotations

import json
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from agent_cubicle.orchestrator.errors import ValidationError

PROVIDERS_SCHEMA_VERSION = 1


@dataclass(frozen=True, slots=True)
class Provider:
    """Immutable launch command plus ready/completion/error predicates.

    Pattern matching is a best-effort reading of free-form CLI output: a
    completion pattern that appears inside ordinary text ends the task just
    the same.
    """

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    ready_pattern: re.Pattern[str] | None = None
    completion_patterns: tuple[re.Pattern[str], ...] = ()
    error_patterns: tuple[re.Pattern[str], ...] = ()
    display_name: str | None = None

    def is_ready(self, chunk: str) -> bool:
        return self.ready_pattern is not None and self.ready_pattern.search(chunk) is not None

    def is_complete(self, chunk: str) -> bool:
        return any(pattern.search(chunk) for pattern in self.completion_patterns)

    def is_error(self, chunk: str) -> bool:
        return any(pattern.search(chunk) for pattern in self.error_patterns)

    def to_metadata(self) -> dict[str, object]:
        """Serialize provider config for listings and JSON provider files."""

        return {
            "name": self.name,
            "display_name": self.display_name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "ready_pattern": self.ready_pattern.pattern if self.ready_pattern else None,
            "completion_patterns": [pattern.pattern for pattern in self.completion_patterns],
            "error_patterns": [pattern.pattern for pattern in self.error_patterns],
        }

    @classmethod
    def from_mapping(cls, name: str, raw: Mapping[str, Any]) -> Provider:
        """Build a provider from JSON-like config, compiling patterns case-insensitively."""

        normalized = _normalize_name(name)
        if not normalized:
            raise ValidationError("Provider name must not be empty.")
        command = raw.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ValidationError(f"Provider {normalized!r} must define a non-empty command.")
        args = raw.get("args") or []
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise ValidationError(f"Provider {normalized!r} args must be a list of strings.")
        env = raw.get("env") or {}
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise ValidationError(f"Provider {normalized!r} env must map strings to strings.")
        ready = raw.get("ready_pattern")
        display_name = raw.get("display_name")
        return cls(
            name=normalized,
            command=command.strip(),
            args=tuple(args),
            env=dict(env),
            ready_pattern=_compile(normalized, ready) if ready else None,
            completion_patterns=_compile_all(normalized, raw.get("completion_patterns")),
            error_patterns=_compile_all(normalized, raw.get("error_patterns")),
            display_name=display_name if isinstance(display_name, str) else None,
        )


DEFAULT_PROVIDERS: dict[str, dict[str, Any]] = {
    "claude-code": {
        "display_name": "Claude Code",
        "command": "claude-code",
        "args": ["--mode", "chat"],
        "env": {"NO_COLOR": "1"},
        "ready_pattern": r"Ready|Initialized|Started",
        "completion_patterns": [
            r"Task completed successfully",
            r"Done\.",
            r"Finished\.",
            r"✓ Complete",
        ],
        "error_patterns": [r"Error:", r"Failed:", r"Exception:"],
    },
    "github-copilot": {
        "display_name": "GitHub Copilot CLI",
        "command": "gh",
        "args": ["copilot", "suggest"],
        "ready_pattern": r">",
        "completion_patterns": [r"Suggestion:", r"Complete\."],
    },
    "openai-terminal": {
        "display_name": "OpenAI Terminal",
        "command": "openai",
        "args": ["terminal"],
        "ready_pattern": r">",
        "completion_patterns": [r"Done", r"Completed"],
    },
}


class ProviderRegistry:
    """Catalog of providers looked up by name.

    Providers are immutable; ``update`` swaps in a new instance so that
    callers holding the old one keep a consistent view.
    """

    def __init__(self, providers: Iterable[Provider], *, default_provider: str) -> None:
        self._lock = threading.Lock()
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self._providers[provider.name] = provider
        self.default_provider = _normalize_name(default_provider)
        if self.default_provider not in self._providers:
            raise ValidationError(
                f"Unknown default provider: {default_provider!r}. "
                f"Use one of {sorted(self._providers)}.",
            )

    @classmethod
    def with_defaults(
        cls,
        *,
        default_provider: str = "claude-code",
        providers_file: Path | None = None,
        extra: Iterable[Provider] = (),
    ) -> ProviderRegistry:
        """Built-in providers, overridden by a JSON file and then by ``extra``."""

        providers = {
            name: Provider.from_mapping(name, raw) for name, raw in DEFAULT_PROVIDERS.items()
        }
        if providers_file is not None:
            for provider in load_providers_file(providers_file):
                providers[provider.name] = provider
        for provider in extra:
            providers[provider.name] = provider
        return cls(providers.values(), default_provider=default_provider)

    def available_providers(self) -> list[str]:
        with self._lock:
            return list(self._providers)

    def get(self, name: str | None) -> Provider | None:
        with self._lock:
            return self._providers.get(_normalize_name(name or self.default_provider))

    def resolve(self, name: str | None) -> Provider:
        """Return provider or raise ValidationError for unknown names."""

        provider = self.get(name)
        if provider is None:
            raise ValidationError(
                f"Unknown agent provider: {name!r}. Use one of {self.available_providers()}.",
            )
        return provider

    def add(self, provider: Provider) -> None:
        with self._lock:
            self._providers[provider.name] = provider

    def update(self, name: str, **changes: Any) -> Provider:
        with self._lock:
            current = self._providers.get(_normalize_name(name))
            if current is None:
                raise ValidationError(f"Unknown agent provider: {name!r}")
            updated = replace(current, **changes)
            self._providers[updated.name] = updated
            return updated


def load_providers_file(path: Path) -> list[Provider]:
    """Parse a JSON providers file: ``{"schema_version": 1, "providers": {name: {...}}}``."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValidationError(f"Cannot read providers file {str(path)!r}: {error}") from error
    if not isinstance(payload, dict):
        raise ValidationError("Providers file must contain a JSON object.")
    schema_version = payload.get("schema_version", PROVIDERS_SCHEMA_VERSION)
    if schema_version != PROVIDERS_SCHEMA_VERSION:
        raise ValidationError(f"Unsupported providers schema_version: {schema_version!r}")
    raw_providers = payload.get("providers")
    if not isinstance(raw_providers, dict):
        raise ValidationError("Providers file must define a 'providers' object.")
    providers: list[Provider] = []
    for name, raw in raw_providers.items():
        if not isinstance(raw, dict):
            raise ValidationError(f"Provider {name!r} must be a JSON object.")
        providers.append(Provider.from_mapping(name, raw))
    return providers


def _compile(provider: str, pattern: object) -> re.Pattern[str]:
    if not isinstance(pattern, str):
        raise ValidationError(f"Provider {provider!r} patterns must be strings.")
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as error:
        raise ValidationError(
            f"Invalid regex for provider {provider!r}: {pattern!r} ({error})",
        ) from error


def _compile_all(provider: str, patterns: object) -> tuple[re.Pattern[str], ...]:
    if patterns is None:
        return ()
    if not isinstance(patterns, list):
        raise ValidationError(f"Provider {provider!r} patterns must be a list.")
    return tuple(_compile(provider, pattern) for pattern in patterns)


def _normalize_name(value: str) -> str:
    return value.strip().lower()
