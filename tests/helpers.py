"""
Script: tests/helpers.py
What: In-memory fakes shared by the test modules.
Doing: Provides a dict-backed state store, a recording cache backend, and a scripted shell runner.
Why: `load` and `save` talk to the runner, the cache service, and Docker; none of those exist in unit tests.
Goal: Let each test describe only the inputs and outputs it cares about.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

from docker_cache.actions import ActionsContext


class MemoryStateStore:
    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self.values = dict(values or {})

    def get(self, name: str) -> str:
        return self.values.get(name, "")

    def save(self, name: str, value: str) -> None:
        self.values[name] = value


class RecordingCache:
    """Cache backend that returns fixed keys and records every call."""

    def __init__(self, restore_result: str | None = None, lookup_result: str | None = None) -> None:
        self.restore_result = restore_result
        self.lookup_result = lookup_result
        self.restore_calls: list[tuple[list[str], str, list[str], bool]] = []
        self.saved: list[tuple[list[str], str]] = []

    def restore(
        self,
        paths: Sequence[str],
        primary_key: str,
        restore_keys: Sequence[str] | None = None,
        *,
        lookup_only: bool = False,
    ) -> str | None:
        self.restore_calls.append((list(paths), primary_key, list(restore_keys or []), lookup_only))
        return self.lookup_result if lookup_only else self.restore_result

    def save(self, paths: Sequence[str], key: str) -> None:
        self.saved.append((list(paths), key))


class ScriptedShell:
    """Shell runner that returns canned stdout per command."""

    def __init__(self, outputs: Mapping[str, str] | None = None, failing: Sequence[str] = ()) -> None:
        self.outputs = dict(outputs or {})
        self.failing = set(failing)
        self.commands: list[str] = []

    def __call__(self, command: str, context: ActionsContext) -> str:
        self.commands.append(command)
        if command in self.failing:
            context.set_failed(f"Command execution failed: Command failed: {command}")
            return ""
        return self.outputs.get(command, "")


def make_context(
    temp_dir: Path,
    inputs: Mapping[str, str] | None = None,
    state: Mapping[str, str] | None = None,
) -> ActionsContext:
    """Build a context whose outputs go to `temp_dir/output` and state stays in memory."""
    env = {"GITHUB_OUTPUT": str(temp_dir / "output")}
    for name, value in (inputs or {}).items():
        env[f"INPUT_{name.upper()}"] = value
    return ActionsContext(env=env, state_store=MemoryStateStore(state))
