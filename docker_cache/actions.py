"""
Script: docker_cache/actions.py
What: Small accessor for the GitHub Actions job context.
Doing: Reads step inputs, writes step outputs, keeps state slots between `load` and `save`, and logs.
Why: `load` and `save` run as separate processes, so anything they share must go through the runner.
Goal: Give the cache flow one object it can read from and report to, and that tests can fake.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping, Protocol

from docker_cache.common import CiToolError, append_file_command


STATE_FILE_INPUT = "state-file"
DEFAULT_STATE_FILE_NAME = "docker-cache-state.json"


def input_env_name(name: str) -> str:
    """Map an input name to the env var GitHub sets for it (`read-only` -> `INPUT_READ-ONLY`)."""
    return f"INPUT_{name.replace(' ', '_').upper()}"


def escape_command_data(message: str) -> str:
    """Escape a message so a workflow command keeps it on one line."""
    return message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def to_command_value(value: object) -> str:
    """Convert an output value to the text GitHub stores (`True` -> `true`)."""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class StateStore(Protocol):
    """Key/value slots that live for one job and are shared between its steps."""

    def get(self, name: str) -> str:
        ...

    def save(self, name: str, value: str) -> None:
        ...


class RunnerStateStore:
    """
    State slots backed by the runner itself.

    Values written to the `GITHUB_STATE` file come back as `STATE_<name>`
    env vars in the post step of the same action.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = os.environ if env is None else env

    def get(self, name: str) -> str:
        return self._env.get(f"STATE_{name}", "")

    def save(self, name: str, value: str) -> None:
        append_file_command("GITHUB_STATE", {name: value}, self._env)


class JsonFileStateStore:
    """
    State slots kept in one JSON file.

    Used when `load` and `save` run as two plain workflow steps, where the
    runner does not pass `GITHUB_STATE` values from one step to the other.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CiToolError(f"State file is not valid JSON: {self.path}") from exc
        if not isinstance(data, dict):
            raise CiToolError(f"State file must hold a JSON object: {self.path}")
        return data

    def get(self, name: str) -> str:
        return str(self._read().get(name, ""))

    def save(self, name: str, value: str) -> None:
        data = self._read()
        data[name] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def state_store_from_env(env: Mapping[str, str] | None = None) -> StateStore:
    """
    Pick where state slots live for this step.

    Order:
    - the `state-file` input, when set
    - the runner store, when the runner already passed `STATE_*` values in
    - `$RUNNER_TEMP/docker-cache-state.json`, which lives for one job and is
      shared by every step of it
    - the runner store as a last resort (no `RUNNER_TEMP`, e.g. local runs)
    """
    source = os.environ if env is None else env
    state_file = source.get(input_env_name(STATE_FILE_INPUT), "").strip()
    if state_file:
        return JsonFileStateStore(Path(state_file).expanduser())
    if any(name.startswith("STATE_") for name in source):
        return RunnerStateStore(source)
    runner_temp = source.get("RUNNER_TEMP", "").strip()
    if runner_temp:
        return JsonFileStateStore(Path(runner_temp) / DEFAULT_STATE_FILE_NAME)
    return RunnerStateStore(source)


class ActionsContext:
    """
    Inputs, outputs, state, and logging for one workflow step.

    `failed` is the "mark the job failed but keep going" signal. It is set by
    `set_failed` and never raises, so callers decide whether to stop.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        state_store: StateStore | None = None,
    ) -> None:
        self.env = os.environ if env is None else env
        self.state_store = state_store if state_store is not None else state_store_from_env(self.env)
        self.failed = False

    def get_input(self, name: str, *, required: bool = False) -> str:
        value = self.env.get(input_env_name(name), "").strip()
        if required and not value:
            raise CiToolError(f"Input required and not supplied: {name}")
        return value

    def get_state(self, name: str) -> str:
        return self.state_store.get(name)

    def save_state(self, name: str, value: str) -> None:
        self.state_store.save(name, value)

    def set_output(self, name: str, value: object) -> None:
        append_file_command("GITHUB_OUTPUT", {name: to_command_value(value)}, self.env)

    def info(self, message: str) -> None:
        print(message)

    def warning(self, message: str) -> None:
        print(f"::warning::{escape_command_data(message)}")

    def error(self, message: str) -> None:
        print(f"::error::{escape_command_data(message)}")

    def set_failed(self, message: str) -> None:
        # Same effect as a failed exit code: the job fails when the step ends.
        self.failed = True
        self.error(message)
