"""
Script: docker_cache/common.py
What: Shared helper functions used by all `docker_cache` modules.
Doing: Wraps env reads and GitHub "file command" writes.
Why: Avoids duplicated helper code.
Goal: Keep behavior consistent across all helper modules.
"""

from __future__ import annotations

import os
import uuid
from typing import Mapping


class CiToolError(RuntimeError):
    """Raised when a workflow helper hits a known error condition."""


def require_env(name: str, env: Mapping[str, str] | None = None) -> str:
    """Return a required environment variable or raise a clear error."""
    source = os.environ if env is None else env
    value = source.get(name)
    if value is None or value == "":
        raise CiToolError(f"Missing required environment variable: {name}")
    return value


def format_file_command(key: str, value: str, *, delimiter: str | None = None) -> str:
    """
    Format one `name<<delimiter` block for a GitHub file command.

    GitHub reads `GITHUB_OUTPUT` and `GITHUB_STATE` as a list of entries.
    The heredoc form is used so multi-line values (like an image list) survive.
    """
    delimiter = delimiter or f"ghadelimiter_{uuid.uuid4()}"
    # A value that contains the delimiter would end the block early.
    if delimiter in key or delimiter in value:
        raise CiToolError(f"Unexpected input: name or value contains delimiter {delimiter}")
    return f"{key}<<{delimiter}\n{value}\n{delimiter}\n"


def append_file_command(
    env_name: str,
    values: Mapping[str, str],
    env: Mapping[str, str] | None = None,
) -> None:
    """
    Append values to the file named by `env_name` (`GITHUB_OUTPUT`, `GITHUB_STATE`).

    GitHub provides these file paths per step; anything written there becomes
    a step output or a state value for the post step.
    """
    command_file = require_env(env_name, env)
    with open(command_file, "a", encoding="utf-8") as handle:
        for key, value in values.items():
            handle.write(format_file_command(key, value))
