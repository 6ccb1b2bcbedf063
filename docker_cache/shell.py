"""
Script: docker_cache/shell.py
What: Runs one shell command for the cache flow and returns its output.
Doing: Picks a shell for the platform, runs the command, logs stdout/stderr, and reports failures.
Why: Docker commands need shell features (`~` expansion, quoted `--format` templates).
Goal: Let callers keep going after a failed command while the job is still marked failed.
"""

from __future__ import annotations

import subprocess
import sys

from docker_cache.actions import ActionsContext


WINDOWS_PLATFORM = "win32"
POSIX_DEFAULT_SHELL = "/usr/bin/bash"
# Git for Windows ships the bash that hosted Windows runners use.
WINDOWS_DEFAULT_SHELL = r"C:\Program Files\Git\bin\bash.exe"


def select_shell(platform: str, env_shell: str = "") -> str:
    """
    Choose the shell binary for one platform.

    `SHELL` wins on non-Windows platforms. Windows always uses Git bash,
    since `SHELL` there usually points at a path only MSYS understands.
    """
    if env_shell and platform != WINDOWS_PLATFORM:
        return env_shell
    if platform == WINDOWS_PLATFORM:
        return WINDOWS_DEFAULT_SHELL
    return POSIX_DEFAULT_SHELL


def execute_shell_command(
    command: str,
    context: ActionsContext,
    platform: str | None = None,
) -> str:
    """
    Run `command` through a shell and return its trimmed stdout.

    On failure this does not raise. It calls `context.set_failed` and returns
    an empty string, so an empty result means "no usable output", not
    necessarily "the command printed nothing".
    """
    platform = sys.platform if platform is None else platform
    context.info(f"Executing command: {command}")

    shell = select_shell(platform, context.env.get("SHELL", ""))
    context.info(f"Using shell: {shell}")

    try:
        result = subprocess.run(
            [shell, "-c", command],
            check=True,
            text=True,
            capture_output=True,
        )
    except subprocess.CalledProcessError as exc:
        stderr = (exc.stderr or "").strip()
        details = f"Command failed: {command}"
        if stderr:
            details = f"{details}\n{stderr}"
        context.set_failed(f"Command execution failed: {details}")
        return ""
    except OSError as exc:
        # The shell itself could not be started (missing binary, bad permissions).
        context.set_failed(f"Command execution failed: {exc or 'Unknown error occurred'}")
        return ""

    stdout = result.stdout.strip()
    stderr = result.stderr.strip()
    if stdout:
        context.info(f"stdout: {stdout}")
    if stderr:
        # Docker prints progress to stderr, so this is logged, not treated as failure.
        context.error(f"stderr: {stderr}")
    return stdout
