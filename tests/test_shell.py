"""
Script: tests/test_shell.py
What: Tests the shell helper in `docker_cache/shell.py`.
Doing: Checks shell selection per platform and the success/failure result channels.
Why: A failing Docker command must mark the job failed without raising into the cache flow.
Goal: Keep command execution predictable on Linux, macOS, and Windows runners.
"""

from __future__ import annotations

import contextlib
import io
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from docker_cache.shell import (
    POSIX_DEFAULT_SHELL,
    WINDOWS_DEFAULT_SHELL,
    execute_shell_command,
    select_shell,
)
from helpers import make_context


class SelectShellTests(unittest.TestCase):
    def test_uses_shell_env_on_posix(self) -> None:
        self.assertEqual(select_shell("linux", "/bin/zsh"), "/bin/zsh")

    def test_defaults_to_bash_without_shell_env(self) -> None:
        self.assertEqual(select_shell("darwin", ""), POSIX_DEFAULT_SHELL)

    def test_windows_ignores_shell_env(self) -> None:
        self.assertEqual(select_shell("win32", "/usr/bin/bash"), WINDOWS_DEFAULT_SHELL)


class ExecuteShellCommandTests(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.context = make_context(Path(temp_dir.name))
        self.stdout = io.StringIO()

    def run_command(self, command: str, platform: str = "linux") -> str:
        with contextlib.redirect_stdout(self.stdout):
            return execute_shell_command(command, self.context, platform=platform)

    def test_returns_trimmed_stdout_and_logs_streams(self) -> None:
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout="  a:1\nb:2 \n", stderr="pulling\n"
        )
        with mock.patch("docker_cache.shell.subprocess.run", return_value=completed) as run:
            output = self.run_command("docker image list")

        self.assertEqual(output, "a:1\nb:2")
        run.assert_called_once_with(
            [POSIX_DEFAULT_SHELL, "-c", "docker image list"],
            check=True,
            text=True,
            capture_output=True,
        )
        logs = self.stdout.getvalue()
        self.assertIn("Executing command: docker image list", logs)
        self.assertIn(f"Using shell: {POSIX_DEFAULT_SHELL}", logs)
        self.assertIn("stdout: a:1\nb:2", logs)
        self.assertIn("::error::stderr: pulling", logs)
        self.assertFalse(self.context.failed)

    def test_uses_shell_from_env(self) -> None:
        self.context.env["SHELL"] = "/bin/zsh"
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
        with mock.patch("docker_cache.shell.subprocess.run", return_value=completed) as run:
            output = self.run_command("true")

        self.assertEqual(output, "")
        self.assertEqual(run.call_args.args[0], ["/bin/zsh", "-c", "true"])
        self.assertNotIn("stdout:", self.stdout.getvalue())

    def test_windows_uses_git_bash(self) -> None:
        self.context.env["SHELL"] = "/usr/bin/bash"
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="ok", stderr="")
        with mock.patch("docker_cache.shell.subprocess.run", return_value=completed) as run:
            self.run_command("docker load --input x.tar", platform="win32")

        self.assertEqual(run.call_args.args[0][0], WINDOWS_DEFAULT_SHELL)

    def test_non_zero_exit_marks_failed_and_returns_empty(self) -> None:
        error = subprocess.CalledProcessError(1, ["bash"], output="partial", stderr="no such image\n")
        with mock.patch("docker_cache.shell.subprocess.run", side_effect=error):
            output = self.run_command("docker save --output x.tar missing:1")

        self.assertEqual(output, "")
        self.assertTrue(self.context.failed)
        self.assertIn(
            "::error::Command execution failed: Command failed: docker save --output x.tar missing:1"
            "%0Ano such image",
            self.stdout.getvalue(),
        )

    def test_spawn_error_marks_failed_and_returns_empty(self) -> None:
        error = FileNotFoundError(2, "No such file or directory", "/usr/bin/bash")
        with mock.patch("docker_cache.shell.subprocess.run", side_effect=error):
            output = self.run_command("docker image list")

        self.assertEqual(output, "")
        self.assertTrue(self.context.failed)
        self.assertIn("::error::Command execution failed:", self.stdout.getvalue())

    @unittest.skipUnless(shutil.which("bash"), "bash is not installed")
    def test_runs_real_commands_through_bash(self) -> None:
        self.context.env["SHELL"] = shutil.which("bash") or ""

        self.assertEqual(self.run_command("echo ' hello '"), "hello")
        self.assertFalse(self.context.failed)

        self.assertEqual(self.run_command("echo partial; exit 3"), "")
        self.assertTrue(self.context.failed)


if __name__ == "__main__":
    unittest.main()
